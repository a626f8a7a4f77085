"""Core configuration, security primitives and errors."""
