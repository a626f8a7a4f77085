"""API endpoint modules for version 1."""

from .publish import router as publish_router
from .system import router as system_router

__all__ = [
    "publish_router",
    "system_router",
]
