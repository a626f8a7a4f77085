"""Version 1 API endpoints."""

from .endpoints import publish_router, system_router

__all__ = [
    "publish_router",
    "system_router",
]
