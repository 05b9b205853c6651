"""API module."""

from .health import router as health_router
from .webhook import router as webhook_router

__all__ = ["webhook_router", "health_router"]
