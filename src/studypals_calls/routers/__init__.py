"""Routers package for FastAPI route handlers."""

from .calls import router as calls_router
from .signal_ws import router as signal_ws_router

__all__ = [
    "calls_router",
    "signal_ws_router",
]
