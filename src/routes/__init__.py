# Fleetwatch/src/routes/__init__.py
"""API routes for Fleetwatch."""
from .alerts import router as alerts_router
from .device import router as device_router

__all__ = [
    "alerts_router",
    "device_router",
]
