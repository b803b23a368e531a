"""API endpoints package for the gatekeeper."""

from gatekeeper.app.api.metrics import router as metrics_router

__all__ = [
    "metrics_router",
]
