"""Middleware package for the gatekeeper."""

from gatekeeper.app.middleware.rate_limit import RateLimitMiddleware, require_rate_limit
from gatekeeper.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "require_rate_limit",
    "RequestIdMiddleware",
    "get_request_id",
]
