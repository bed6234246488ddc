"""Middleware package for tollgate."""

from tollgate.app.middleware.rate_limit import (
    RateLimitMiddleware,
    rate_limit_dependency,
    request_attributes,
)
from tollgate.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "rate_limit_dependency",
    "request_attributes",
    "RequestIdMiddleware",
    "get_request_id",
]
