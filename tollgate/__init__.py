"""Tollgate: per-client HTTP rate limiting middleware."""

__version__ = "0.1.0"
