"""Custom exceptions for the tollgate application."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tollgate.app.ratelimit.engine import AdmissionResult


class TollgateException(Exception):
    """Base class for tollgate exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Tollgate error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(TollgateException, ValueError):
    """Raised when a rule set is built with invalid parameters.

    A limiter with a non-positive rate or an empty bucket would never admit
    anything, so construction fails instead of proceeding.
    """
    status_code = 500


class CounterStoreError(TollgateException):
    """Raised by an external counter store that cannot be reached.

    Never surfaced to clients: limiters translate it into the configured
    fail-open / fail-closed decision.
    """
    status_code = 503

    def __init__(self, message: str = "Counter store unavailable", backend: str | None = None):
        self.backend = backend
        super().__init__(message)


class RateLimitExceededError(TollgateException):
    """Raised by the per-route dependency when a request is limited.

    Maps to HTTP 429 Too Many Requests (or the configured status code).
    """
    status_code = 429

    def __init__(
        self,
        result: "AdmissionResult",
        message: str = "You have reached maximum request limit.",
        status_code: int | None = None,
        content_type: str = "text/plain; charset=utf-8",
    ):
        self.result = result
        self.content_type = content_type
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)
