"""Rate limiting middleware.

Starlette adapter around a ``RequestLimiter``: extracts request attributes,
asks the limiter for a decision and either forwards the request or answers
with the configured rejection.
"""

import base64
import binascii
import inspect
from typing import Any, Callable, Dict, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tollgate.app.core.logging import get_log_context, get_logger
from tollgate.app.exceptions import RateLimitExceededError
from tollgate.app.ratelimit.engine import AdmissionResult, RequestLimiter
from tollgate.app.ratelimit.keys import ContextLookup, RequestAttributes, resolve_client_ip

logger = get_logger(__name__)

# Builds the context lookup for one request
ContextLookupFactory = Callable[[Request], ContextLookup]
LimitReachedCallback = Callable[[Request], Any]


def parse_basic_auth_user(authorization: Optional[str]) -> Optional[str]:
    """Extract the username from a ``Basic`` Authorization header."""
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "basic" or not credentials:
        return None
    try:
        decoded = base64.b64decode(credentials.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, _ = decoded.partition(":")
    return username if sep else None


def state_context_lookup(request: Request) -> ContextLookup:
    """Default context lookup reading values placed on ``request.state``."""
    def lookup(key: str) -> Optional[str]:
        value = getattr(request.state, key, None)
        return None if value is None else str(value)

    return lookup


def request_attributes(
    request: Request,
    context_lookup: Optional[ContextLookupFactory] = None,
) -> RequestAttributes:
    """Collect the fields the key builder needs from a Starlette request."""
    headers: Dict[str, List[str]] = {}
    for name, value in request.headers.items():
        headers.setdefault(name, []).append(value)

    return RequestAttributes(
        path=request.url.path,
        method=request.method,
        headers=headers,
        remote_addr=request.client.host if request.client else None,
        basic_auth_user=parse_basic_auth_user(request.headers.get("Authorization")),
        context=(context_lookup or state_context_lookup)(request),
    )


def rate_limit_headers(result: AdmissionResult) -> Dict[str, str]:
    """Informational headers letting clients back off."""
    headers = {
        "RateLimit-Limit": str(result.limit),
        "RateLimit-Remaining": str(result.remaining),
        "RateLimit-Reset": str(result.reset_seconds),
    }
    if result.limited and result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Rejected requests get the rule set's status code, message and content
    type, and ``on_limit_reached`` is invoked exactly once for each of them.
    """

    def __init__(
        self,
        app,
        limiter: RequestLimiter,
        on_limit_reached: Optional[LimitReachedCallback] = None,
        context_lookup: Optional[ContextLookupFactory] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.on_limit_reached = on_limit_reached
        self.context_lookup = context_lookup

    async def _notify(self, request: Request) -> None:
        if self.on_limit_reached is None:
            return
        outcome = self.on_limit_reached(request)
        if inspect.isawaitable(outcome):
            await outcome

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        attributes = request_attributes(request, self.context_lookup)
        result = await self.limiter.evaluate(attributes)

        if result.limited:
            rules = self.limiter.rules
            logger.info(
                f"Rate limit exceeded for {attributes.method} {attributes.path}",
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    client_ip=resolve_client_ip(rules, attributes),
                    limit_key=result.key,
                    path=attributes.path,
                    method=attributes.method,
                    status_code=rules.status_code,
                ),
            )
            await self._notify(request)
            return Response(
                content=rules.message,
                status_code=rules.status_code,
                media_type=rules.content_type,
                headers=rate_limit_headers(result),
            )

        response = await call_next(request)

        if result.applied:
            response.headers.update(rate_limit_headers(result))

        return response


def rate_limit_dependency(
    limiter: RequestLimiter,
    context_lookup: Optional[ContextLookupFactory] = None,
) -> Callable[[Request], Any]:
    """Build a FastAPI dependency limiting individual routes.

    Example:
        >>> @app.post("/login", dependencies=[Depends(rate_limit_dependency(engine))])
        ... async def login(): ...
    """
    async def dependency(request: Request) -> AdmissionResult:
        result = await limiter.evaluate(request_attributes(request, context_lookup))
        if result.limited:
            rules = limiter.rules
            raise RateLimitExceededError(
                result,
                message=rules.message,
                status_code=rules.status_code,
                content_type=rules.content_type,
            )
        return result

    return dependency
