import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from tollgate.app.core.config import Settings, settings as default_settings
from tollgate.app.core.logging import get_logger, setup_logging
from tollgate.app.exceptions import RateLimitExceededError
from tollgate.app.middleware.rate_limit import (
    LimitReachedCallback,
    RateLimitMiddleware,
    rate_limit_headers,
)
from tollgate.app.middleware.request_id import RequestIdMiddleware
from tollgate.app.ratelimit.backends import FixedWindowLimiter, RedisCounterStore
from tollgate.app.ratelimit.engine import AdmissionEngine, RequestLimiter
from tollgate.app.ratelimit.rules import rule_set_from_settings

logger = get_logger(__name__)


def build_limiter(settings: Settings) -> RequestLimiter:
    """Select the limiter backend from settings.

    Uses the in-process token bucket engine unless Redis is enabled, in
    which case counters are shared through Redis with fixed windows.
    """
    rules = rule_set_from_settings(settings)
    if settings.redis_enabled:
        logger.info("Using Redis fixed-window rate limiter backend")
        return FixedWindowLimiter(
            rules,
            RedisCounterStore(redis_url=settings.redis_url),
            fail_closed=settings.rate_limit_fail_closed,
        )
    logger.debug("Using in-memory token bucket rate limiter backend")
    return AdmissionEngine(rules)


def create_app(
    settings: Optional[Settings] = None,
    limiter: Optional[RequestLimiter] = None,
    on_limit_reached: Optional[LimitReachedCallback] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use, defaults to the global instance
        limiter: Pre-built limiter, defaults to one built from settings
        on_limit_reached: Callback invoked once per rejected request

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings
    setup_logging()

    limiter = limiter or build_limiter(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the bucket sweeper on startup and release backends on shutdown."""
        limiter.start()
        rules = limiter.rules
        logger.info(
            "Application startup complete",
            extra={
                "rate_per_second": rules.rate_per_second,
                "burst": rules.burst,
                "rate_limit_enabled": settings.rate_limit_enabled,
            }
        )
        yield
        await limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Tollgate",
        description="HTTP rate limiting keyed by client, path, method, headers and identity",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.limiter = limiter

    # Add middleware (order matters: last added = first executed)
    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=limiter,
            on_limit_reached=on_limit_reached,
        )

    # Request ID middleware (outermost, so rejections carry the ID too)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with rate limiter backend status."""
        component: dict[str, Any] = {
            "status": "ok",
            "backend": "memory" if isinstance(limiter, AdmissionEngine) else "redis",
            "enabled": settings.rate_limit_enabled,
        }
        if isinstance(limiter, AdmissionEngine):
            component["keys"] = len(limiter.store)
        return {"status": "ok", "components": {"rate_limiter": component}}

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> Response:
        """Render RateLimitExceededError raised by per-route dependencies."""
        if on_limit_reached is not None:
            outcome = on_limit_reached(request)
            if inspect.isawaitable(outcome):
                await outcome
        return Response(
            content=exc.message,
            status_code=exc.status_code,
            media_type=exc.content_type,
            headers=rate_limit_headers(exc.result),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; details are logged server-side.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        content = {
            "error": "internal_error",
            "message": str(exc) if settings.debug else "Internal server error",
            "request_id": request_id,
        }
        return JSONResponse(status_code=500, content=content)

    return app


def main() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    uvicorn.run(
        "tollgate.app.main:app",
        host=default_settings.host,
        port=default_settings.port,
        log_config=None,
    )


# Create the application instance
app = create_app()


if __name__ == "__main__":
    main()
