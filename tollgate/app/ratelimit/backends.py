"""Counter store backends and the fixed-window limiter built on them.

The token bucket engine keeps its state in process. Deployments that need
state shared between workers can use a ``CounterStore`` instead, with the
simpler fixed-window contract: increment a per-key counter that expires
after one window and reject once it passes the limit.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tollgate.app.core.config import settings
from tollgate.app.core.logging import get_log_context, get_logger
from tollgate.app.exceptions import CounterStoreError
from tollgate.app.ratelimit.engine import AdmissionResult, RequestLimiter
from tollgate.app.ratelimit.expiring_store import ExpiringStore
from tollgate.app.ratelimit.keys import RequestAttributes, build_keys, join_key
from tollgate.app.ratelimit.rules import RuleSet

logger = get_logger(__name__)


class CounterStore(ABC):
    """Abstract base class for counter backends."""

    @abstractmethod
    async def incr_and_get(self, key: str, amount: int, ttl: float) -> int:
        """Increment the counter for ``key`` and return the new value.

        Args:
            key: Counter key
            amount: Increment
            ttl: Seconds until a newly started counter expires

        Raises:
            CounterStoreError: If the backend cannot be reached
        """

    @abstractmethod
    async def get(self, key: str) -> Tuple[int, bool]:
        """Return ``(count, found)`` for ``key``."""

    async def close(self) -> None:
        """Release backend connections."""


@dataclass
class _Counter:
    count: int
    expires_at: float
    lock: threading.Lock


class InMemoryCounterStore(CounterStore):
    """Process-local counter store.

    A counter's window is fixed at its first increment; once it ends the
    next increment starts a new window from zero.
    """

    def __init__(
        self,
        sweep_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._store: ExpiringStore[_Counter] = ExpiringStore(
            sweep_interval=sweep_interval,
            clock=clock,
        )

    async def incr_and_get(self, key: str, amount: int, ttl: float) -> int:
        now = self._clock()
        counter = self._store.get_or_create(
            key,
            lambda: _Counter(count=0, expires_at=now + ttl, lock=threading.Lock()),
            ttl=ttl,
        )
        with counter.lock:
            if now >= counter.expires_at:
                counter.count = 0
                counter.expires_at = now + ttl
            counter.count += amount
            return counter.count

    async def get(self, key: str) -> Tuple[int, bool]:
        counter = self._store.get(key)
        if counter is None:
            return -1, False
        with counter.lock:
            if self._clock() >= counter.expires_at:
                return -1, False
            return counter.count, True

    def start(self) -> None:
        self._store.start()

    async def close(self) -> None:
        self._store.stop()


class RedisCounterStore(CounterStore):
    """Redis-backed counter store shared across processes.

    Uses INCRBY and PEXPIRE NX in one pipeline so the expiry is set only
    when the window starts.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        prefix: str = "tollgate:",
    ):
        """Initialize Redis counter store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            prefix: Namespace prepended to every key
        """
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client
        self.prefix = prefix

    async def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def incr_and_get(self, key: str, amount: int, ttl: float) -> int:
        try:
            redis_client = await self._get_redis()
            pipe = redis_client.pipeline()
            pipe.incrby(self.prefix + key, amount)
            pipe.pexpire(self.prefix + key, max(1, int(math.ceil(ttl * 1000))), nx=True)
            results = await pipe.execute()
        except RedisError as e:
            raise CounterStoreError(f"Redis increment failed: {e}", backend="redis") from e
        return int(results[0])

    async def get(self, key: str) -> Tuple[int, bool]:
        try:
            redis_client = await self._get_redis()
            value = await redis_client.get(self.prefix + key)
        except RedisError as e:
            raise CounterStoreError(f"Redis get failed: {e}", backend="redis") from e
        if value is None:
            return -1, False
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return int(value), True

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class FixedWindowLimiter(RequestLimiter):
    """Limiter over a ``CounterStore`` using fixed windows.

    A window lasts ``burst / rate_per_second`` seconds and admits ``burst``
    requests, matching the token bucket's long-run average. The counter is
    incremented before the comparison, so exactly ``burst`` requests pass.

    Backend failures never surface to the caller: by default the request is
    admitted (fail-open) and a warning logged; with ``fail_closed`` it is
    rejected instead.
    """

    def __init__(
        self,
        rules: RuleSet,
        counter_store: CounterStore,
        fail_closed: Optional[bool] = None,
    ):
        self._rules = rules
        self.counter_store = counter_store
        self.fail_closed = (
            fail_closed if fail_closed is not None else settings.rate_limit_fail_closed
        )

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def update_rules(self, rules: RuleSet) -> None:
        self._rules = rules

    async def evaluate(self, attributes: RequestAttributes) -> AdmissionResult:
        rules = self._rules
        window = rules.window_seconds
        keys = build_keys(rules, attributes)
        if not keys:
            return AdmissionResult(limited=False, limit=rules.burst, remaining=rules.burst)

        result = AdmissionResult(limited=False, limit=rules.burst, remaining=rules.burst)
        for parts in keys:
            key = join_key(parts)
            try:
                count = await self.counter_store.incr_and_get(key, 1, window)
            except CounterStoreError as e:
                logger.error(f"Counter store failure: {e}", extra=get_log_context(limit_key=key))
                return self._handle_store_failure(rules, key, "store_error")
            except Exception as e:
                logger.exception(f"Unexpected rate limit error: {e}")
                return self._handle_store_failure(rules, key, "unexpected")

            if count > rules.burst:
                return AdmissionResult(
                    limited=True,
                    limit=rules.burst,
                    remaining=0,
                    reset_after=window,
                    retry_after=window,
                    key=key,
                )
            remaining = rules.burst - count
            if result.key is None or remaining < result.remaining:
                result = AdmissionResult(
                    limited=False,
                    limit=rules.burst,
                    remaining=remaining,
                    reset_after=window,
                    key=key,
                )
        return result

    def _handle_store_failure(self, rules: RuleSet, key: str, error_type: str) -> AdmissionResult:
        """Apply the configured fail-open / fail-closed policy."""
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. Request denied.",
                extra=get_log_context(limit_key=key),
            )
            return AdmissionResult(
                limited=True,
                limit=rules.burst,
                remaining=0,
                reset_after=rules.window_seconds,
                retry_after=rules.window_seconds,
                key=key,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check.",
            extra=get_log_context(limit_key=key),
        )
        return AdmissionResult(limited=False, limit=rules.burst, remaining=rules.burst)

    def start(self) -> None:
        start = getattr(self.counter_store, "start", None)
        if start is not None:
            start()

    async def close(self) -> None:
        await self.counter_store.close()
