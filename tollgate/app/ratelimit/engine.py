"""Admission engine.

Combines the key builder with the expiring bucket store and answers one
question per request: is it limited?
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from tollgate.app.core.logging import get_logger
from tollgate.app.ratelimit.expiring_store import ExpiringStore
from tollgate.app.ratelimit.keys import RequestAttributes, build_keys, join_key
from tollgate.app.ratelimit.rules import RuleSet
from tollgate.app.ratelimit.token_bucket import TokenBucket

logger = get_logger(__name__)


@dataclass
class AdmissionResult:
    """Outcome of an admission check.

    ``key`` is the composite key that decided the outcome: the rejecting key
    when limited, the last checked key when admitted, None when no rule applied.
    """
    limited: bool
    limit: int
    remaining: int
    reset_after: float = 0.0
    retry_after: Optional[float] = None
    key: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.key is not None

    @property
    def reset_seconds(self) -> int:
        return int(math.ceil(self.reset_after))

    @property
    def retry_after_seconds(self) -> Optional[int]:
        if self.retry_after is None:
            return None
        return max(1, int(math.ceil(self.retry_after)))


class RequestLimiter(ABC):
    """Decision interface consumed by the HTTP adapters."""

    @property
    @abstractmethod
    def rules(self) -> RuleSet:
        """Current rule set."""

    @abstractmethod
    async def evaluate(self, attributes: RequestAttributes) -> AdmissionResult:
        """Decide whether a request is limited."""

    def start(self) -> None:
        """Start background maintenance, if any."""

    async def close(self) -> None:
        """Release resources held by the limiter."""


class AdmissionEngine(RequestLimiter):
    """In-memory token bucket limiter keyed by composite request keys.

    Buckets live in an ``ExpiringStore`` and are created lazily on first use.
    The rule set is held behind a single reference and replaced wholesale, so
    a request always sees one consistent configuration.

    Example:
        >>> engine = AdmissionEngine(RuleSet(rate_per_second=1, burst=1))
        >>> engine.admit(RequestAttributes(path="/", method="GET", remote_addr="1.2.3.4")).limited
        False
    """

    def __init__(
        self,
        rules: RuleSet,
        store: Optional[ExpiringStore[TokenBucket]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rules = rules
        self._clock = clock
        self._update_lock = threading.RLock()
        self.store: ExpiringStore[TokenBucket] = store if store is not None else ExpiringStore(
            default_ttl=rules.entry_ttl,
            sweep_interval=rules.sweep_interval,
            clock=clock,
        )

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def update_rules(self, rules: RuleSet) -> None:
        """Atomically replace the rule set.

        Buckets are dropped when rate or burst change since their state was
        accumulated under the old parameters.
        """
        with self._update_lock:
            previous = self._rules
            self._rules = rules
            self.store.sweep_interval = rules.sweep_interval
            self.store.default_ttl = rules.entry_ttl
            if (previous.rate_per_second, previous.burst) != (rules.rate_per_second, rules.burst):
                self.store.clear()
        logger.info(
            f"Rate limit rules updated: rate={rules.rate_per_second}/s burst={rules.burst}"
        )

    def configure(self, **changes) -> RuleSet:
        """Copy-on-write update of individual rule fields."""
        with self._update_lock:
            rules = self._rules.replace(**changes)
            self.update_rules(rules)
        return rules

    def _new_bucket(self, rules: RuleSet, now: float) -> Callable[[], TokenBucket]:
        return lambda: TokenBucket(rules.rate_per_second, rules.burst, now)

    def _check(
        self,
        rules: RuleSet,
        keys: Iterable[Sequence[str]],
        now: float,
        ttl: Optional[float] = None,
    ) -> AdmissionResult:
        result = AdmissionResult(limited=False, limit=rules.burst, remaining=rules.burst)
        for parts in keys:
            key = join_key(parts)
            bucket = self.store.get_or_create(
                key,
                self._new_bucket(rules, now),
                ttl=rules.entry_ttl if ttl is None else ttl,
            )
            admitted = bucket.try_consume(now)
            state = bucket.peek(now)
            if not admitted:
                # Stop here: later keys are not charged for a rejected request
                return AdmissionResult(
                    limited=True,
                    limit=rules.burst,
                    remaining=0,
                    reset_after=state.reset_after,
                    retry_after=state.retry_after,
                    key=key,
                )
            if result.key is None or state.remaining < result.remaining:
                result = AdmissionResult(
                    limited=False,
                    limit=rules.burst,
                    remaining=state.remaining,
                    reset_after=state.reset_after,
                    key=key,
                )
        return result

    def admit(self, attributes: RequestAttributes, now: Optional[float] = None) -> AdmissionResult:
        """Decide whether a request is limited, consuming one token per key.

        Args:
            attributes: Request fields used to derive keys
            now: Monotonic timestamp, defaults to the engine clock

        Returns:
            AdmissionResult; ``limited`` is False when no rule applies
        """
        rules = self._rules
        keys = build_keys(rules, attributes)
        if not keys:
            return AdmissionResult(limited=False, limit=rules.burst, remaining=rules.burst)
        return self._check(rules, keys, self._clock() if now is None else now)

    def limit_by_keys(
        self,
        keys: Iterable[Sequence[str]],
        now: Optional[float] = None,
        ttl: Optional[float] = None,
    ) -> AdmissionResult:
        """Check explicit key tuples, bypassing request key derivation.

        ``ttl`` overrides the rule set's idle lifetime for buckets created by
        this call; existing buckets keep the lifetime they were created with.
        """
        return self._check(self._rules, keys, self._clock() if now is None else now, ttl)

    async def evaluate(self, attributes: RequestAttributes) -> AdmissionResult:
        return self.admit(attributes)

    def start(self) -> None:
        self.store.start()

    async def close(self) -> None:
        self.store.stop()
