"""Token bucket rate cell.

One bucket is bound to one composite key. Tokens refill continuously at
``rate`` per second up to ``burst``; every admitted request takes one.
"""

import math
import threading
from dataclasses import dataclass

from tollgate.app.exceptions import ConfigurationError


@dataclass(frozen=True)
class BucketState:
    """Read-only view of a bucket used for response headers."""
    remaining: int
    reset_after: float
    retry_after: float


class TokenBucket:
    """Continuous-refill token bucket.

    The bucket starts full. ``try_consume`` refills for the elapsed time and
    then takes a single token, so exactly ``burst`` back-to-back requests are
    admitted before the first rejection.

    All state changes happen under a lock owned by the bucket, which keeps
    two concurrent checks on the same key from both taking the last token
    while checks on different keys never contend.
    """

    __slots__ = ("rate", "burst", "_tokens", "_last_refill", "_lock")

    def __init__(self, rate: float, burst: int, now: float):
        if not rate > 0 or math.isinf(rate):
            raise ConfigurationError(f"rate must be a positive number, got {rate!r}")
        if burst < 1:
            raise ConfigurationError(f"burst must be at least 1, got {burst!r}")
        self.rate = float(rate)
        self.burst = int(burst)
        self._tokens = float(self.burst)
        self._last_refill = now
        self._lock = threading.Lock()

    def _refilled(self, now: float) -> float:
        # A clock that steps backwards must not drain the bucket.
        elapsed = max(0.0, now - self._last_refill)
        return min(float(self.burst), self._tokens + elapsed * self.rate)

    def try_consume(self, now: float) -> bool:
        """Refill, then take one token if available.

        Args:
            now: Monotonic timestamp in seconds

        Returns:
            True when the request is admitted
        """
        with self._lock:
            self._tokens = self._refilled(now)
            self._last_refill = max(self._last_refill, now)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def peek(self, now: float) -> BucketState:
        """Report remaining capacity without consuming anything."""
        with self._lock:
            tokens = self._refilled(now)
        missing = self.burst - tokens
        return BucketState(
            remaining=int(math.floor(tokens)),
            reset_after=missing / self.rate if missing > 0 else 0.0,
            retry_after=(1.0 - tokens) / self.rate if tokens < 1.0 else 0.0,
        )

    @property
    def tokens(self) -> float:
        with self._lock:
            return self._tokens

    def __repr__(self) -> str:
        return f"TokenBucket(rate={self.rate}, burst={self.burst}, tokens={self._tokens:.3f})"
