"""Sharded in-memory map with sliding expiration.

Entries carry their own expiration timestamp which moves forward on every
access. Expired entries are treated as missing on read and are physically
removed by a periodic sweep running on a background thread.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from tollgate.app.core.logging import get_logger

logger = get_logger(__name__)

V = TypeVar("V")

DEFAULT_TTL = 87600 * 3600.0  # 10 years, i.e. never expire in practice
DEFAULT_SWEEP_INTERVAL = 60.0
DEFAULT_SHARDS = 16


@dataclass
class _Entry(Generic[V]):
    """Internal entry with sliding TTL tracking."""

    value: V
    ttl: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def touch(self, now: float) -> None:
        self.expires_at = now + self.ttl


class _Shard(Generic[V]):
    __slots__ = ("data", "lock")

    def __init__(self) -> None:
        self.data: Dict[str, _Entry[V]] = {}
        self.lock = threading.Lock()


class ExpiringStore(Generic[V]):
    """Concurrent key/value store with per-entry sliding TTL.

    Structural changes lock a single shard, so lookups for unrelated keys
    rarely contend and a sweep never holds more than one shard lock at a time.

    Example:
        >>> store = ExpiringStore(default_ttl=60)
        >>> bucket = store.get_or_create("1.2.3.4|/", lambda: object())
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the store.

        Args:
            default_ttl: Idle lifetime of an entry in seconds (<= 0 means default)
            sweep_interval: Seconds between background sweeps (<= 0 means default)
            shards: Number of independently locked partitions
            clock: Monotonic time source, injectable for tests
        """
        self.default_ttl = default_ttl if default_ttl > 0 else DEFAULT_TTL
        self.sweep_interval = sweep_interval if sweep_interval > 0 else DEFAULT_SWEEP_INTERVAL
        self._clock = clock
        self._shards: List[_Shard[V]] = [_Shard() for _ in range(max(1, shards))]
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()

    def _shard_for(self, key: str) -> _Shard[V]:
        return self._shards[hash(key) % len(self._shards)]

    def _ttl(self, ttl: Optional[float]) -> float:
        return ttl if ttl is not None and ttl > 0 else self.default_ttl

    def get_or_create(
        self,
        key: str,
        factory: Callable[[], V],
        ttl: Optional[float] = None,
    ) -> V:
        """Return the live value for ``key`` or store a new one from ``factory``.

        The lookup, expiration check and insert happen under the key's shard
        lock, so concurrent callers for the same key always share one value.
        If ``factory`` raises, nothing is stored and the error propagates.
        """
        shard = self._shard_for(key)
        with shard.lock:
            now = self._clock()
            entry = shard.data.get(key)
            if entry is not None and not entry.is_expired(now):
                entry.touch(now)
                return entry.value
            value = factory()
            entry_ttl = self._ttl(ttl)
            shard.data[key] = _Entry(value=value, ttl=entry_ttl, expires_at=now + entry_ttl)
            return value

    def get(self, key: str) -> Optional[V]:
        """Return the live value for ``key`` and refresh its expiration.

        Expired entries are reported as missing even before a sweep removes them.
        """
        shard = self._shard_for(key)
        with shard.lock:
            now = self._clock()
            entry = shard.data.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del shard.data[key]
                return None
            entry.touch(now)
            return entry.value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            entry_ttl = self._ttl(ttl)
            shard.data[key] = _Entry(value=value, ttl=entry_ttl, expires_at=self._clock() + entry_ttl)

    def delete(self, key: str) -> bool:
        shard = self._shard_for(key)
        with shard.lock:
            return shard.data.pop(key, None) is not None

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.data.clear()

    def sweep(self) -> int:
        """Remove expired entries, one shard at a time.

        Returns:
            Number of entries removed.
        """
        removed = 0
        for shard in self._shards:
            with shard.lock:
                now = self._clock()
                expired = [k for k, e in shard.data.items() if e.is_expired(now)]
                for key in expired:
                    del shard.data[key]
            removed += len(expired)
        return removed

    def items(self) -> Iterator[Tuple[str, V]]:
        """Iterate over a snapshot of live entries without refreshing them."""
        for shard in self._shards:
            with shard.lock:
                now = self._clock()
                snapshot = [(k, e.value) for k, e in shard.data.items() if not e.is_expired(now)]
            yield from snapshot

    def __len__(self) -> int:
        return sum(1 for _ in self.items())

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        shard = self._shard_for(key)
        with shard.lock:
            entry = shard.data.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    # Background sweeper

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background sweep thread (no-op if already running)."""
        with self._thread_lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._sweep_loop,
                name="tollgate-sweeper",
                daemon=True,
            )
            self._thread.start()
        logger.debug(f"Expiring store sweeper started (interval={self.sweep_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the sweep thread to stop and wait for completion."""
        with self._thread_lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None:
            thread.join(timeout=timeout)
            logger.debug("Expiring store sweeper stopped")

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                removed = self.sweep()
            except Exception:
                logger.exception("Expiring store sweep failed")
                continue
            if removed:
                logger.debug(f"Swept {removed} expired entries")
