"""Tests for the token bucket rate cell."""

import threading

import pytest

from tollgate.app.exceptions import ConfigurationError
from tollgate.app.ratelimit.token_bucket import TokenBucket


class TestTokenBucket:
    """Refill-then-consume semantics."""

    def test_admits_exactly_burst_at_same_instant(self):
        """A full bucket admits burst requests, then rejects."""
        bucket = TokenBucket(rate=2.0, burst=5, now=0.0)

        results = [bucket.try_consume(0.0) for _ in range(5)]
        assert results == [True] * 5
        assert bucket.try_consume(0.0) is False

    def test_one_token_after_one_interval(self):
        """Waiting 1/rate seconds earns exactly one more request."""
        bucket = TokenBucket(rate=4.0, burst=2, now=10.0)
        assert bucket.try_consume(10.0)
        assert bucket.try_consume(10.0)
        assert not bucket.try_consume(10.0)

        assert bucket.try_consume(10.25) is True
        assert bucket.try_consume(10.25) is False

    def test_fractional_rate(self):
        """0.1 requests/sec allows one request every ten seconds."""
        bucket = TokenBucket(rate=0.1, burst=1, now=0.0)
        assert bucket.try_consume(0.0) is True
        assert bucket.try_consume(0.0) is False
        assert bucket.try_consume(5.0) is False
        assert bucket.try_consume(15.0) is True

    def test_rejection_does_not_spend_tokens(self):
        """A rejected call leaves accumulated fractional tokens intact."""
        bucket = TokenBucket(rate=1.0, burst=1, now=0.0)
        assert bucket.try_consume(0.0)
        assert not bucket.try_consume(0.5)
        # 0.5 tokens earned before plus 0.5 now
        assert bucket.try_consume(1.0)

    def test_refill_capped_at_burst(self):
        """Long idle periods never bank more than burst tokens."""
        bucket = TokenBucket(rate=10.0, burst=3, now=0.0)
        for _ in range(3):
            bucket.try_consume(0.0)

        admitted = sum(bucket.try_consume(1000.0) for _ in range(10))
        assert admitted == 3

    def test_clock_going_backwards_does_not_refill_or_drain(self):
        bucket = TokenBucket(rate=1.0, burst=1, now=100.0)
        assert bucket.try_consume(100.0)
        assert not bucket.try_consume(50.0)
        assert bucket.try_consume(101.0)

    def test_peek_reports_state_without_consuming(self):
        bucket = TokenBucket(rate=1.0, burst=3, now=0.0)
        bucket.try_consume(0.0)

        state = bucket.peek(0.0)
        assert state.remaining == 2
        assert state.reset_after == pytest.approx(1.0)
        assert state.retry_after == 0.0
        assert bucket.peek(0.0).remaining == 2

    def test_peek_retry_after_when_empty(self):
        bucket = TokenBucket(rate=0.5, burst=1, now=0.0)
        bucket.try_consume(0.0)

        state = bucket.peek(0.0)
        assert state.remaining == 0
        assert state.retry_after == pytest.approx(2.0)

    @pytest.mark.parametrize(
        ("rate", "burst"),
        [(0, 1), (-1.0, 1), (float("nan"), 1), (1.0, 0), (1.0, -3)],
    )
    def test_invalid_parameters_rejected(self, rate, burst):
        with pytest.raises(ConfigurationError):
            TokenBucket(rate=rate, burst=burst, now=0.0)

    def test_concurrent_consumers_never_over_admit(self):
        """Threads racing for one token: exactly one wins."""
        bucket = TokenBucket(rate=0.001, burst=1, now=0.0)
        barrier = threading.Barrier(16)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            admitted = bucket.try_consume(0.0)
            with results_lock:
                results.append(admitted)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 15
