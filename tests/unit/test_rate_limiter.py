"""Unit tests for the token bucket."""

import threading
import time

import pytest

from services.governor.rate_limiter import TokenBucket
from services.shared.config import Settings
from services.shared.errors import OperationCancelledError


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestTokenBucket:
    """Test acquisition and whole-interval refill."""

    def test_starts_full(self) -> None:
        """Should allow capacity acquisitions without waiting."""
        clock = FakeClock()
        bucket = TokenBucket(capacity=3, refill_tokens=1, refill_interval=5.0, clock=clock)

        assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]

    def test_no_refill_before_full_interval(self) -> None:
        """Should not add tokens for a partial interval."""
        clock = FakeClock()
        bucket = TokenBucket(capacity=1, refill_tokens=1, refill_interval=5.0, clock=clock)
        bucket.try_acquire()

        clock.now = 4.99
        assert bucket.try_acquire() is False

        clock.now = 5.0
        assert bucket.try_acquire() is True

    def test_last_refill_advances_by_whole_intervals(self) -> None:
        """Should carry the fractional remainder into the next interval."""
        clock = FakeClock()
        bucket = TokenBucket(capacity=5, refill_tokens=1, refill_interval=5.0, clock=clock)
        for _ in range(5):
            bucket.try_acquire()

        clock.now = 12.0  # two whole intervals plus 2 seconds
        budget = bucket.budget()

        assert budget.tokens == 2
        assert budget.last_refill == 10.0

        clock.now = 15.0
        assert bucket.budget().tokens == 3

    def test_never_exceeds_capacity(self) -> None:
        """Should cap tokens at capacity after a long idle period."""
        clock = FakeClock()
        bucket = TokenBucket(capacity=2, refill_tokens=1, refill_interval=1.0, clock=clock)
        bucket.try_acquire()

        clock.now = 1000.0

        assert bucket.budget().tokens == 2

    def test_refill_tokens_per_interval(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(capacity=10, refill_tokens=3, refill_interval=2.0, clock=clock)
        for _ in range(10):
            bucket.try_acquire()

        clock.now = 4.0

        assert bucket.budget().tokens == 6

    def test_invalid_configuration_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenBucket(capacity=0, refill_tokens=1, refill_interval=1.0)
        with pytest.raises(ValueError):
            TokenBucket(capacity=1, refill_tokens=1, refill_interval=0)

    def test_from_settings(self) -> None:
        bucket = TokenBucket.from_settings(Settings(rate_limit_capacity=4))

        assert bucket.budget().capacity == 4
        assert bucket.budget().tokens == 4


class TestBlockingAcquire:
    """Test blocking acquisition with the real clock."""

    def test_acquire_waits_for_refill(self) -> None:
        """Should block until the next interval when empty."""
        bucket = TokenBucket(capacity=1, refill_tokens=1, refill_interval=0.2)
        bucket.acquire()

        start = time.monotonic()
        waited = bucket.acquire()

        assert time.monotonic() - start >= 0.15
        assert waited >= 0.15

    def test_acquire_returns_immediately_with_tokens(self) -> None:
        bucket = TokenBucket(capacity=2, refill_tokens=1, refill_interval=60.0)

        assert bucket.acquire() < 0.1

    def test_cancel_aborts_wait(self) -> None:
        """Should raise OperationCancelledError when cancelled while waiting."""
        bucket = TokenBucket(capacity=1, refill_tokens=1, refill_interval=60.0)
        bucket.acquire()
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()

        start = time.monotonic()
        with pytest.raises(OperationCancelledError):
            bucket.acquire(cancel)

        assert time.monotonic() - start < 2.0

    def test_concurrent_acquirers_never_overdraw(self) -> None:
        """Should grant exactly capacity tokens to concurrent callers in one interval."""
        bucket = TokenBucket(capacity=5, refill_tokens=1, refill_interval=60.0)
        granted: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            result = bucket.try_acquire()
            with lock:
                granted.append(result)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert granted.count(True) == 5
        assert bucket.budget().tokens == 0
