"""Process-wide token bucket for reasoning-service calls."""

import logging
import threading
import time
from collections.abc import Callable

from pydantic import BaseModel

from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import OperationCancelledError

logger = logging.getLogger(__name__)

# Upper bound on a single condition wait so cancellation is noticed promptly
_MAX_WAIT_SLICE = 0.25


class RateBudget(BaseModel):
    """Point-in-time view of the bucket."""

    tokens: int
    capacity: int
    last_refill: float


class TokenBucket:
    """Token bucket with whole-interval refill.

    ``refill_tokens`` are added for every full ``refill_interval`` elapsed since
    the last refill; ``last_refill`` only ever advances by whole intervals, and
    the token count never exceeds ``capacity``. All state changes happen under
    one lock.
    """

    def __init__(
        self,
        capacity: int,
        refill_tokens: int,
        refill_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1 or refill_tokens < 1 or refill_interval <= 0:
            raise ValueError("capacity and refill_tokens must be >= 1, refill_interval > 0")
        self._capacity = capacity
        self._refill_tokens = refill_tokens
        self._interval = refill_interval
        self._clock = clock
        self._tokens = capacity
        self._last_refill = clock()
        self._cond = threading.Condition()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenBucket":
        return cls(
            capacity=settings.rate_limit_capacity,
            refill_tokens=settings.rate_limit_refill_tokens,
            refill_interval=settings.rate_limit_refill_interval_seconds,
        )

    def _refill(self) -> None:
        now = self._clock()
        intervals = int((now - self._last_refill) // self._interval)
        if intervals > 0:
            self._tokens = min(self._capacity, self._tokens + intervals * self._refill_tokens)
            self._last_refill += intervals * self._interval
            self._cond.notify_all()

    def _seconds_until_refill(self) -> float:
        return max(0.0, self._last_refill + self._interval - self._clock())

    def try_acquire(self) -> bool:
        """Take a token if one is available without waiting."""
        with self._cond:
            self._refill()
            if self._tokens > 0:
                self._tokens -= 1
                return True
            return False

    def acquire(self, cancel_event: threading.Event | None = None) -> float:
        """Block until a token is available and take it.

        Args:
            cancel_event: Set by the caller to abandon the wait

        Returns:
            Seconds spent waiting

        Raises:
            OperationCancelledError: If cancel_event is set before a token is granted
        """
        start = time.monotonic()
        with self._cond:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError("Cancelled while waiting for a rate-limit token")
                self._refill()
                if self._tokens > 0:
                    self._tokens -= 1
                    break
                wait = self._seconds_until_refill()
                logger.debug(f"Rate limit reached, waiting up to {wait:.2f}s for a token")
                self._cond.wait(timeout=min(max(wait, 0.01), _MAX_WAIT_SLICE))

        waited = time.monotonic() - start
        metrics.rate_limit_wait_seconds.observe(waited)
        if waited > 1.0:
            logger.info(f"Waited {waited:.1f}s for a rate-limit token")
        return waited

    def budget(self) -> RateBudget:
        with self._cond:
            self._refill()
            return RateBudget(
                tokens=self._tokens, capacity=self._capacity, last_refill=self._last_refill
            )
