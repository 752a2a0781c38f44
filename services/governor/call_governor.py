"""Rate limiting and categorized retry around every reasoning-service call.

Retry policy is configuration: callers hand the governor a zero-argument
callable and get back its result or a classified error. Each attempt takes
one token from the shared bucket first.

Based on tenacity:
https://tenacity.readthedocs.io/
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from services.governor.classify import classify_error
from services.governor.rate_limiter import TokenBucket
from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import (
    ErrorCategory,
    OperationCancelledError,
    ReasoningServiceError,
    ResponseParseError,
    RetriesExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff.

    The delay after failed attempt ``n`` is ``initial_delay * multiplier**(n-1)``
    capped at ``max_delay``; rate-limited failures double the capped delay.
    """

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
        )

    def delay_for(self, failed_attempt: int, category: ErrorCategory) -> float:
        delay = min(self.initial_delay * self.multiplier ** (failed_attempt - 1), self.max_delay)
        if category is ErrorCategory.RATE_LIMITED:
            delay *= 2
        return delay


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ReasoningServiceError) and exc.retryable


class CallGovernor:
    """Wraps outbound calls with a shared token bucket and retry policy."""

    def __init__(
        self,
        bucket: TokenBucket,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the governor.

        Args:
            bucket: Token bucket shared by every call in the process
            policy: Default retry policy
            sleep: Sleep function used when no cancel event is supplied
        """
        self.bucket = bucket
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "CallGovernor":
        return cls(TokenBucket.from_settings(settings), RetryPolicy.from_settings(settings))

    def execute(
        self,
        call: Callable[[], T],
        policy: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
        operation: str = "call",
    ) -> T:
        """Run ``call`` under the rate limit and retry policy.

        Args:
            call: Zero-argument callable performing one outbound request
            policy: Retry policy overriding the governor default
            cancel_event: When set, token waits and backoff waits abort
            operation: Name used in logs and metrics

        Returns:
            Whatever ``call`` returns

        Raises:
            ReasoningServiceError: Non-retryable failure, raised on first occurrence
            RetriesExhaustedError: Retryable failures consumed every attempt
            OperationCancelledError: Cancelled while waiting for a token or backing off
            ResponseParseError: Passed through from ``call`` without retry
        """
        policy = policy or self.policy

        def pause(seconds: float) -> None:
            if cancel_event is None:
                self._sleep(seconds)
            elif cancel_event.wait(seconds):
                raise OperationCancelledError(f"{operation} cancelled during retry backoff")

        def wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            category = exc.category if isinstance(exc, ReasoningServiceError) else None
            return policy.delay_for(
                retry_state.attempt_number, category or ErrorCategory.UNKNOWN
            )

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            category = exc.category.value if isinstance(exc, ReasoningServiceError) else "unknown"
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            log = logger.warning if category == ErrorCategory.RATE_LIMITED.value else logger.info
            log(f"{operation}: retrying in {delay:.1f}s after {category} error")

        retrying = Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            retry=retry_if_exception(_is_retryable),
            wait=wait,
            sleep=pause,
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    self.bucket.acquire(cancel_event)
                    try:
                        result = call()
                    except (OperationCancelledError, ResponseParseError):
                        raise
                    except Exception as e:
                        error = classify_error(e)
                        metrics.reasoning_call_attempts_total.labels(
                            operation=operation, outcome=error.category.value
                        ).inc()
                        logger.warning(
                            f"{operation}: attempt {number}/{policy.max_attempts} failed "
                            f"[{error.category.value}]: {e}"
                        )
                        if error is e:
                            raise
                        raise error from e
                    metrics.reasoning_call_attempts_total.labels(
                        operation=operation, outcome="success"
                    ).inc()
                    if number > 1:
                        logger.info(f"{operation}: succeeded on attempt {number}")
        except ReasoningServiceError as e:
            if e.retryable:
                raise RetriesExhaustedError(e.category, str(e), policy.max_attempts) from e
            raise
        return result


_governor: CallGovernor | None = None
_governor_lock = threading.Lock()


def get_call_governor(settings: Settings) -> CallGovernor:
    """Return the process-wide governor, creating it on first use."""
    global _governor
    with _governor_lock:
        if _governor is None:
            _governor = CallGovernor.from_settings(settings)
            logger.info(
                f"Call governor initialized: capacity={settings.rate_limit_capacity}, "
                f"refill={settings.rate_limit_refill_tokens}/"
                f"{settings.rate_limit_refill_interval_seconds}s"
            )
        return _governor
