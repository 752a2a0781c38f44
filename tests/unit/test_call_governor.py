"""Unit tests for the CallGovernor retry and rate-limit wrapper."""

import threading
from unittest.mock import MagicMock

import pytest

from services.governor.call_governor import CallGovernor, RetryPolicy
from services.governor.rate_limiter import TokenBucket
from services.shared.config import Settings
from services.shared.errors import (
    ErrorCategory,
    OperationCancelledError,
    ReasoningServiceError,
    ResponseParseError,
    RetriesExhaustedError,
)


def _error(category: ErrorCategory) -> ReasoningServiceError:
    return ReasoningServiceError(category, f"{category.value} failure")


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def governor(sleeps: list[float]) -> CallGovernor:
    bucket = TokenBucket(capacity=100, refill_tokens=1, refill_interval=1.0)
    return CallGovernor(bucket, RetryPolicy(), sleep=sleeps.append)


class TestRetryPolicy:
    """Test backoff delay computation."""

    def test_exponential_delays(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=8.0)

        delays = [policy.delay_for(n, ErrorCategory.SERVER_ERROR) for n in range(1, 6)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_rate_limited_doubles_capped_delay(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=8.0)

        assert policy.delay_for(1, ErrorCategory.RATE_LIMITED) == 2.0
        assert policy.delay_for(5, ErrorCategory.RATE_LIMITED) == 16.0

    def test_from_settings(self) -> None:
        policy = RetryPolicy.from_settings(
            Settings(retry_max_attempts=5, retry_initial_delay_seconds=0.5)
        )

        assert policy.max_attempts == 5
        assert policy.initial_delay == 0.5


class TestCallGovernor:
    """Test execution, retry and cancellation."""

    def test_success_first_attempt(self, governor: CallGovernor, sleeps: list[float]) -> None:
        """Should return the call result without sleeping."""
        call = MagicMock(return_value="ok")

        assert governor.execute(call) == "ok"
        assert call.call_count == 1
        assert sleeps == []

    def test_retries_server_error_then_succeeds(
        self, governor: CallGovernor, sleeps: list[float]
    ) -> None:
        """Should retry a server error with backoff."""
        call = MagicMock(side_effect=[_error(ErrorCategory.SERVER_ERROR), "ok"])

        assert governor.execute(call) == "ok"
        assert call.call_count == 2
        assert sleeps == [1.0]

    def test_backoff_sequence(self, governor: CallGovernor, sleeps: list[float]) -> None:
        """Should wait 1s then 2s between three timeout attempts."""
        call = MagicMock(side_effect=_error(ErrorCategory.TIMEOUT))

        with pytest.raises(RetriesExhaustedError):
            governor.execute(call)

        assert call.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_rate_limited_waits_doubled(
        self, governor: CallGovernor, sleeps: list[float]
    ) -> None:
        """Should double backoff for rate-limited failures."""
        call = MagicMock(side_effect=[_error(ErrorCategory.RATE_LIMITED)] * 2 + ["ok"])

        assert governor.execute(call) == "ok"
        assert sleeps == [2.0, 4.0]

    def test_non_retryable_fails_immediately(
        self, governor: CallGovernor, sleeps: list[float]
    ) -> None:
        """Should surface a non-retryable error on the first occurrence."""
        call = MagicMock(side_effect=_error(ErrorCategory.AUTH))

        with pytest.raises(ReasoningServiceError) as exc_info:
            governor.execute(call)

        assert not isinstance(exc_info.value, RetriesExhaustedError)
        assert exc_info.value.category is ErrorCategory.AUTH
        assert call.call_count == 1
        assert sleeps == []

    def test_exhausted_error_carries_category_and_attempts(self, governor: CallGovernor) -> None:
        call = MagicMock(side_effect=_error(ErrorCategory.NETWORK))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            governor.execute(call)

        assert exc_info.value.category is ErrorCategory.NETWORK
        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable

    def test_raw_exceptions_classified(self, governor: CallGovernor) -> None:
        """Should classify untyped exceptions before deciding on retry."""
        call = MagicMock(side_effect=[TimeoutError("slow"), "ok"])

        assert governor.execute(call) == "ok"
        assert call.call_count == 2

    def test_unknown_error_not_retried(self, governor: CallGovernor) -> None:
        call = MagicMock(side_effect=RuntimeError("weird"))

        with pytest.raises(ReasoningServiceError) as exc_info:
            governor.execute(call)

        assert exc_info.value.category is ErrorCategory.UNKNOWN
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert call.call_count == 1

    def test_parse_error_passes_through(self, governor: CallGovernor) -> None:
        """Should not retry or classify parse failures."""
        call = MagicMock(side_effect=ResponseParseError("bad json"))

        with pytest.raises(ResponseParseError):
            governor.execute(call)

        assert call.call_count == 1

    def test_policy_override(self, governor: CallGovernor, sleeps: list[float]) -> None:
        call = MagicMock(side_effect=_error(ErrorCategory.SERVER_ERROR))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            governor.execute(call, policy=RetryPolicy(max_attempts=2, initial_delay=0.5))

        assert call.call_count == 2
        assert sleeps == [0.5]
        assert exc_info.value.attempts == 2

    def test_one_token_per_attempt(self) -> None:
        """Should take a rate-limit token before every attempt."""
        bucket = TokenBucket(capacity=10, refill_tokens=1, refill_interval=3600.0)
        governor = CallGovernor(bucket, RetryPolicy(), sleep=lambda _: None)
        call = MagicMock(side_effect=[_error(ErrorCategory.SERVER_ERROR), "ok"])

        governor.execute(call)

        assert bucket.budget().tokens == 8

    def test_cancel_during_backoff(self) -> None:
        """Should abort the backoff wait when the cancel event is set."""
        bucket = TokenBucket(capacity=10, refill_tokens=1, refill_interval=1.0)
        governor = CallGovernor(bucket, RetryPolicy(initial_delay=30.0, max_delay=30.0))
        cancel = threading.Event()
        call = MagicMock(side_effect=_error(ErrorCategory.SERVER_ERROR))
        threading.Timer(0.1, cancel.set).start()

        with pytest.raises(OperationCancelledError):
            governor.execute(call, cancel_event=cancel)

        assert call.call_count == 1

    def test_cancelled_before_start(self, governor: CallGovernor) -> None:
        """Should not call out once cancelled."""
        cancel = threading.Event()
        cancel.set()
        call = MagicMock(return_value="ok")

        with pytest.raises(OperationCancelledError):
            governor.execute(call, cancel_event=cancel)

        call.assert_not_called()
