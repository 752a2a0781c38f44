"""Step-by-step progress record for one analysis request.

The timeout path reads the trace from another thread while the pipeline is
still writing to it, so every access takes the lock.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from services.orchestrator.models import OrchestratorState, ProcessingSummary, StepRecord
from services.shared.token_usage import TokenUsage

logger = logging.getLogger(__name__)


class ProcessingTrace:
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._started = time.monotonic()
        self._lock = threading.Lock()
        self._steps: list[StepRecord] = []
        self._current: OrchestratorState | None = None
        self._current_index: int | None = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    @property
    def current(self) -> OrchestratorState | None:
        with self._lock:
            return self._current

    def log(self, level: int, message: str) -> None:
        logger.log(level, f"[{self.request_id}] {message}")

    @contextmanager
    def step(self, state: OrchestratorState, detail: str = "") -> Iterator[None]:
        """Record a pipeline state with its duration and outcome."""
        start = time.monotonic()
        with self._lock:
            self._current = state
            index = len(self._steps)
            self._current_index = index
            self._steps.append(StepRecord(name=state.value, status="running", detail=detail))
        self.log(logging.INFO, f"-> {state.value}")
        try:
            yield
        except BaseException:
            self._finish(index, "failed", start)
            raise
        self._finish(index, "completed", start)

    def record_usage(self, usage: TokenUsage) -> None:
        """Add reasoning-service tokens to the step in progress."""
        if not usage.total_tokens:
            return
        with self._lock:
            if self._current_index is None:
                return
            record = self._steps[self._current_index]
            self._steps[self._current_index] = record.model_copy(
                update={"token_usage": record.token_usage + usage}
            )

    @property
    def token_usage(self) -> TokenUsage:
        with self._lock:
            steps = list(self._steps)
        return sum((s.token_usage for s in steps), TokenUsage())

    def _finish(self, index: int, status: str, start: float) -> None:
        duration = round(time.monotonic() - start, 3)
        with self._lock:
            record = self._steps[index]
            self._steps[index] = record.model_copy(
                update={"status": status, "duration_seconds": duration}
            )
        self.log(logging.INFO, f"<- {self._steps[index].name} {status} in {duration:.2f}s")

    def summary(self) -> ProcessingSummary:
        with self._lock:
            steps = list(self._steps)
        running = [s.name for s in steps if s.status == "running"]
        failed = [s.name for s in steps if s.status == "failed"]
        return ProcessingSummary(
            current_step=running[-1] if running else None,
            completed_steps=[s.name for s in steps if s.status == "completed"],
            failed_step=failed[-1] if failed else None,
            elapsed_seconds=round(self.elapsed, 2),
            token_usage=sum((s.token_usage for s in steps), TokenUsage()),
            steps=steps,
        )
