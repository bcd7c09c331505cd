"""
Circuit breaker guarding one upstream dependency.

States:
- CLOSED: normal operation, failures are counted.
- OPEN: calls fail fast until the cooldown elapses.
- HALF_OPEN: one trial call at a time; ``success_threshold`` consecutive
  successes close the breaker, any failure re-opens it.

Client errors (4xx) mean the dependency answered, so they are not counted
as failures.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, TypeVar

from loguru import logger

from .errors import CircuitOpenError, PermanentUpstreamError

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def counts_as_failure(error: BaseException) -> bool:
    status = getattr(error, "status", None)
    if isinstance(error, PermanentUpstreamError) and status is not None and 400 <= status < 500:
        return False
    return True


class CircuitBreaker:

    def __init__(self, name: str, failure_threshold: int = 5, cooldown: float = 60.0,
                 success_threshold: int = 2, clock: Callable[[], float] = time.monotonic,
                 is_failure: Callable[[BaseException], bool] = counts_as_failure):
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("thresholds must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.success_threshold = success_threshold
        self._clock = clock
        self._is_failure = is_failure
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_time = 0.0
        self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under breaker protection"""
        now = self._clock()
        if self.state is CircuitState.OPEN:
            if now < self.next_attempt_time:
                raise CircuitOpenError(self.name, retry_in=self.next_attempt_time - now)
            self._transition(CircuitState.HALF_OPEN)
            self.success_count = 0

        is_trial = self.state is CircuitState.HALF_OPEN
        if is_trial:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

        try:
            result = await operation()
        except Exception as e:
            if self._is_failure(e):
                self._on_failure()
            else:
                self._on_success()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
                self.success_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.success_count = 0
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.next_attempt_time = self._clock() + self.cooldown
            if self.state is not CircuitState.OPEN:
                self._transition(CircuitState.OPEN)
            self.failure_count = 0

    def _transition(self, state: CircuitState) -> None:
        if state is CircuitState.OPEN:
            logger.warning(f"Circuit breaker {self.name}: {self.state.value} -> OPEN for {self.cooldown:.1f}s")
        else:
            logger.info(f"Circuit breaker {self.name}: {self.state.value} -> {state.value}")
        self.state = state

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
        }

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_time = 0.0
        self._trial_in_flight = False
