"""Simple async circuit breaker."""

from __future__ import annotations

import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from poolwatch.common import metrics

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    pass


# matches the poolwatch_circuit_state help text
_STATE_VALUE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 30.0, component: str = "rpc"):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.component = component
        self.failures = 0
        self.state = CircuitState.CLOSED
        self.last_failure = 0.0

    def retry_after(self) -> float:
        """Seconds until an open circuit allows a trial call."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (time.monotonic() - self.last_failure))

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        if self.state == CircuitState.OPEN:
            if time.monotonic() - self.last_failure > self.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                self._publish()
            else:
                raise CircuitOpenError(f"circuit_open component={self.component}")
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failures = 0
        self.state = CircuitState.CLOSED
        self._publish()

    def _on_failure(self) -> None:
        self.failures += 1
        self.last_failure = time.monotonic()
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            self.state = CircuitState.OPEN
        self._publish()

    def _publish(self) -> None:
        metrics.CIRCUIT_STATE.labels(component=self.component).set(_STATE_VALUE[self.state])


__all__ = ["CircuitBreaker", "CircuitState", "CircuitOpenError"]
