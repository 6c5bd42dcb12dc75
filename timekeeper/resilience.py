"""
Circuit breaker for the shared cache connection.

After repeated connection failures the breaker opens and SharedCache stops
redialing until the cooldown elapses; the first caller after that gets a
single trial call (half-open), whose outcome either closes or re-opens it.
"""

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitBreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Counts consecutive connection failures for one dependency.

    Thread-safe: pollers for different schedulers share one cache handle
    and may report outcomes concurrently.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            cooldown_seconds: Time the circuit stays open before a trial call
            clock: Monotonic seconds source, injectable for tests
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.failure_count = 0
        self.state = CircuitBreakerState.CLOSED
        self.opened_at: float | None = None

    def remaining_cooldown(self) -> float:
        """Seconds until an open circuit admits a trial call (0 when not open)."""
        with self._lock:
            if self.state != CircuitBreakerState.OPEN or self.opened_at is None:
                return 0.0
            return max(0.0, self.cooldown_seconds - (self._clock() - self.opened_at))

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                if self._clock() - (self.opened_at or 0.0) < self.cooldown_seconds:
                    return False
                self.state = CircuitBreakerState.HALF_OPEN
                logger.debug("Circuit half-open, allowing one trial call")
            return True

    def record_success(self) -> None:
        with self._lock:
            if self.state != CircuitBreakerState.CLOSED:
                logger.info("Circuit closed after successful trial call")
            self.failure_count = 0
            self.state = CircuitBreakerState.CLOSED
            self.opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            tripped = (
                self.state == CircuitBreakerState.HALF_OPEN
                or self.failure_count >= self.failure_threshold
            )
            if not tripped:
                return
            if self.state != CircuitBreakerState.OPEN:
                logger.warning(
                    f"Circuit opened after {self.failure_count} failures, "
                    f"retrying in {self.cooldown_seconds:g}s"
                )
            self.state = CircuitBreakerState.OPEN
            self.opened_at = self._clock()
