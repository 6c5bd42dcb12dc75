"""
Lifecycle transitioners.

A transitioner wraps exactly one atomic check-and-transition operation of the
authoritative store. It performs no side effects of its own: the caller
decides what follows (cache invalidation, dedup'd notifications) based on
the returned count or summary. Store failures propagate so the poller can
treat the tick as a no-op.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from timekeeper.observability import REGISTRY

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationSummary:
    """Result of the combined meeting-notification check."""

    reminders_sent: int = 0
    starts_sent: int = 0

    @property
    def total_sent(self) -> int:
        return self.reminders_sent + self.starts_sent


@dataclass(frozen=True)
class EventStatusUpdate:
    """Result of the comprehensive event status recompute."""

    updated_count: int = 0
    details: str = ""


def changed_count(result: object) -> int:
    """Number of rows a transition result reports as changed."""
    if isinstance(result, int):
        return result
    if isinstance(result, NotificationSummary):
        return result.total_sent
    if isinstance(result, EventStatusUpdate):
        return result.updated_count
    raise TypeError(f"Unsupported transition result: {type(result).__name__}")


class LifecycleTransitioner(Generic[T]):
    """Invokes one store operation per run and reports what changed."""

    def __init__(self, name: str, operation: Callable[[], T]):
        self.name = name
        self.operation = operation
        self._duration = REGISTRY.histogram(
            f"transition_{name}_seconds", f"Duration of the {name} transition"
        )
        self._changed = REGISTRY.counter(
            f"transition_{name}_changed_total", f"Rows changed by the {name} transition"
        )

    def run_once(self) -> T:
        """
        Call the store operation once.

        Raises:
            Whatever the store raises (timeouts, connection errors). Nothing
            has been changed on the engine side when that happens.
        """
        start = time.perf_counter()
        try:
            result = self.operation()
        finally:
            elapsed = time.perf_counter() - start
            self._duration.observe(elapsed)

        changed = changed_count(result)
        if changed:
            self._changed.inc(changed)
        logger.debug(f"{self.name}: {changed} changed in {elapsed * 1000:.0f}ms")
        return result
