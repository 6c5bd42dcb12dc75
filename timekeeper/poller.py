"""
Re-entrancy-guarded interval poller.

Runs one unit of work immediately on start and then on a fixed-rate tick
grid. If the previous invocation is still in flight when a tick fires, the
tick is dropped: there is never more than one concurrent invocation per
poller and ticks never queue up. Exceptions raised by the work are logged
and recorded; they never stop the loop.

The guard is a non-blocking Lock acquire, which is atomic under real
threads, so the "skip if busy" property does not depend on a GIL or on
cooperative scheduling.
"""

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from timekeeper.observability import REGISTRY, TickContext

logger = logging.getLogger(__name__)


class PollerHealth(str, enum.Enum):
    """Health status derived from consecutive failures."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class PollerState:
    """Runtime state for a poller."""

    runs: int = 0
    skipped: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_run: datetime | None = None
    last_success: datetime | None = None
    last_error: str | None = None
    health: PollerHealth = PollerHealth.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "health": self.health.value,
        }


class ReentrantPoller:
    """
    Invokes `work()` every `interval_seconds` with at most one call in flight.

    Usage:
        poller = ReentrantPoller("meeting_start", 0.5, scheduler.check_scheduled_meetings)
        poller.start()
        ...
        poller.stop()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        work: Callable[[], Any],
        *,
        align: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.work = work
        self.align = align
        self.state = PollerState()

        self._guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ticker: threading.Thread | None = None
        self._inflight: threading.Thread | None = None

        self._runs = REGISTRY.counter(f"poll_{name}_runs_total", f"Invocations of {name}")
        self._skips = REGISTRY.counter(
            f"poll_{name}_skipped_total", f"Ticks of {name} dropped while busy"
        )
        self._errors = REGISTRY.counter(f"poll_{name}_errors_total", f"Failed invocations of {name}")
        self._duration = REGISTRY.histogram(
            f"poll_{name}_duration_seconds", f"Duration of {name} invocations"
        )
        self._health_gauge = REGISTRY.gauge(f"poll_{name}_health", f"Health of poller {name}")
        self._health_gauge.set(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and self._ticker.is_alive()

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    def start(self) -> None:
        """Run the work now and then on every tick until stop()."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._ticker = threading.Thread(
            target=self._tick_loop, name=f"poller-{self.name}", daemon=True
        )
        self._ticker.start()
        logger.info(f"Started poller {self.name} (every {self.interval_seconds:g}s)")

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """
        Cancel future ticks.

        An invocation already in flight is allowed to finish; with wait=True
        this blocks until it has.
        """
        self._stop_event.set()
        ticker = self._ticker
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join(timeout)
        self._ticker = None

        inflight = self._inflight
        if wait and inflight is not None and inflight is not threading.current_thread():
            inflight.join(timeout)
        logger.info(f"Stopped poller {self.name}")

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def tick(self) -> bool:
        """
        Run one guarded invocation in the calling thread.

        Returns:
            False if an invocation was already in flight (tick skipped)
        """
        if not self._guard.acquire(blocking=False):
            self._record_skip()
            return False
        try:
            self._invoke()
        finally:
            self._guard.release()
        return True

    def _dispatch(self) -> None:
        """Fire one tick without blocking the tick grid."""
        if not self._guard.acquire(blocking=False):
            self._record_skip()
            return
        worker = threading.Thread(
            target=self._run_and_release, name=f"poller-{self.name}-work", daemon=True
        )
        self._inflight = worker
        try:
            worker.start()
        except RuntimeError:
            self._guard.release()
            raise

    def _run_and_release(self) -> None:
        try:
            self._invoke()
        finally:
            self._guard.release()

    def _tick_loop(self) -> None:
        self._dispatch()

        next_tick = time.monotonic() + self._first_delay()
        while not self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self._dispatch()
            next_tick += self.interval_seconds
            now = time.monotonic()
            if next_tick < now:
                # Fell behind (sleep/wake, long GC). Realign instead of bursting.
                missed = int((now - next_tick) // self.interval_seconds) + 1
                next_tick += missed * self.interval_seconds

    def _first_delay(self) -> float:
        if not self.align:
            return self.interval_seconds
        return self.interval_seconds - (time.time() % self.interval_seconds)

    # ------------------------------------------------------------------
    # Invocation + bookkeeping
    # ------------------------------------------------------------------

    def _invoke(self) -> None:
        start = time.perf_counter()
        with self._state_lock:
            self.state.runs += 1
            self.state.last_run = datetime.now()
        self._runs.inc()

        with TickContext(self.name):
            try:
                self.work()
            except Exception as e:  # noqa: BLE001
                self._record_failure(e)
                logger.exception(f"{self.name} failed: {e}")
            else:
                self._record_success()
            finally:
                self._duration.observe(time.perf_counter() - start)

    def _record_skip(self) -> None:
        with self._state_lock:
            self.state.skipped += 1
        self._skips.inc()
        logger.debug(f"{self.name} still running, skipping tick")

    def _record_success(self) -> None:
        with self._state_lock:
            self.state.last_success = datetime.now()
            self.state.last_error = None
            self.state.consecutive_failures = 0
            self._update_health()

    def _record_failure(self, error: Exception) -> None:
        self._errors.inc()
        with self._state_lock:
            self.state.failures += 1
            self.state.consecutive_failures += 1
            self.state.last_error = f"{type(error).__name__}: {error}"[:500]
            self._update_health()

    def _update_health(self) -> None:
        """Update health status based on consecutive failures. Caller holds _state_lock."""
        old = self.state.health
        failures = self.state.consecutive_failures
        if failures == 0:
            new = PollerHealth.HEALTHY
        elif failures < 3:
            new = PollerHealth.DEGRADED
        else:
            new = PollerHealth.UNHEALTHY
        self.state.health = new

        if old != new:
            logger.warning(f"{self.name} health changed: {old.value} -> {new.value} ({failures} consecutive failures)")
        self._health_gauge.set({"healthy": 1, "degraded": 0.5, "unhealthy": 0}[new.value])

    def snapshot(self) -> dict[str, Any]:
        """Interval, running flag and counters, for status output."""
        with self._state_lock:
            data = self.state.to_dict()
        data.update(
            {
                "name": self.name,
                "interval_seconds": self.interval_seconds,
                "is_running": self.is_running,
                "busy": self.busy,
            }
        )
        return data
