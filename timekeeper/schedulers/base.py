"""
Common scheduler shell: owns a set of pollers and the injected cache handle.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from timekeeper.cache import SharedCache
from timekeeper.poller import ReentrantPoller
from timekeeper.schedule_config import DEFAULT_SCHEDULE, PollSchedule, load_schedule
from timekeeper.time_utils import now_utc

logger = logging.getLogger(__name__)


class BaseScheduler:
    """
    A named group of independent pollers.

    Subclasses register their polls in __init__ via add_poller(). Pollers
    of one scheduler share nothing but the store and the cache handle; each
    has its own re-entrancy guard.
    """

    name = "scheduler"

    def __init__(
        self,
        store,
        cache: SharedCache | None = None,
        schedule: dict[str, PollSchedule] | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self._owns_cache = cache is None
        self.cache = cache if cache is not None else SharedCache(None)
        self.schedule = schedule if schedule is not None else load_schedule()
        self.clock = clock
        self.pollers: dict[str, ReentrantPoller] = {}

    def add_poller(self, key: str, work: Callable[[], Any]) -> ReentrantPoller:
        cadence = self.schedule.get(key) or DEFAULT_SCHEDULE[key]
        poller = ReentrantPoller(key, cadence.interval_seconds, work, align=cadence.align)
        self.pollers[key] = poller
        return poller

    @property
    def is_running(self) -> bool:
        return any(p.is_running for p in self.pollers.values())

    def start(self) -> None:
        """
        Start every poller.

        Raises:
            RuntimeError: a poller thread could not be started; the ones
                already started are stopped again
        """
        if self.is_running:
            logger.info(f"{self.name} scheduler already running")
            return

        started: list[ReentrantPoller] = []
        try:
            for poller in self.pollers.values():
                poller.start()
                started.append(poller)
        except RuntimeError:
            for poller in started:
                poller.stop(wait=False)
            raise

        intervals = ", ".join(f"{p.name}={p.interval_seconds:g}s" for p in self.pollers.values())
        logger.info(f"{self.name} scheduler started ({intervals})")

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """Cancel all future ticks, let in-flight work finish, release the cache."""
        for poller in self.pollers.values():
            poller.stop(wait=wait, timeout=timeout)
        if self._owns_cache:
            self.cache.close()
        logger.info(f"{self.name} scheduler stopped")

    def run_once(self) -> dict[str, bool]:
        """One synchronous guarded tick of every poller."""
        return {key: poller.tick() for key, poller in self.pollers.items()}

    def status(self) -> dict[str, Any]:
        return {
            "scheduler": self.name,
            "is_running": self.is_running,
            "cache_connected": self.cache.connected,
            "pollers": {key: poller.snapshot() for key, poller in self.pollers.items()},
        }
