"""
Break reminder scheduler: one aligned poll delegating to the store.
"""

import logging

from timekeeper.time_utils import now_utc
from timekeeper.transitions import LifecycleTransitioner

from .base import BaseScheduler

logger = logging.getLogger(__name__)


class BreakScheduler(BaseScheduler):
    name = "breaks"

    def __init__(self, store, cache=None, schedule=None, clock=now_utc):
        super().__init__(store, cache, schedule, clock)
        self.reminder_transition = LifecycleTransitioner(
            "break_reminders", lambda: store.check_break_reminders(self.clock())
        )
        self.add_poller("breaks", self.check_break_reminders)

    def check_break_reminders(self) -> int:
        sent = self.reminder_transition.run_once()
        if sent > 0:
            logger.info(f"Sent {sent} break reminders")
        return sent
