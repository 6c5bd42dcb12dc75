"""
Meeting lifecycle scheduler.

Three independent polls:
- meeting_start: scheduled -> in-progress when start_time arrives, then
  invalidate the meeting caches of every meeting owner
- meeting_reminders: reminder ahead of each meeting (no state change)
- meeting_notifications: starting-soon and backfilled started notifications
"""

import logging
import sqlite3
from typing import Any

from timekeeper.cache import CacheInvalidator, meeting_scope
from timekeeper.time_utils import now_utc
from timekeeper.transitions import LifecycleTransitioner, NotificationSummary

from .base import BaseScheduler

logger = logging.getLogger(__name__)


class MeetingScheduler(BaseScheduler):
    name = "meetings"

    def __init__(self, store, cache=None, schedule=None, clock=now_utc, invalidator=None):
        super().__init__(store, cache, schedule, clock)
        self.invalidator = invalidator or CacheInvalidator(self.cache)

        self.start_transition = LifecycleTransitioner(
            "start_meetings", lambda: store.check_and_start_scheduled_meetings(self.clock())
        )
        self.reminder_transition = LifecycleTransitioner(
            "meeting_reminders", lambda: store.check_meeting_reminders(self.clock())
        )
        self.notification_transition = LifecycleTransitioner(
            "meeting_notifications", lambda: store.check_meeting_notifications(self.clock())
        )

        self.add_poller("meeting_start", self.check_scheduled_meetings)
        self.add_poller("meeting_reminders", self.check_meeting_reminders)
        self.add_poller("meeting_notifications", self.check_meeting_notifications)

    def check_scheduled_meetings(self) -> int:
        started = self.start_transition.run_once()
        if started > 0:
            logger.info(f"Started {started} scheduled meetings")
            cleared = self.invalidate_meeting_cache()
            logger.info(f"Invalidated meeting cache after starting {started} meetings ({cleared} keys)")
        return started

    def check_meeting_reminders(self) -> int:
        sent = self.reminder_transition.run_once()
        if sent > 0:
            logger.info(f"Sent {sent} meeting reminders")
        return sent

    def check_meeting_notifications(self) -> NotificationSummary:
        summary = self.notification_transition.run_once()
        if summary.total_sent > 0:
            logger.info(
                f"Sent {summary.total_sent} meeting notifications "
                f"({summary.reminders_sent} reminders, {summary.starts_sent} starts)"
            )
        return summary

    def invalidate_meeting_cache(self) -> int:
        """
        Clear per-owner and global meeting caches. Never raises.

        If the owner list can't be read, only the global patterns are cleared.
        """
        try:
            owners = self.store.list_meeting_owner_ids()
        except sqlite3.Error as e:
            logger.error(f"Could not list meeting owners for cache invalidation: {e}")
            owners = []
        return self.invalidator.invalidate(meeting_scope(owners))

    def process_scheduled_meetings(self) -> dict[str, int]:
        """
        Manually start due meetings.

        Unlike the poll, store errors propagate to the caller.
        """
        logger.info("Manually processing scheduled meetings")
        started = self.start_transition.run_once()
        if started > 0:
            self.invalidate_meeting_cache()
        return {"meetings_started": started}

    def get_meeting_stats(self) -> dict[str, int]:
        return self.store.get_meeting_stats(self.clock())

    def status(self) -> dict[str, Any]:
        data = super().status()
        data["transitions"] = ["start_meetings", "meeting_reminders", "meeting_notifications"]
        return data
