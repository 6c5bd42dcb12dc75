"""
Event lifecycle scheduler.

One poll does three things in order: lead-time reminders, a full status
recompute (upcoming -> today -> completed), and the "has it actually
started" check. Status reaches 'today' at local midnight, hours before the
event begins, so only the elapsed-start check gates the started broadcast.
"""

import logging
from typing import Any

from timekeeper.models import NotificationCategory, NotificationSubtype
from timekeeper.notifier import NotificationDeduper, NotificationScope
from timekeeper.notifier import templates
from timekeeper.time_utils import local_date_and_time, now_utc
from timekeeper.transitions import LifecycleTransitioner

from .base import BaseScheduler

logger = logging.getLogger(__name__)


class EventScheduler(BaseScheduler):
    name = "events"

    def __init__(self, store, cache=None, schedule=None, clock=now_utc, deduper=None):
        super().__init__(store, cache, schedule, clock)
        self.deduper = deduper or NotificationDeduper(store)

        self.reminder_transition = LifecycleTransitioner(
            "event_reminders", lambda: store.send_event_reminders(self.clock())
        )
        self.status_transition = LifecycleTransitioner(
            "event_statuses", lambda: store.update_all_event_statuses(self.clock())
        )

        self.add_poller("events", self.check_events)

    def check_events(self) -> dict[str, Any]:
        reminders = self.reminder_transition.run_once()
        if reminders > 0:
            logger.info(f"Sent {reminders} event reminders")

        update = self.status_transition.run_once()
        if update.updated_count > 0:
            logger.info(f"Updated {update.updated_count} event statuses: {update.details}")

        started = self.notify_started_events()
        return {
            "reminders_sent": reminders,
            "statuses_updated": update.updated_count,
            "started_notified": started,
        }

    def notify_started_events(self) -> int:
        """
        Broadcast 'Event Started' once per event per day.

        A malformed event row is logged and skipped; the remaining events
        are still announced. Store errors propagate.

        Returns:
            Number of events a notification was created for
        """
        now = self.clock()
        today = local_date_and_time(self.store.event_timezone, now)[0]
        notified = 0

        for event in self.store.list_today_started_events(now):
            event_date = event.get("event_date") or today
            scope = NotificationScope(
                category=NotificationCategory.EVENT.value,
                entity_id=str(event["id"]),
                subtype=NotificationSubtype.EVENT_STARTED.value,
                entity_date=event_date,
            )
            try:
                created = self.deduper.ensure_notification(
                    scope, lambda e=event, d=event_date: templates.event_started(e, d)
                )
            except (ValueError, KeyError) as e:
                logger.error(f"Skipping started notification for event {event['id']}: {e}")
                continue
            if created:
                notified += 1
                logger.info(
                    f"Sent event started notification for event {event['id']} to {len(created)} users"
                )
        return notified
