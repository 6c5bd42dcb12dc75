"""
Lifecycle schedulers.

Each scheduler is independently startable and owns its pollers:
- MeetingScheduler: meeting start / reminders / notifications
- EventScheduler: event reminders, status recompute, started broadcast
- BreakScheduler: break window reminders
"""

from .base import BaseScheduler
from .breaks import BreakScheduler
from .events import EventScheduler
from .meetings import MeetingScheduler

SCHEDULERS = {
    MeetingScheduler.name: MeetingScheduler,
    EventScheduler.name: EventScheduler,
    BreakScheduler.name: BreakScheduler,
}

__all__ = [
    "SCHEDULERS",
    "BaseScheduler",
    "BreakScheduler",
    "EventScheduler",
    "MeetingScheduler",
]
