"""
Status model for scheduled entities and notifications.

Statuses only move forward. Every transition the engine performs is checked
against the ordering below before the UPDATE is issued.
"""

import enum


class MeetingStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EventStatus(str, enum.Enum):
    UPCOMING = "upcoming"
    TODAY = "today"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MeetingType(str, enum.Enum):
    VIDEO = "video"
    PHONE = "phone"
    IN_PERSON = "in-person"


class EventType(str, enum.Enum):
    EVENT = "event"
    ACTIVITY = "activity"


class NotificationCategory(str, enum.Enum):
    MEETING = "meeting"
    EVENT = "event"
    BREAK = "break"
    TICKET = "ticket"


class NotificationType(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    SUCCESS = "success"
    ERROR = "error"


class NotificationSubtype(str, enum.Enum):
    """Value of payload.notification_subtype, one per derived notification kind."""

    MEETING_REMINDER = "meeting_reminder"
    MEETING_STARTING_SOON = "meeting_starting_soon"
    MEETING_STARTED = "meeting_started"
    EVENT_REMINDER = "event_reminder"
    EVENT_STARTED = "event_started"
    BREAK_AVAILABLE_SOON = "break_available_soon"
    BREAK_ENDING_SOON = "break_ending_soon"


class InvalidTransition(ValueError):
    """Raised when a status change would move an entity backward."""


# Rank per status; a transition is allowed only to a strictly higher rank.
# Cancelled is terminal and reachable from any non-terminal state.
_MEETING_RANK = {
    MeetingStatus.SCHEDULED: 0,
    MeetingStatus.IN_PROGRESS: 1,
    MeetingStatus.COMPLETED: 2,
    MeetingStatus.CANCELLED: 2,
}

_EVENT_RANK = {
    EventStatus.UPCOMING: 0,
    EventStatus.TODAY: 1,
    EventStatus.COMPLETED: 2,
    EventStatus.CANCELLED: 2,
}

_RANKS = {
    "meeting": (MeetingStatus, _MEETING_RANK),
    "event": (EventStatus, _EVENT_RANK),
}


def is_forward(kind: str, old: str, new: str) -> bool:
    """True if moving an entity of `kind` from `old` to `new` goes strictly forward."""
    try:
        status_enum, rank = _RANKS[kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind!r}") from None
    return rank[status_enum(new)] > rank[status_enum(old)]


def require_forward(kind: str, old: str, new: str) -> None:
    """Raise InvalidTransition unless the move is strictly forward."""
    if not is_forward(kind, old, new):
        raise InvalidTransition(f"{kind} status cannot move from {old!r} to {new!r}")
