"""
Notification text and payload construction.

Entity titles and locations are user-controlled. They are cleaned here and
only ever travel to the store as bound parameters or JSON values.
"""

import re
import unicodedata
from typing import Any

from timekeeper import config
from timekeeper.models import EventType, NotificationCategory, NotificationSubtype, NotificationType
from timekeeper.time_utils import format_12h

from .dedup import NotificationCandidate

MAX_TEXT_LENGTH = 200

_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(value: Any, max_length: int = MAX_TEXT_LENGTH) -> str:
    """
    Make user text safe to embed in a message.

    Strips control/format characters, collapses whitespace (so a title can't
    forge extra lines) and caps the length.
    """
    if value is None:
        return ""
    text = "".join(
        ch if unicodedata.category(ch)[0] != "C" else " " for ch in str(value)
    )
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if len(text) > max_length:
        text = text[: max_length - 1].rstrip() + "…"
    return text


def _kind_label(event_type: str | None) -> str:
    return "Activity" if event_type == EventType.ACTIVITY.value else "Event"


# =============================================================================
# EVENTS
# =============================================================================


def event_started(event: dict[str, Any], event_date: str) -> NotificationCandidate:
    """'Event Started - Please Join' broadcast for an event whose start time passed."""
    label = _kind_label(event.get("event_type"))
    title = clean_text(event.get("title"))
    location = clean_text(event.get("location"))
    start = format_12h(event["start_time"])

    message = f'{label} "{title}" has started at {start}'
    if location:
        message += f" ({location})"

    return NotificationCandidate(
        category=NotificationCategory.EVENT.value,
        type=NotificationType.INFO.value,
        title=f"{label} Started - Please Join",
        message=message,
        payload={
            "event_id": event["id"],
            "event_title": title,
            "event_date": event_date,
            "start_time": event["start_time"],
            "end_time": event.get("end_time"),
            "location": location,
            "status": "today",
            "event_type": event.get("event_type") or "event",
            "notification_type": NotificationSubtype.EVENT_STARTED.value,
            "action_url": config.EVENT_DETAIL_URL.format(event_id=event["id"]),
        },
    )


def event_reminder(event: dict[str, Any], event_date: str, lead_minutes: int) -> NotificationCandidate:
    label = _kind_label(event.get("event_type"))
    title = clean_text(event.get("title"))
    return NotificationCandidate(
        category=NotificationCategory.EVENT.value,
        type=NotificationType.INFO.value,
        title=f"{label} Starting Soon",
        message=f'{label} "{title}" starts at {format_12h(event["start_time"])} '
        f"(in {lead_minutes} minutes or less)",
        payload={
            "event_id": event["id"],
            "event_title": title,
            "event_date": event_date,
            "start_time": event["start_time"],
            "event_type": event.get("event_type") or "event",
            "notification_type": NotificationSubtype.EVENT_REMINDER.value,
            "action_url": config.EVENT_DETAIL_URL.format(event_id=event["id"]),
        },
    )


# =============================================================================
# MEETINGS
# =============================================================================


def _meeting_payload(meeting: dict[str, Any], subtype: NotificationSubtype) -> dict[str, Any]:
    return {
        "meeting_id": meeting["id"],
        "meeting_title": clean_text(meeting.get("title")),
        "meeting_type": meeting.get("meeting_type"),
        "start_time": meeting["start_time"],
        "notification_type": subtype.value,
        "action_url": config.MEETING_DETAIL_URL.format(meeting_id=meeting["id"]),
    }


def meeting_started(meeting: dict[str, Any]) -> NotificationCandidate:
    return NotificationCandidate(
        category=NotificationCategory.MEETING.value,
        type=NotificationType.INFO.value,
        title="Meeting Started",
        message=f'Your meeting "{clean_text(meeting.get("title"))}" has started',
        payload=_meeting_payload(meeting, NotificationSubtype.MEETING_STARTED),
    )


def meeting_reminder(meeting: dict[str, Any], lead_minutes: int) -> NotificationCandidate:
    return NotificationCandidate(
        category=NotificationCategory.MEETING.value,
        type=NotificationType.INFO.value,
        title="Meeting Reminder",
        message=f'"{clean_text(meeting.get("title"))}" starts within {lead_minutes} minutes',
        payload=_meeting_payload(meeting, NotificationSubtype.MEETING_REMINDER),
    )


def meeting_starting_soon(meeting: dict[str, Any], lead_minutes: int) -> NotificationCandidate:
    return NotificationCandidate(
        category=NotificationCategory.MEETING.value,
        type=NotificationType.WARNING.value,
        title="Meeting Starting Soon",
        message=f'"{clean_text(meeting.get("title"))}" starts in {lead_minutes} minutes or less',
        payload=_meeting_payload(meeting, NotificationSubtype.MEETING_STARTING_SOON),
    )


# =============================================================================
# BREAKS
# =============================================================================


def _break_label(break_type: str) -> str:
    return clean_text(break_type).replace("_", " ").title() or "Break"


def break_available_soon(window: dict[str, Any], lead_minutes: int) -> NotificationCandidate:
    label = _break_label(window["break_type"])
    return NotificationCandidate(
        category=NotificationCategory.BREAK.value,
        type=NotificationType.INFO.value,
        title=f"{label} available soon",
        message=f"Your {label.lower()} will be available in {lead_minutes} minutes or less",
        payload={
            "break_window_id": window["id"],
            "break_type": window["break_type"],
            "notification_type": NotificationSubtype.BREAK_AVAILABLE_SOON.value,
            "action_url": config.BREAKS_URL,
        },
    )


def break_ending_soon(window: dict[str, Any], lead_minutes: int) -> NotificationCandidate:
    label = _break_label(window["break_type"])
    return NotificationCandidate(
        category=NotificationCategory.BREAK.value,
        type=NotificationType.WARNING.value,
        title=f"{label} ending soon",
        message=f"Your {label.lower()} window closes in {lead_minutes} minutes or less",
        payload={
            "break_window_id": window["id"],
            "break_type": window["break_type"],
            "notification_type": NotificationSubtype.BREAK_ENDING_SOON.value,
            "action_url": config.BREAKS_URL,
        },
    )
