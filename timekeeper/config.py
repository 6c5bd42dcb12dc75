"""
Centralized configuration for the timekeeper schedulers.

All values that vary by deployment belong here.
Override via environment variables where marked.
"""

import os

# ============================================================
# Shared cache
# ============================================================

REDIS_URL: str | None = os.environ.get("REDIS_URL") or None
"""Redis connection URL. Unset means cache invalidation is skipped."""

CACHE_BACKEND: str = os.environ.get("TIMEKEEPER_CACHE_BACKEND", "redis").lower()
"""One of 'redis', 'memory' (in-process CacheManager) or 'none'."""

CACHE_CONNECT_TIMEOUT_SECONDS: float = float(os.environ.get("TIMEKEEPER_CACHE_CONNECT_TIMEOUT", "5"))

CACHE_CONCURRENCY: int = int(os.environ.get("TIMEKEEPER_CACHE_CONCURRENCY", "8"))
"""Upper bound on concurrent pattern deletions during one invalidation pass."""

# ============================================================
# Time
# ============================================================

EVENT_TIMEZONE: str = os.environ.get("TIMEKEEPER_EVENT_TIMEZONE", "Asia/Manila")
"""Canonical timezone for event dates and wall-clock start/end times."""

# ============================================================
# Lead times (minutes)
# ============================================================

MEETING_REMINDER_LEAD_MINUTES: int = int(os.environ.get("TIMEKEEPER_MEETING_REMINDER_LEAD", "60"))
MEETING_STARTING_SOON_MINUTES: int = int(os.environ.get("TIMEKEEPER_MEETING_SOON_LEAD", "15"))
EVENT_REMINDER_LEAD_MINUTES: int = int(os.environ.get("TIMEKEEPER_EVENT_REMINDER_LEAD", "15"))
BREAK_AVAILABLE_SOON_MINUTES: int = int(os.environ.get("TIMEKEEPER_BREAK_AVAILABLE_LEAD", "15"))
BREAK_ENDING_SOON_MINUTES: int = int(os.environ.get("TIMEKEEPER_BREAK_ENDING_LEAD", "5"))

# ============================================================
# Breaks
# ============================================================

DEFAULT_BREAK_DURATION_MINUTES: int = int(os.environ.get("TIMEKEEPER_BREAK_MINUTES", "15"))

# ============================================================
# Logging
# ============================================================

LOG_LEVEL: str = os.environ.get("TIMEKEEPER_LOG_LEVEL", "INFO")

_log_json = os.environ.get("TIMEKEEPER_LOG_JSON")
LOG_JSON: bool | None = None if _log_json is None else _log_json.lower() in ("1", "true", "yes")
"""Force JSON logs on/off. Unset auto-detects from the terminal."""

# ============================================================
# Deep links
# ============================================================

EVENT_DETAIL_URL: str = "/status/events?tab=today&eventId={event_id}"
MEETING_DETAIL_URL: str = "/status/meetings?meetingId={meeting_id}"
BREAKS_URL: str = "/status/breaks"
