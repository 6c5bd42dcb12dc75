"""
Test fixtures for deterministic testing.

This module provides:
- fixture_db: temp SQLite databases with seeded users and row helpers
- fakes: cache clients that fail in controlled ways
"""

from .fakes import (
    FlakyCacheClient,
    RecordingNotificationStore,
    SlowCacheClient,
    unreachable_cache_factory,
)
from .fixture_db import (
    DEFAULT_USERS,
    add_break_window,
    add_event,
    add_meeting,
    create_fixture_db,
    event_status,
    fetch_notifications,
    meeting_status,
)

__all__ = [
    "DEFAULT_USERS",
    "FlakyCacheClient",
    "RecordingNotificationStore",
    "SlowCacheClient",
    "add_break_window",
    "add_event",
    "add_meeting",
    "create_fixture_db",
    "event_status",
    "fetch_notifications",
    "meeting_status",
    "unreachable_cache_factory",
]
