"""
Tests for LifecycleStore against a real SQLite fixture database.

Covers:
- Meeting start / reminder / notification checks
- Event reminders and the forward-only status recompute
- Break window reminders
- Notification fan-out and dedup counting
- Break session projection
"""

import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest

from tests.fixtures import (
    add_break_window,
    add_event,
    add_meeting,
    event_status,
    fetch_notifications,
    meeting_status,
)
from timekeeper.db import get_connection
from timekeeper.models import InvalidTransition
from timekeeper.notifier import NotificationCandidate
from timekeeper.time_utils import to_iso

TODAY = "2026-03-10"  # local date of FIXED_NOW in Asia/Manila


# =============================================================================
# MEETINGS
# =============================================================================


class TestStartScheduledMeetings:
    def test_due_meetings_start(self, store, db_path, now):
        """Every scheduled meeting with start_time <= now goes in-progress."""
        due = [
            add_meeting(db_path, "u1", now - timedelta(minutes=5)),
            add_meeting(db_path, "u2", now - timedelta(seconds=10)),
            add_meeting(db_path, "u3", now),
        ]
        later = add_meeting(db_path, "u1", now + timedelta(hours=1))

        assert store.check_and_start_scheduled_meetings(now) == 3

        assert [meeting_status(db_path, m) for m in due] == ["in-progress"] * 3
        assert meeting_status(db_path, later) == "scheduled"
        with get_connection(db_path) as conn:
            started_at = conn.execute("SELECT started_at FROM meetings WHERE id = ?", (due[0],)).fetchone()[0]
        assert started_at == to_iso(now)

    def test_owner_notified_once(self, store, db_path, now):
        meeting_id = add_meeting(db_path, "u1", now - timedelta(minutes=1), title="Client call")

        store.check_and_start_scheduled_meetings(now)
        store.check_and_start_scheduled_meetings(now + timedelta(seconds=1))

        rows = fetch_notifications(db_path, "meeting_started")
        assert len(rows) == 1
        assert rows[0]["user_id"] == "u1"
        assert rows[0]["category"] == "meeting"
        assert rows[0]["payload"]["entity_id"] == str(meeting_id)
        assert rows[0]["message"] == 'Your meeting "Client call" has started'

    def test_repeat_poll_changes_nothing(self, store, db_path, now):
        add_meeting(db_path, "u1", now - timedelta(minutes=1))
        store.check_and_start_scheduled_meetings(now)
        assert store.check_and_start_scheduled_meetings(now) == 0

    def test_completed_meeting_not_restarted(self, store, db_path, now):
        meeting_id = add_meeting(db_path, "u1", now - timedelta(hours=2), status="completed")
        assert store.check_and_start_scheduled_meetings(now) == 0
        assert meeting_status(db_path, meeting_id) == "completed"

    def test_meeting_without_owner_starts_silently(self, store, db_path, now):
        meeting_id = add_meeting(db_path, None, now - timedelta(minutes=1))
        assert store.check_and_start_scheduled_meetings(now) == 1
        assert meeting_status(db_path, meeting_id) == "in-progress"
        assert fetch_notifications(db_path) == []


class TestTransitionGuard:
    def test_backward_transition_raises(self, store, db_path, now):
        meeting_id = add_meeting(db_path, "u1", now, status="in-progress")
        with get_connection(db_path) as conn:
            with pytest.raises(InvalidTransition):
                store._transition(conn, "meeting", meeting_id, "in-progress", "scheduled", to_iso(now))
        assert meeting_status(db_path, meeting_id) == "in-progress"

    def test_stale_old_status_changes_nothing(self, store, db_path, now):
        """The UPDATE only applies while the row is still in the expected status."""
        meeting_id = add_meeting(db_path, "u1", now, status="completed")
        with get_connection(db_path) as conn:
            changed = store._transition(
                conn, "meeting", meeting_id, "scheduled", "in-progress", to_iso(now)
            )
        assert changed is False
        assert meeting_status(db_path, meeting_id) == "completed"

    def test_unknown_column_rejected(self, store, db_path, now):
        meeting_id = add_meeting(db_path, "u1", now)
        with get_connection(db_path) as conn:
            with pytest.raises(ValueError, match="Unsupported transition columns"):
                store._transition(
                    conn, "meeting", meeting_id, "scheduled", "in-progress", to_iso(now), title="x"
                )


class TestMeetingReminders:
    def test_reminder_within_lead(self, store, db_path, now):
        add_meeting(db_path, "u1", now + timedelta(minutes=30))
        add_meeting(db_path, "u2", now + timedelta(hours=2))

        assert store.check_meeting_reminders(now) == 1
        assert store.check_meeting_reminders(now + timedelta(minutes=1)) == 0

        rows = fetch_notifications(db_path, "meeting_reminder")
        assert [r["user_id"] for r in rows] == ["u1"]


class TestMeetingNotifications:
    def test_starting_soon_and_backfill(self, store, db_path, now):
        add_meeting(db_path, "u1", now + timedelta(minutes=10))
        add_meeting(db_path, "u2", now - timedelta(minutes=5), status="in-progress")
        add_meeting(db_path, "u3", now - timedelta(days=2), status="in-progress")

        summary = store.check_meeting_notifications(now)

        assert summary.reminders_sent == 1
        assert summary.starts_sent == 1
        assert summary.total_sent == 2

    def test_repeat_sends_nothing(self, store, db_path, now):
        add_meeting(db_path, "u1", now + timedelta(minutes=10))
        add_meeting(db_path, "u2", now - timedelta(minutes=5), status="in-progress")
        store.check_meeting_notifications(now)

        assert store.check_meeting_notifications(now).total_sent == 0

    def test_no_backfill_after_engine_start(self, store, db_path, now):
        add_meeting(db_path, "u1", now - timedelta(minutes=1))
        store.check_and_start_scheduled_meetings(now)
        assert store.check_meeting_notifications(now).starts_sent == 0


class TestMeetingQueries:
    def test_owner_ids_distinct(self, store, db_path, now):
        add_meeting(db_path, "u2", now)
        add_meeting(db_path, "u1", now)
        add_meeting(db_path, "u1", now)
        add_meeting(db_path, None, now)
        assert store.list_meeting_owner_ids() == ["u1", "u2"]

    def test_meeting_stats(self, store, db_path, now):
        add_meeting(db_path, "u1", now + timedelta(minutes=20))
        add_meeting(db_path, "u1", now + timedelta(hours=3))
        add_meeting(db_path, "u2", now - timedelta(minutes=20), status="in-progress")
        assert store.get_meeting_stats(now) == {"scheduled": 2, "in_progress": 1, "soon_starting": 1}

    def test_meeting_stats_empty(self, store, now):
        assert store.get_meeting_stats(now) == {"scheduled": 0, "in_progress": 0, "soon_starting": 0}


# =============================================================================
# EVENTS
# =============================================================================


class TestEventStatuses:
    def test_recompute(self, store, db_path, now):
        past = add_event(db_path, "2026-03-09", "09:00:00")
        today = add_event(db_path, TODAY, "14:00:00", end_time="16:00:00")
        ended = add_event(db_path, TODAY, "08:00:00", end_time="09:30:00", status="today")
        future = add_event(db_path, "2026-03-12", "09:00:00")
        cancelled = add_event(db_path, "2026-03-01", "09:00:00", status="cancelled")

        update = store.update_all_event_statuses(now)

        assert update.updated_count == 3
        assert update.details == "1 upcoming->completed, 1 upcoming->today, 1 today->completed"
        assert event_status(db_path, past) == "completed"
        assert event_status(db_path, today) == "today"
        assert event_status(db_path, ended) == "completed"
        assert event_status(db_path, future) == "upcoming"
        assert event_status(db_path, cancelled) == "cancelled"

    def test_completed_event_never_returns_to_today(self, store, db_path, now):
        event_id = add_event(db_path, TODAY, "14:00:00", status="completed")
        update = store.update_all_event_statuses(now)
        assert update.updated_count == 0
        assert update.details == ""
        assert event_status(db_path, event_id) == "completed"

    def test_event_without_end_time_stays_today(self, store, db_path, now):
        event_id = add_event(db_path, TODAY, "08:00:00", status="today")
        store.update_all_event_statuses(now)
        assert event_status(db_path, event_id) == "today"

    def test_yesterdays_today_event_completes(self, store, db_path, now):
        event_id = add_event(db_path, "2026-03-09", "20:00:00", status="today")
        update = store.update_all_event_statuses(now)
        assert update.details == "1 today->completed"
        assert event_status(db_path, event_id) == "completed"


class TestEventReminders:
    def test_reminder_fans_out_to_active_users(self, store, db_path, now):
        event_id = add_event(db_path, TODAY, "10:10:00", status="today")
        add_event(db_path, TODAY, "10:30:00", status="today")

        assert store.send_event_reminders(now) == 3
        rows = fetch_notifications(db_path, "event_reminder")
        assert sorted(r["user_id"] for r in rows) == ["u1", "u2", "u3"]
        assert {r["payload"]["entity_id"] for r in rows} == {str(event_id)}

    def test_malformed_start_time_skipped(self, store, db_path, now):
        """A start time SQLite can order but the message cannot render."""
        add_event(db_path, TODAY, "2026-03-10 10:05", title="Broken")
        good_id = add_event(db_path, TODAY, "10:10:00")

        assert store.send_event_reminders(now) == 3
        rows = fetch_notifications(db_path, "event_reminder")
        assert {r["payload"]["entity_id"] for r in rows} == {str(good_id)}

    def test_reminder_once_per_day(self, store, db_path, now):
        add_event(db_path, TODAY, "10:10:00")
        store.send_event_reminders(now)
        assert store.send_event_reminders(now + timedelta(minutes=2)) == 0

    def test_started_event_not_reminded(self, store, db_path, now):
        add_event(db_path, TODAY, "09:55:00", status="today")
        assert store.send_event_reminders(now) == 0


class TestTodayStartedEvents:
    def test_only_today_status_with_elapsed_start(self, store, db_path, now):
        started = add_event(db_path, TODAY, "09:00:00", status="today", location="Hall A")
        add_event(db_path, TODAY, "11:00:00", status="today")
        add_event(db_path, TODAY, "09:00:00", status="upcoming")
        add_event(db_path, "2026-03-09", "09:00:00", status="today")

        events = store.list_today_started_events(now)

        assert [e["id"] for e in events] == [started]
        assert events[0]["location"] == "Hall A"
        assert events[0]["event_date"] == TODAY

    def test_start_time_compared_in_event_timezone(self, db_path, now):
        """09:30 has passed in Manila (10:00) but not in UTC (02:00)."""
        from timekeeper.store import LifecycleStore

        add_event(db_path, TODAY, "09:30:00", status="today")
        assert len(LifecycleStore(db_path, event_timezone="Asia/Manila").list_today_started_events(now)) == 1
        assert LifecycleStore(db_path, event_timezone="UTC").list_today_started_events(now) == []


# =============================================================================
# BREAK REMINDERS
# =============================================================================


class TestBreakReminders:
    def test_available_and_ending_soon(self, store, db_path, now):
        add_break_window(db_path, "u1", now + timedelta(minutes=10), now + timedelta(minutes=40))
        add_break_window(db_path, "u2", now - timedelta(minutes=30), now + timedelta(minutes=3))
        add_break_window(db_path, "u3", now + timedelta(hours=2), now + timedelta(hours=3))
        add_break_window(db_path, "u9", now + timedelta(minutes=10), now + timedelta(minutes=40))

        assert store.check_break_reminders(now) == 2

        available = fetch_notifications(db_path, "break_available_soon")
        ending = fetch_notifications(db_path, "break_ending_soon")
        assert [r["user_id"] for r in available] == ["u1"]
        assert [r["user_id"] for r in ending] == ["u2"]
        assert available[0]["title"] == "Lunch available soon"

    def test_once_per_window(self, store, db_path, now):
        add_break_window(db_path, "u1", now + timedelta(minutes=10), now + timedelta(minutes=40))
        store.check_break_reminders(now)
        assert store.check_break_reminders(now + timedelta(minutes=1)) == 0


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class TestNotificationFanOut:
    def test_insert_for_all_active_users(self, store, db_path):
        candidate = NotificationCandidate(
            category="event",
            title="Heads up",
            message="Something happened",
            payload={"entity_id": "7", "notification_subtype": "event_started", "entity_date": TODAY},
        )

        created = store.insert_notification_for_all_users(candidate)

        assert [row["user_id"] for row in created] == ["u1", "u2", "u3"]
        assert store.count_existing_notifications("7", "event_started", TODAY) == 3
        assert store.count_existing_notifications("7", "event_started", TODAY, "event") == 3
        assert store.count_existing_notifications("7", "event_started", TODAY, "meeting") == 0
        assert store.count_existing_notifications("7", "event_started", "2026-03-11") == 0

    def test_failing_recipient_skipped(self, store):
        candidate = NotificationCandidate(category="event", title="t", message="m")
        with patch.object(
            store,
            "_insert_notification",
            side_effect=[1, sqlite3.IntegrityError("constraint failed"), 3],
        ):
            created = store.insert_notification_for_all_users(candidate)

        assert created == [{"id": 1, "user_id": "u1"}, {"id": 3, "user_id": "u3"}]

    def test_entity_text_is_not_interpreted(self, store, db_path):
        """A quote-laden entity id is just a value."""
        assert store.count_existing_notifications("1' OR '1'='1", "event_started", TODAY) == 0


# =============================================================================
# BREAK SESSIONS
# =============================================================================


class TestBreakSessions:
    def test_start_and_load(self, store, now):
        session = store.start_break_session("u1", "lunch", 900, now=now, session_id="s1")
        loaded = store.load_break_session("s1")

        assert loaded == session
        assert loaded.time_remaining_seconds == 900
        assert loaded.start_time == now

    def test_default_duration(self, store, now):
        session = store.start_break_session("u1", now=now)
        assert session.duration_seconds == 15 * 60

    def test_emergency_pause_flag_cannot_reset(self, store, now):
        session = store.start_break_session("u1", "lunch", 900, now=now, session_id="s1")
        session.emergency_pause_used = True
        store.save_break_session(session)

        session.emergency_pause_used = False
        store.save_break_session(session)

        assert store.load_break_session("s1").emergency_pause_used is True

    def test_end_session(self, store, now):
        store.start_break_session("u1", "lunch", 900, now=now, session_id="s1")
        store.end_break_session("s1", now + timedelta(minutes=5))
        assert store.load_break_session("s1").ended_at == now + timedelta(minutes=5)

    def test_missing_session(self, store):
        assert store.load_break_session("nope") is None
