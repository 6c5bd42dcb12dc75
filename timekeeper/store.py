"""
Authoritative lifecycle store over SQLite.

Each check_* / send_* / update_* method is one atomic check-and-transition:
it selects the rows whose time has come, flips their status forward and
writes the notifications that belong to the flip, all inside a single
transaction. Every value reaches SQL as a bound parameter.

Row selection is disjoint per operation (scheduled vs in-progress meetings,
window opening vs closing for breaks), so independent pollers may call
these concurrently without coordinating.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from timekeeper import config
from timekeeper.break_timer import BreakSession
from timekeeper.db import get_connection
from timekeeper.models import (
    EventStatus,
    MeetingStatus,
    NotificationCategory,
    NotificationSubtype,
    require_forward,
)
from timekeeper.notifier import templates
from timekeeper.notifier.dedup import NotificationCandidate, NotificationScope
from timekeeper.observability import notifications_created, store_latency, timed
from timekeeper.time_utils import local_date_and_time, now_utc, parse_iso, to_iso
from timekeeper.transitions import EventStatusUpdate, NotificationSummary

logger = logging.getLogger(__name__)

_TABLES = {"meeting": "meetings", "event": "events"}

# Columns a transition may stamp besides status/updated_at
_TRANSITION_COLUMNS = frozenset({"started_at"})

# An in-progress meeting started longer ago than this never gets a backfilled
# "started" notification.
STARTED_BACKFILL_WINDOW = timedelta(hours=24)

SOON_STARTING_WINDOW = timedelta(hours=1)


class LifecycleStore:
    """Check-and-transition operations plus the notification/break projections."""

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        event_timezone: str = config.EVENT_TIMEZONE,
        meeting_reminder_lead: int = config.MEETING_REMINDER_LEAD_MINUTES,
        meeting_soon_lead: int = config.MEETING_STARTING_SOON_MINUTES,
        event_reminder_lead: int = config.EVENT_REMINDER_LEAD_MINUTES,
        break_available_lead: int = config.BREAK_AVAILABLE_SOON_MINUTES,
        break_ending_lead: int = config.BREAK_ENDING_SOON_MINUTES,
    ):
        self.db_path = db_path
        self.event_timezone = event_timezone
        self.meeting_reminder_lead = meeting_reminder_lead
        self.meeting_soon_lead = meeting_soon_lead
        self.event_reminder_lead = event_reminder_lead
        self.break_available_lead = break_available_lead
        self.break_ending_lead = break_ending_lead

    def _connect(self):
        return get_connection(self.db_path)

    def _local_date(self, instant: datetime | str) -> str:
        if isinstance(instant, str):
            instant = parse_iso(instant)
        return local_date_and_time(self.event_timezone, instant)[0]

    # =========================================================================
    # SHARED HELPERS
    # =========================================================================

    def _transition(
        self,
        conn: sqlite3.Connection,
        kind: str,
        row_id: int,
        old: str,
        new: str,
        now_iso: str,
        **extra: str,
    ) -> bool:
        """
        Move one row from `old` to `new`.

        The UPDATE is conditioned on the row still being in `old`, so a row
        that another caller already advanced is left alone.

        Returns:
            True if the row was changed

        Raises:
            InvalidTransition: if `new` is not strictly after `old`
        """
        require_forward(kind, old, new)
        unknown = set(extra) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported transition columns: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [new, now_iso]
        for column, value in extra.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([row_id, old])

        cursor = conn.execute(
            f"UPDATE {_TABLES[kind]} SET {', '.join(assignments)} WHERE id = ? AND status = ?",  # noqa: S608
            params,
        )
        return cursor.rowcount == 1

    def _notification_exists(self, conn: sqlite3.Connection, scope: NotificationScope) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM notifications
            WHERE category = ?
              AND json_extract(payload, '$.entity_id') = ?
              AND json_extract(payload, '$.notification_subtype') = ?
              AND json_extract(payload, '$.entity_date') = ?
            LIMIT 1
            """,
            (scope.category, scope.entity_id, scope.subtype, scope.entity_date),
        ).fetchone()
        return row is not None

    def _insert_notification(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        candidate: NotificationCandidate,
        now_iso: str,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO notifications (user_id, category, type, title, message, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                candidate.category,
                candidate.type,
                candidate.title,
                candidate.message,
                json.dumps(candidate.payload, default=str),
                now_iso,
            ),
        )
        return cursor.lastrowid

    def _notify_once(
        self,
        conn: sqlite3.Connection,
        user_ids: list[str],
        scope: NotificationScope,
        candidate: NotificationCandidate,
        now_iso: str,
    ) -> int:
        """Insert `candidate` for each user unless its scope already has a row."""
        if not user_ids or self._notification_exists(conn, scope):
            return 0
        scoped = candidate.scoped(scope)
        for user_id in user_ids:
            self._insert_notification(conn, user_id, scoped, now_iso)
        notifications_created.inc(len(user_ids))
        return len(user_ids)

    def _active_user_ids(self, conn: sqlite3.Connection) -> list[str]:
        rows = conn.execute("SELECT id FROM users WHERE is_active = 1 ORDER BY id").fetchall()
        return [row["id"] for row in rows]

    def _meeting_scope(self, meeting: sqlite3.Row, subtype: NotificationSubtype) -> NotificationScope:
        return NotificationScope(
            category=NotificationCategory.MEETING.value,
            entity_id=str(meeting["id"]),
            subtype=subtype.value,
            entity_date=self._local_date(meeting["start_time"]),
        )

    # =========================================================================
    # MEETINGS
    # =========================================================================

    @timed(store_latency)
    def check_and_start_scheduled_meetings(self, now: datetime | None = None) -> int:
        """Flip every due scheduled meeting to in-progress and notify its owner."""
        now_iso = to_iso(now or now_utc())
        started = 0

        with self._connect() as conn:
            due = conn.execute(
                """
                SELECT id, agent_user_id, title, meeting_type, start_time
                FROM meetings
                WHERE status = ? AND start_time <= ?
                ORDER BY start_time, id
                """,
                (MeetingStatus.SCHEDULED.value, now_iso),
            ).fetchall()

            for meeting in due:
                if not self._transition(
                    conn,
                    "meeting",
                    meeting["id"],
                    MeetingStatus.SCHEDULED.value,
                    MeetingStatus.IN_PROGRESS.value,
                    now_iso,
                    started_at=now_iso,
                ):
                    continue
                started += 1
                if meeting["agent_user_id"]:
                    self._notify_once(
                        conn,
                        [meeting["agent_user_id"]],
                        self._meeting_scope(meeting, NotificationSubtype.MEETING_STARTED),
                        templates.meeting_started(dict(meeting)),
                        now_iso,
                    )

        if started:
            logger.info(f"Started {started} scheduled meeting(s)")
        return started

    @timed(store_latency)
    def check_meeting_reminders(self, now: datetime | None = None) -> int:
        """Remind owners of scheduled meetings starting within the reminder lead."""
        now = now or now_utc()
        now_iso = to_iso(now)
        horizon = to_iso(now + timedelta(minutes=self.meeting_reminder_lead))
        sent = 0

        with self._connect() as conn:
            upcoming = conn.execute(
                """
                SELECT id, agent_user_id, title, meeting_type, start_time
                FROM meetings
                WHERE status = ? AND start_time > ? AND start_time <= ?
                  AND agent_user_id IS NOT NULL
                ORDER BY start_time, id
                """,
                (MeetingStatus.SCHEDULED.value, now_iso, horizon),
            ).fetchall()

            for meeting in upcoming:
                sent += self._notify_once(
                    conn,
                    [meeting["agent_user_id"]],
                    self._meeting_scope(meeting, NotificationSubtype.MEETING_REMINDER),
                    templates.meeting_reminder(dict(meeting), self.meeting_reminder_lead),
                    now_iso,
                )

        return sent

    @timed(store_latency)
    def check_meeting_notifications(self, now: datetime | None = None) -> NotificationSummary:
        """
        Starting-soon warnings plus backfilled 'started' notifications.

        Meetings moved to in-progress by the CRUD layer never pass through
        check_and_start_scheduled_meetings, so their started notification is
        created here instead.
        """
        now = now or now_utc()
        now_iso = to_iso(now)
        soon_horizon = to_iso(now + timedelta(minutes=self.meeting_soon_lead))
        backfill_floor = to_iso(now - STARTED_BACKFILL_WINDOW)
        reminders_sent = 0
        starts_sent = 0

        with self._connect() as conn:
            soon = conn.execute(
                """
                SELECT id, agent_user_id, title, meeting_type, start_time
                FROM meetings
                WHERE status = ? AND start_time > ? AND start_time <= ?
                  AND agent_user_id IS NOT NULL
                """,
                (MeetingStatus.SCHEDULED.value, now_iso, soon_horizon),
            ).fetchall()
            for meeting in soon:
                reminders_sent += self._notify_once(
                    conn,
                    [meeting["agent_user_id"]],
                    self._meeting_scope(meeting, NotificationSubtype.MEETING_STARTING_SOON),
                    templates.meeting_starting_soon(dict(meeting), self.meeting_soon_lead),
                    now_iso,
                )

            running = conn.execute(
                """
                SELECT id, agent_user_id, title, meeting_type, start_time
                FROM meetings
                WHERE status = ? AND start_time <= ? AND start_time >= ?
                  AND agent_user_id IS NOT NULL
                """,
                (MeetingStatus.IN_PROGRESS.value, now_iso, backfill_floor),
            ).fetchall()
            for meeting in running:
                starts_sent += self._notify_once(
                    conn,
                    [meeting["agent_user_id"]],
                    self._meeting_scope(meeting, NotificationSubtype.MEETING_STARTED),
                    templates.meeting_started(dict(meeting)),
                    now_iso,
                )

        return NotificationSummary(reminders_sent=reminders_sent, starts_sent=starts_sent)

    @timed(store_latency)
    def list_meeting_owner_ids(self) -> list[str]:
        """Every user with at least one meeting row."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT agent_user_id FROM meetings
                WHERE agent_user_id IS NOT NULL
                ORDER BY agent_user_id
                """
            ).fetchall()
        return [row["agent_user_id"] for row in rows]

    def get_meeting_stats(self, now: datetime | None = None) -> dict[str, int]:
        now = now or now_utc()
        now_iso = to_iso(now)
        soon_iso = to_iso(now + SOON_STARTING_WINDOW)

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS scheduled,
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS in_progress,
                    SUM(CASE WHEN status = ? AND start_time > ? AND start_time <= ?
                        THEN 1 ELSE 0 END) AS soon_starting
                FROM meetings
                """,
                (
                    MeetingStatus.SCHEDULED.value,
                    MeetingStatus.IN_PROGRESS.value,
                    MeetingStatus.SCHEDULED.value,
                    now_iso,
                    soon_iso,
                ),
            ).fetchone()

        return {
            "scheduled": row["scheduled"] or 0,
            "in_progress": row["in_progress"] or 0,
            "soon_starting": row["soon_starting"] or 0,
        }

    # =========================================================================
    # BREAK REMINDERS
    # =========================================================================

    @timed(store_latency)
    def check_break_reminders(self, now: datetime | None = None) -> int:
        """Available-soon and ending-soon reminders, once per window per day."""
        now = now or now_utc()
        now_iso = to_iso(now)
        open_horizon = to_iso(now + timedelta(minutes=self.break_available_lead))
        close_horizon = to_iso(now + timedelta(minutes=self.break_ending_lead))
        sent = 0

        with self._connect() as conn:
            opening = conn.execute(
                """
                SELECT w.id, w.user_id, w.break_type, w.start_time, w.end_time
                FROM break_windows w JOIN users u ON u.id = w.user_id
                WHERE u.is_active = 1 AND w.start_time > ? AND w.start_time <= ?
                """,
                (now_iso, open_horizon),
            ).fetchall()
            for window in opening:
                sent += self._notify_once(
                    conn,
                    [window["user_id"]],
                    self._break_scope(window, NotificationSubtype.BREAK_AVAILABLE_SOON),
                    templates.break_available_soon(dict(window), self.break_available_lead),
                    now_iso,
                )

            closing = conn.execute(
                """
                SELECT w.id, w.user_id, w.break_type, w.start_time, w.end_time
                FROM break_windows w JOIN users u ON u.id = w.user_id
                WHERE u.is_active = 1 AND w.start_time <= ?
                  AND w.end_time > ? AND w.end_time <= ?
                """,
                (now_iso, now_iso, close_horizon),
            ).fetchall()
            for window in closing:
                sent += self._notify_once(
                    conn,
                    [window["user_id"]],
                    self._break_scope(window, NotificationSubtype.BREAK_ENDING_SOON),
                    templates.break_ending_soon(dict(window), self.break_ending_lead),
                    now_iso,
                )

        return sent

    def _break_scope(self, window: sqlite3.Row, subtype: NotificationSubtype) -> NotificationScope:
        return NotificationScope(
            category=NotificationCategory.BREAK.value,
            entity_id=str(window["id"]),
            subtype=subtype.value,
            entity_date=self._local_date(window["start_time"]),
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    @timed(store_latency)
    def send_event_reminders(self, now: datetime | None = None) -> int:
        """Fan out a reminder for today's events starting within the lead."""
        now = now or now_utc()
        now_iso = to_iso(now)
        today, time_now = local_date_and_time(self.event_timezone, now)
        horizon = now + timedelta(minutes=self.event_reminder_lead)
        horizon_date, horizon_time = local_date_and_time(self.event_timezone, horizon)
        if horizon_date != today:
            horizon_time = "23:59:59"
        sent = 0

        with self._connect() as conn:
            events = conn.execute(
                """
                SELECT id, title, event_type, event_date, start_time, end_time, location
                FROM events
                WHERE event_date = ? AND status IN (?, ?)
                  AND time(start_time) > ? AND time(start_time) <= ?
                ORDER BY time(start_time), id
                """,
                (today, EventStatus.UPCOMING.value, EventStatus.TODAY.value, time_now, horizon_time),
            ).fetchall()
            if not events:
                return 0

            users = self._active_user_ids(conn)
            for event in events:
                scope = NotificationScope(
                    category=NotificationCategory.EVENT.value,
                    entity_id=str(event["id"]),
                    subtype=NotificationSubtype.EVENT_REMINDER.value,
                    entity_date=today,
                )
                try:
                    candidate = templates.event_reminder(dict(event), today, self.event_reminder_lead)
                except (ValueError, KeyError) as e:
                    logger.error(f"Skipping reminder for event {event['id']}: {e}")
                    continue
                sent += self._notify_once(conn, users, scope, candidate, now_iso)

        return sent

    @timed(store_latency)
    def update_all_event_statuses(self, now: datetime | None = None) -> EventStatusUpdate:
        """
        Forward-only recompute of every event's status.

        Order matters: past upcoming events go straight to completed, then
        today's upcoming events become 'today', then 'today' events whose
        date passed or whose end time elapsed complete.
        """
        now = now or now_utc()
        now_iso = to_iso(now)
        today, time_now = local_date_and_time(self.event_timezone, now)
        upcoming, current, done = (
            EventStatus.UPCOMING.value,
            EventStatus.TODAY.value,
            EventStatus.COMPLETED.value,
        )
        steps = [
            (upcoming, done, "event_date < ?", (today,)),
            (upcoming, current, "event_date = ?", (today,)),
            (
                current,
                done,
                "(event_date < ? OR (event_date = ? AND end_time IS NOT NULL "
                "AND time(end_time) <= ?))",
                (today, today, time_now),
            ),
        ]
        counts: list[tuple[str, str, int]] = []

        with self._connect() as conn:
            for old, new, predicate, params in steps:
                rows = conn.execute(
                    f"SELECT id FROM events WHERE status = ? AND {predicate}",  # noqa: S608
                    (old, *params),
                ).fetchall()
                changed = sum(
                    self._transition(conn, "event", row["id"], old, new, now_iso) for row in rows
                )
                if changed:
                    counts.append((old, new, changed))

        details = ", ".join(f"{n} {old}->{new}" for old, new, n in counts)
        return EventStatusUpdate(updated_count=sum(n for _, _, n in counts), details=details)

    @timed(store_latency)
    def list_today_started_events(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Events in 'today' status whose local start time has passed."""
        today, time_now = local_date_and_time(self.event_timezone, now)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, title, event_type, event_date, start_time, end_time, location
                FROM events
                WHERE status = ? AND event_date = ? AND time(start_time) <= ?
                ORDER BY time(start_time), id
                """,
                (EventStatus.TODAY.value, today, time_now),
            ).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    @timed(store_latency)
    def count_existing_notifications(
        self, entity_id: str, subtype: str, entity_date: str, category: str | None = None
    ) -> int:
        sql = """
            SELECT COUNT(*) FROM notifications
            WHERE json_extract(payload, '$.entity_id') = ?
              AND json_extract(payload, '$.notification_subtype') = ?
              AND json_extract(payload, '$.entity_date') = ?
        """
        params: list[Any] = [str(entity_id), subtype, entity_date]
        if category is not None:
            sql += " AND category = ?"
            params.append(category)

        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()[0]

    @timed(store_latency)
    def insert_notification_for_all_users(
        self, candidate: NotificationCandidate
    ) -> list[dict[str, Any]]:
        """
        Insert one row per active user.

        A recipient whose insert fails is logged and skipped; the rows that
        did succeed are kept.
        """
        now_iso = to_iso(now_utc())
        created: list[dict[str, Any]] = []

        with self._connect() as conn:
            for user_id in self._active_user_ids(conn):
                try:
                    row_id = self._insert_notification(conn, user_id, candidate, now_iso)
                except sqlite3.Error as e:
                    logger.error(f"Failed to notify user {user_id}: {e}")
                    continue
                created.append({"id": row_id, "user_id": user_id})

        return created

    # =========================================================================
    # BREAK SESSIONS
    # =========================================================================

    def start_break_session(
        self,
        user_id: str,
        break_type: str = "break",
        duration_seconds: int | None = None,
        now: datetime | None = None,
        session_id: str | None = None,
    ) -> BreakSession:
        now = now or now_utc()
        if duration_seconds is None:
            duration_seconds = config.DEFAULT_BREAK_DURATION_MINUTES * 60
        session = BreakSession(
            id=session_id or uuid.uuid4().hex,
            user_id=user_id,
            break_type=break_type,
            duration_seconds=duration_seconds,
            start_time=now,
            time_remaining_seconds=duration_seconds,
            last_updated=now,
        )
        self.save_break_session(session)
        logger.info(f"Break session {session.id} started for {user_id}")
        return session

    def save_break_session(self, session: BreakSession) -> None:
        """Upsert the projection; emergency_pause_used can only go from 0 to 1."""
        data = session.to_dict()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO break_sessions (
                    id, user_id, break_type, duration_seconds, start_time,
                    time_remaining_seconds, is_paused, last_updated,
                    emergency_pause_used, ended_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    time_remaining_seconds = excluded.time_remaining_seconds,
                    is_paused = excluded.is_paused,
                    last_updated = excluded.last_updated,
                    emergency_pause_used = MAX(break_sessions.emergency_pause_used,
                                               excluded.emergency_pause_used),
                    ended_at = COALESCE(break_sessions.ended_at, excluded.ended_at)
                """,
                (
                    data["id"],
                    data["user_id"],
                    data["break_type"],
                    data["duration_seconds"],
                    data["start_time"],
                    data["time_remaining_seconds"],
                    int(data["is_paused"]),
                    data["last_updated"],
                    int(data["emergency_pause_used"]),
                    data["ended_at"],
                ),
            )

    def load_break_session(self, session_id: str) -> BreakSession | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM break_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return BreakSession.from_dict(dict(row)) if row else None

    def end_break_session(self, session_id: str, now: datetime) -> None:
        now_iso = to_iso(now)
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE break_sessions
                SET ended_at = ?, is_paused = 0, last_updated = ?
                WHERE id = ? AND ended_at IS NULL
                """,
                (now_iso, now_iso, session_id),
            )
