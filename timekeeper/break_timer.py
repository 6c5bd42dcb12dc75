"""
Break countdown reconciliation.

The countdown shown to an agent is never a free-running local decrement.
It is derived from the last authoritative snapshot of the break session:

1. remainder + last_updated, not paused -> remainder minus wall time since last_updated
2. paused -> the stored remainder, frozen
3. only start_time known -> configured duration minus wall time since start

so a reload, crash or network drop resumes at the right second instead of
jumping back to the full duration or to zero. The emergency pause may be
used once per session; resuming continues from the frozen remainder.
"""

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from timekeeper.poller import ReentrantPoller
from timekeeper.time_utils import UTC, now_utc, parse_iso, to_iso

logger = logging.getLogger(__name__)


class BreakTimerError(Exception):
    """An operation is not valid for the session's current state."""


class EmergencyPauseUnavailable(BreakTimerError):
    """The single emergency pause for this session was already used."""


@dataclass
class BreakSession:
    """Client-observed projection of one break."""

    id: str
    duration_seconds: int
    user_id: str | None = None
    break_type: str = "break"
    start_time: datetime | None = None
    time_remaining_seconds: int | None = None
    is_paused: bool = False
    last_updated: datetime | None = None
    emergency_pause_used: bool = False
    ended_at: datetime | None = None

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    def to_dict(self) -> dict[str, Any]:
        def _ts(value: datetime | None) -> str | None:
            return to_iso(value) if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "break_type": self.break_type,
            "duration_seconds": self.duration_seconds,
            "start_time": _ts(self.start_time),
            "time_remaining_seconds": self.time_remaining_seconds,
            "is_paused": self.is_paused,
            "last_updated": _ts(self.last_updated),
            "emergency_pause_used": self.emergency_pause_used,
            "ended_at": _ts(self.ended_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BreakSession":
        """Build from a stored row or JSON snapshot (timestamps as ISO strings)."""

        def _dt(value: Any) -> datetime | None:
            if value is None or value == "":
                return None
            if isinstance(value, datetime):
                return value if value.tzinfo else value.replace(tzinfo=UTC)
            return parse_iso(str(value))

        remaining = data.get("time_remaining_seconds")
        return cls(
            id=str(data["id"]),
            duration_seconds=int(data["duration_seconds"]),
            user_id=data.get("user_id"),
            break_type=data.get("break_type") or "break",
            start_time=_dt(data.get("start_time")),
            time_remaining_seconds=None if remaining is None else int(remaining),
            is_paused=bool(data.get("is_paused")),
            last_updated=_dt(data.get("last_updated")),
            emergency_pause_used=bool(data.get("emergency_pause_used")),
            ended_at=_dt(data.get("ended_at")),
        )


def _seconds_since(then: datetime, now: datetime) -> float:
    # Clock skew must never push the countdown backward (above the snapshot)
    return max(0.0, (now - then).total_seconds())


def _clamp(seconds: float) -> int:
    return max(0, math.ceil(seconds))


def reconcile_time_left(
    session: BreakSession,
    now: datetime | None = None,
    duration_seconds: int | None = None,
) -> int:
    """
    Seconds left on the break, derived from the authoritative snapshot.

    Args:
        session: Latest snapshot of the break session
        now: Reconciliation instant (defaults to current UTC time)
        duration_seconds: Full configured duration, defaults to the session's

    Returns:
        Whole seconds remaining, never negative
    """
    now = now or now_utc()
    duration = session.duration_seconds if duration_seconds is None else duration_seconds
    remaining = session.time_remaining_seconds

    if remaining is not None and not session.is_paused and session.last_updated is not None:
        return _clamp(remaining - _seconds_since(session.last_updated, now))

    if session.is_paused and remaining is not None:
        return max(0, remaining)

    if session.start_time is not None:
        return _clamp(duration - _seconds_since(session.start_time, now))

    if remaining is not None:
        return max(0, remaining)
    return max(0, duration)


def format_clock(seconds: int) -> str:
    """Format seconds as MM:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class BreakSessionRepository(Protocol):
    def save_break_session(self, session: BreakSession) -> None: ...

    def end_break_session(self, session_id: str, now: datetime) -> None: ...


class BreakCountdown:
    """
    Countdown for one break session, persisted on every pause/resume and on
    a periodic autosave so other processes can reconcile from it.
    """

    def __init__(
        self,
        session: BreakSession,
        repository: BreakSessionRepository | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.session = session
        self.repository = repository
        self.clock = clock
        self._lock = threading.RLock()
        self._autosave: ReentrantPoller | None = None

    def time_left(self, now: datetime | None = None) -> int:
        with self._lock:
            return reconcile_time_left(self.session, now or self.clock())

    def is_finished(self, now: datetime | None = None) -> bool:
        return self.session.is_ended or self.time_left(now) == 0

    def progress_percent(self, now: datetime | None = None) -> float:
        total = self.session.duration_seconds
        if total <= 0:
            return 100.0
        return round((total - self.time_left(now)) / total * 100, 1)

    def pause(self, now: datetime | None = None) -> int:
        """
        Use the emergency pause and freeze the countdown.

        Raises:
            EmergencyPauseUnavailable: the pause was already used this session
            BreakTimerError: the session already ended
        """
        now = now or self.clock()
        with self._lock:
            self._require_active()
            if self.session.emergency_pause_used:
                raise EmergencyPauseUnavailable("Only one pause attempt allowed per break.")

            remaining = reconcile_time_left(self.session, now)
            self.session.time_remaining_seconds = remaining
            self.session.is_paused = True
            self.session.emergency_pause_used = True
            self.session.last_updated = now
            self._persist()

        logger.info(f"Break {self.session.id} paused with {format_clock(remaining)} left")
        return remaining

    def resume(self, now: datetime | None = None) -> int:
        """
        Continue from the frozen remainder.

        Time spent paused is not charged: the remainder is exactly what it
        was when the pause happened.
        """
        now = now or self.clock()
        with self._lock:
            self._require_active()
            if not self.session.is_paused:
                raise BreakTimerError(f"Break {self.session.id} is not paused")

            self.session.is_paused = False
            self.session.last_updated = now
            self._persist()
            remaining = self.session.time_remaining_seconds or 0

        logger.info(f"Break {self.session.id} resumed with {format_clock(remaining)} left")
        return remaining

    def refresh(self, now: datetime | None = None) -> int:
        """Write a fresh snapshot of a running countdown."""
        now = now or self.clock()
        with self._lock:
            if self.session.is_ended or self.session.is_paused:
                return reconcile_time_left(self.session, now)
            remaining = reconcile_time_left(self.session, now)
            self.session.time_remaining_seconds = remaining
            self.session.last_updated = now
            self._persist()
        return remaining

    def end(self, now: datetime | None = None) -> None:
        now = now or self.clock()
        self.stop_autosave()
        with self._lock:
            if self.session.is_ended:
                return
            self.session.ended_at = now
            self.session.is_paused = False
            self.session.time_remaining_seconds = reconcile_time_left(self.session, now)
            if self.repository is not None:
                self.repository.end_break_session(self.session.id, now)
        logger.info(f"Break {self.session.id} ended")

    def start_autosave(self, interval_seconds: float = 30.0) -> ReentrantPoller:
        """Refresh the stored snapshot periodically until end() or stop_autosave()."""
        if self._autosave is None:
            self._autosave = ReentrantPoller(
                f"break_autosave_{self.session.id}", interval_seconds, self.refresh
            )
            self._autosave.start()
        return self._autosave

    def stop_autosave(self) -> None:
        if self._autosave is not None:
            self._autosave.stop()
            self._autosave = None

    def _require_active(self) -> None:
        if self.session.is_ended:
            raise BreakTimerError(f"Break {self.session.id} has already ended")

    def _persist(self) -> None:
        if self.repository is not None:
            self.repository.save_break_session(self.session)
