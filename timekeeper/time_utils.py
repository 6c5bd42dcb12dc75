"""
Time utilities.

All instants are stored as ISO 8601 UTC with a Z suffix and exactly three
fractional digits (24 chars), so string order equals time order in SQL.
Event wall-clock values are expressed in the configured event timezone.
"""

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

UTC = timezone.utc


def now_utc() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime) -> str:
    """
    Format an aware datetime as canonical 24-char UTC.

    Naive datetimes are taken to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    dt_utc = dt.astimezone(UTC)
    ms = dt_utc.microsecond // 1000
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"


def parse_iso(ts: str) -> datetime:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the timestamp is unparseable
    """
    if not ts:
        raise ValueError("Empty timestamp")
    ts_for_parse = ts[:-1] + "+00:00" if ts.endswith("Z") else ts
    try:
        dt = datetime.fromisoformat(ts_for_parse)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Unparseable timestamp: {ts}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)



def local_now(tz_name: str, now: datetime | None = None) -> datetime:
    """Current (or given) instant expressed in the named timezone."""
    now = now or now_utc()
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(ZoneInfo(tz_name))


def local_date_and_time(tz_name: str, now: datetime | None = None) -> tuple[str, str]:
    """Return ('YYYY-MM-DD', 'HH:MM:SS') for the instant in the named timezone."""
    local = local_now(tz_name, now)
    return local.date().isoformat(), local.strftime("%H:%M:%S")


def parse_wall_time(value: str) -> time:
    """Parse 'HH:MM' or 'HH:MM:SS' (optionally with fraction) into a time."""
    return time.fromisoformat(value)


def format_12h(value: str) -> str:
    """'14:05:00' -> '02:05 PM'."""
    return parse_wall_time(value).strftime("%I:%M %p")
