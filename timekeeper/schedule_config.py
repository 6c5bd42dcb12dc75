"""
Poll cadence configuration.

Reads config/schedule.yaml to determine the interval of every poller.

Usage:
    from timekeeper.schedule_config import load_schedule

    schedule = load_schedule()
    schedule["meeting_start"].interval_seconds  # 0.5
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from timekeeper import paths

logger = logging.getLogger(__name__)

SCHEDULE_PATH = paths.config_dir() / "schedule.yaml"


@dataclass(frozen=True)
class PollSchedule:
    """Cadence of one poller."""

    interval_seconds: float
    align: bool = False


DEFAULT_SCHEDULE: dict[str, PollSchedule] = {
    "meeting_start": PollSchedule(0.5),
    "meeting_reminders": PollSchedule(60.0),
    "meeting_notifications": PollSchedule(2.0),
    "events": PollSchedule(10.0),
    "breaks": PollSchedule(30.0, align=True),
}


def load_schedule(path: Optional[str] = None) -> dict[str, PollSchedule]:
    """
    Load poll cadences from YAML config, falling back to defaults.

    Returns a dict covering every key of DEFAULT_SCHEDULE. Entries that are
    missing or invalid keep their default.

    Raises:
        FileNotFoundError if an explicit path doesn't exist.
        yaml.YAMLError if the config is invalid YAML.
        ValueError if the document has no 'schedules' mapping.
    """
    schedule = dict(DEFAULT_SCHEDULE)

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Schedule not found: {config_path}")
    else:
        config_path = SCHEDULE_PATH
        if not config_path.exists():
            logger.info(f"No schedule file at {config_path}, using defaults")
            return schedule

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if not data or not isinstance(data.get("schedules"), dict):
        raise ValueError("schedule.yaml must have a 'schedules' mapping")

    for name, entry in data["schedules"].items():
        if name not in DEFAULT_SCHEDULE:
            logger.warning(f"Ignoring unknown schedule entry: {name}")
            continue
        if not isinstance(entry, dict):
            logger.warning(f"Skipping invalid schedule entry: {name}")
            continue

        interval = entry.get("interval_seconds")
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            logger.warning(f"Invalid interval for {name}: {interval}")
            continue

        schedule[name] = PollSchedule(
            interval_seconds=float(interval),
            align=bool(entry.get("align", DEFAULT_SCHEDULE[name].align)),
        )

    return schedule
