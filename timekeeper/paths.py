from __future__ import annotations

import os
from pathlib import Path

APP_ENV_HOME = "TIMEKEEPER_HOME"
APP_ENV_DB = "TIMEKEEPER_DB"


def project_root() -> Path:
    """
    Repository/project root directory.
    Contains timekeeper/, config/, tests/.
    """
    return Path(__file__).parent.parent.resolve()


def app_home() -> Path:
    """
    User-writable home for the schedulers.
    Override with TIMEKEEPER_HOME.
    """
    if os.environ.get(APP_ENV_HOME):
        return Path(os.environ[APP_ENV_HOME]).expanduser().resolve()
    return (Path.home() / ".timekeeper").resolve()


def config_dir() -> Path:
    return project_root() / "config"


def data_dir() -> Path:
    d = app_home() / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def db_path() -> Path:
    """
    Canonical DB path.

    Resolution order:
    1. TIMEKEEPER_DB env var (explicit override)
    2. ~/.timekeeper/data/timekeeper.db (default)
    """
    if os.environ.get(APP_ENV_DB):
        return Path(os.environ[APP_ENV_DB]).expanduser().resolve()
    return data_dir() / "timekeeper.db"


def pid_file(scheduler: str) -> Path:
    """PID file for one scheduler process."""
    return data_dir() / f"{scheduler}-scheduler.pid"


def state_file(scheduler: str) -> Path:
    """Persisted poller state for one scheduler process."""
    return data_dir() / f"{scheduler}-scheduler-state.json"


def log_file(scheduler: str) -> Path:
    return data_dir() / f"{scheduler}-scheduler.log"
