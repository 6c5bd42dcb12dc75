"""
Test configuration: repo root on sys.path plus per-test isolation.

Every test gets its own TIMEKEEPER_HOME so PID/state/log files and the
default database never touch a real installation.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to sys.path so tests can import timekeeper.*
REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tests.fixtures import create_fixture_db  # noqa: E402
from timekeeper.cache import CacheManager, SharedCache  # noqa: E402
from timekeeper.store import LifecycleStore  # noqa: E402

# 10:00 local time in Asia/Manila (UTC+8)
FIXED_NOW = datetime(2026, 3, 10, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point every path helper at a throwaway home directory."""
    home = tmp_path / "home"
    monkeypatch.setenv("TIMEKEEPER_HOME", str(home))
    monkeypatch.setenv("TIMEKEEPER_DB", str(home / "data" / "timekeeper.db"))
    return home


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def db_path(tmp_path):
    """Schema + seeded users (u1..u3 active, u9 inactive)."""
    return create_fixture_db(tmp_path / "fixture.db")


@pytest.fixture
def store(db_path):
    return LifecycleStore(db_path, event_timezone="Asia/Manila")


@pytest.fixture
def memory_cache():
    return CacheManager()


@pytest.fixture
def shared_cache(memory_cache):
    cache = SharedCache(lambda: memory_cache, description="In-memory cache")
    yield cache
    cache.close()
