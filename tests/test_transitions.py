"""
Tests for LifecycleTransitioner.
"""

import sqlite3

import pytest

from timekeeper.observability import store_latency
from timekeeper.transitions import (
    EventStatusUpdate,
    LifecycleTransitioner,
    NotificationSummary,
    changed_count,
)


class TestLifecycleTransitioner:
    def test_returns_store_result(self):
        transitioner = LifecycleTransitioner("test_count", lambda: 3)
        assert transitioner.run_once() == 3

    def test_store_error_propagates(self):
        def failing():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            LifecycleTransitioner("test_failing", failing).run_once()

    def test_counts_changes(self):
        transitioner = LifecycleTransitioner("test_changes", lambda: NotificationSummary(2, 1))
        before = transitioner._changed.value
        transitioner.run_once()
        assert transitioner._changed.value == before + 3

    def test_store_latency_recorded_once_per_store_call(self, store, now):
        transitioner = LifecycleTransitioner(
            "test_latency", lambda: store.check_and_start_scheduled_meetings(now)
        )
        before = store_latency.count
        transitioner.run_once()
        assert store_latency.count == before + 1

    def test_non_store_work_leaves_store_latency_alone(self):
        before = store_latency.count
        LifecycleTransitioner("test_plain", lambda: 0).run_once()
        assert store_latency.count == before


class TestChangedCount:
    def test_summary_types(self):
        assert changed_count(4) == 4
        assert changed_count(NotificationSummary(reminders_sent=1, starts_sent=2)) == 3
        assert changed_count(EventStatusUpdate(updated_count=5, details="x")) == 5

    def test_unknown_result(self):
        with pytest.raises(TypeError):
            changed_count("3")
