"""
Scheduler daemon: process-level start/stop wiring.

Each scheduler (meetings, events, breaks) can run as its own process, or
all three can share one process and one cache handle.

Usage:
    python -m timekeeper start meetings     # Run the meeting scheduler (foreground)
    python -m timekeeper start all          # All schedulers in one process
    python -m timekeeper stop meetings      # Stop a running scheduler
    python -m timekeeper status all         # PID liveness + last persisted poller state
    python -m timekeeper run-once events    # One tick of every poller and exit
    python -m timekeeper init-db            # Create the schema
"""

import argparse
import json
import logging
import os
import signal
import sqlite3
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from timekeeper import config, paths
from timekeeper.cache import SharedCache, build_shared_cache
from timekeeper.db import init_db
from timekeeper.observability import REGISTRY, configure_log_rotation, configure_logging
from timekeeper.schedule_config import load_schedule
from timekeeper.schedulers import SCHEDULERS, BaseScheduler, MeetingScheduler
from timekeeper.store import LifecycleStore

logger = logging.getLogger(__name__)

ALL = "all"
STATE_SAVE_INTERVAL_SECONDS = 30
STOP_GRACE_SECONDS = 5.0


def scheduler_names(target: str) -> list[str]:
    if target == ALL:
        return list(SCHEDULERS)
    if target not in SCHEDULERS:
        raise ValueError(f"Unknown scheduler {target!r}, expected one of {[*SCHEDULERS, ALL]}")
    return [target]


class SchedulerDaemon:
    """
    Runs one or more schedulers until SIGINT/SIGTERM.

    Features:
    - Independent pollers per scheduler, started together
    - Graceful shutdown: in-flight work finishes, cache closed exactly once
    - PID file and periodic state persistence for `status`
    """

    def __init__(
        self,
        target: str = ALL,
        store: LifecycleStore | None = None,
        cache: SharedCache | None = None,
        schedule_path: str | None = None,
        state_interval: float = STATE_SAVE_INTERVAL_SECONDS,
    ):
        self.target = target
        self.store = store or LifecycleStore()
        self.cache = cache or build_shared_cache()
        self.state_interval = state_interval
        self.pid_file = paths.pid_file(target)
        self.state_file = paths.state_file(target)

        schedule = load_schedule(schedule_path)
        self.schedulers: list[BaseScheduler] = [
            SCHEDULERS[name](self.store, self.cache, schedule) for name in scheduler_names(target)
        ]
        self._shutdown_event = threading.Event()
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Start every scheduler.

        Raises:
            RuntimeError: a poller could not be started (schedulers already
                started are stopped again)
        """
        started: list[BaseScheduler] = []
        try:
            for scheduler in self.schedulers:
                scheduler.start()
                started.append(scheduler)
        except RuntimeError:
            for scheduler in started:
                scheduler.stop(wait=False)
            raise

    def stop(self, timeout: float | None = None) -> None:
        """Stop all pollers, wait for in-flight work, then close the cache. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._shutdown_event.set()
        for scheduler in self.schedulers:
            scheduler.stop(wait=True, timeout=timeout)
        self.cache.close()

    def run(self) -> int:
        """
        Run in the foreground until a shutdown signal.

        Returns:
            Process exit code: 0 after a clean shutdown, 1 if the pollers
            could not be started
        """
        logger.info("=" * 50)
        logger.info(f"Timekeeper {self.target} scheduler starting")
        logger.info("=" * 50)

        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        try:
            self.start()
        except RuntimeError as e:
            logger.error(f"Failed to start schedulers: {e}")
            self.stop()
            return 1

        self._write_pid()
        self._log_meeting_stats()

        try:
            while not self._shutdown_event.wait(self.state_interval):
                self._save_state()
        finally:
            self._cleanup()
        return 0

    def run_once(self) -> dict[str, dict[str, bool]]:
        """One synchronous tick of every poller, then release the cache."""
        try:
            results = {scheduler.name: scheduler.run_once() for scheduler in self.schedulers}
            self._save_state()
        finally:
            self.cache.close()
        return results

    def status(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "schedulers": {s.name: s.status() for s in self.schedulers},
            "ticks": {
                poller.name: REGISTRY.poller_summary(poller.name)
                for s in self.schedulers
                for poller in s.pollers.values()
            },
            "metrics": REGISTRY.to_dict(),
        }

    def _handle_signal(self, signum, frame):
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, shutting down...")
        self._shutdown_event.set()

    def _log_meeting_stats(self) -> None:
        for scheduler in self.schedulers:
            if not isinstance(scheduler, MeetingScheduler):
                continue
            try:
                stats = scheduler.get_meeting_stats()
            except sqlite3.Error as e:
                logger.warning(f"Could not read meeting stats: {e}")
                return
            logger.info(
                f"Meetings: {stats['scheduled']} scheduled, {stats['in_progress']} in progress, "
                f"{stats['soon_starting']} starting within the hour"
            )

    # ------------------------------------------------------------------
    # PID + state files
    # ------------------------------------------------------------------

    def _write_pid(self) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))
        logger.info(f"PID {os.getpid()} written to {self.pid_file}")

    def _save_state(self) -> None:
        try:
            data = {"updated_at": datetime.now().isoformat(), **self.status()}
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, "w") as f:
                json.dump(data, f, indent=2, default=str)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save state: {e}")

    def _cleanup(self) -> None:
        self.stop()
        self._save_state()
        self.pid_file.unlink(missing_ok=True)
        logger.info(f"Timekeeper {self.target} scheduler stopped")


def is_running(target: str) -> tuple[bool, int | None]:
    """Check the PID file. Returns (is_running, pid)."""
    pid_file = paths.pid_file(target)
    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
        return True, pid
    except (ProcessLookupError, ValueError):
        pid_file.unlink(missing_ok=True)
        return False, None
    except PermissionError:
        return True, pid


def stop_process(target: str, grace_seconds: float = STOP_GRACE_SECONDS) -> bool:
    """SIGTERM the running scheduler, SIGKILL if it is still alive after the grace period."""
    running, pid = is_running(target)
    if not running:
        logger.info(f"{target} scheduler is not running")
        return False

    logger.info(f"Stopping {target} scheduler (PID {pid})...")
    try:
        os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + grace_seconds
        while time.monotonic() < deadline:
            time.sleep(0.5)
            if not is_running(target)[0]:
                logger.info(f"{target} scheduler stopped")
                return True
        os.kill(pid, signal.SIGKILL)
        paths.pid_file(target).unlink(missing_ok=True)
        logger.info(f"{target} scheduler force killed")
        return True
    except ProcessLookupError:
        paths.pid_file(target).unlink(missing_ok=True)
        logger.info(f"{target} scheduler already stopped")
        return True


def read_status(target: str) -> dict[str, Any]:
    """PID liveness plus the last persisted poller state."""
    running, pid = is_running(target)
    state_file = paths.state_file(target)
    status: dict[str, Any] = {
        "target": target,
        "running": running,
        "pid": pid,
        "pid_file": str(paths.pid_file(target)),
        "state_file": str(state_file),
        "schedulers": {},
    }

    if state_file.exists():
        try:
            with open(state_file) as f:
                data = json.load(f)
            status["schedulers"] = data.get("schedulers", {})
            status["state_updated"] = data.get("updated_at")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not load scheduler state: {e}")

    return status


def _log_status(status: dict[str, Any]) -> None:
    logger.info(f"{status['target']}: running={status['running']} pid={status['pid']}")
    if status.get("state_updated"):
        logger.info(f"State updated: {status['state_updated']}")
    for name, scheduler in status.get("schedulers", {}).items():
        for poller_name, poller in scheduler.get("pollers", {}).items():
            last_run = (poller.get("last_run") or "never")[:19]
            failures = poller.get("consecutive_failures", 0)
            status_str = "ok" if failures == 0 else f"{failures} consecutive failures"
            logger.info(
                f"  {name}/{poller_name}: every {poller.get('interval_seconds')}s, "
                f"last run {last_run}, {status_str}"
            )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timekeeper", description="Timekeeper lifecycle schedulers")
    parser.add_argument(
        "action",
        choices=["start", "stop", "status", "run-once", "init-db"],
        help="Action to perform",
    )
    parser.add_argument(
        "scheduler",
        nargs="?",
        default=ALL,
        choices=[*SCHEDULERS, ALL],
        help="Scheduler to act on (default: all)",
    )
    parser.add_argument("--db", help="SQLite database path (default: TIMEKEEPER_DB or data dir)")
    parser.add_argument("--schedule", help="Poll cadence YAML (default: config/schedule.yaml)")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Log level")
    parser.add_argument("--no-log-file", action="store_true", help="Log to stderr only")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, config.LOG_JSON)

    if args.action == "init-db":
        init_db(args.db)
        return 0

    if args.action == "stop":
        stop_process(args.scheduler)
        return 0

    if args.action == "status":
        _log_status(read_status(args.scheduler))
        return 0

    store = LifecycleStore(Path(args.db) if args.db else None)

    if args.action == "run-once":
        daemon = SchedulerDaemon(args.scheduler, store=store, schedule_path=args.schedule)
        results = daemon.run_once()
        for name, ticks in results.items():
            logger.info(f"{name}: {ticks}")
        return 0

    running, pid = is_running(args.scheduler)
    if running:
        logger.error(f"{args.scheduler} scheduler already running (PID {pid})")
        return 1

    if not args.no_log_file:
        configure_log_rotation(str(paths.log_file(args.scheduler)))

    daemon = SchedulerDaemon(args.scheduler, store=store, schedule_path=args.schedule)
    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())
