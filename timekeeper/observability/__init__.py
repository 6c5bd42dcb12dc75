"""
Observability module: structured logging, tick IDs, metrics.

Usage:
    from timekeeper.observability import configure_logging, TickContext

    configure_logging("INFO")
    with TickContext("meeting_start"):
        logger.info("Checking scheduled meetings")

Metrics:
    from timekeeper.observability import REGISTRY

    REGISTRY.counter("poll_meeting_start_runs_total").inc()
"""

from .context import TickContext, generate_tick_id, get_tick_id, set_tick_id
from .logging import (
    HumanFormatter,
    JSONFormatter,
    configure_log_rotation,
    configure_logging,
)
from .metrics import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    cache_invalidation_errors,
    cache_keys_invalidated,
    notifications_created,
    store_latency,
    timed,
)

__all__ = [
    # Logging
    "configure_logging",
    "configure_log_rotation",
    "JSONFormatter",
    "HumanFormatter",
    # Context
    "TickContext",
    "get_tick_id",
    "set_tick_id",
    "generate_tick_id",
    # Metrics
    "REGISTRY",
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "timed",
    "cache_keys_invalidated",
    "cache_invalidation_errors",
    "notifications_created",
    "store_latency",
]
