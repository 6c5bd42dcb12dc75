"""
In-process metrics for the engine.

Each poller registers a family of `poll_<name>_*` metrics; the store and
cache layers share a few module-level instruments. Everything lives in
REGISTRY, which the daemon writes into its state file and can render as
Prometheus text.
"""

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps

# Observations kept per histogram; older ticks fall off the window.
HISTOGRAM_WINDOW = 1000


@dataclass
class Counter:
    """Monotonic counter."""

    name: str
    description: str
    _value: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass
class Gauge:
    """Last-written value, e.g. a poller health score."""

    name: str
    description: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


@dataclass
class Histogram:
    """
    Sliding window of durations.

    Count and sum are lifetime totals so the Prometheus summary stays
    monotonic; avg, max and p95 describe only the retained window.
    """

    name: str
    description: str
    window: int = HISTOGRAM_WINDOW
    _values: deque = field(init=False, repr=False)
    _count: int = 0
    _sum: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self._values = deque(maxlen=self.window)

    def observe(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            self._count += 1
            self._sum += value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    @property
    def avg(self) -> float:
        with self._lock:
            return sum(self._values) / len(self._values) if self._values else 0.0

    @property
    def max(self) -> float:
        with self._lock:
            return max(self._values) if self._values else 0.0

    def percentile(self, pct: float) -> float:
        """Nearest-rank percentile over the retained window."""
        with self._lock:
            if not self._values:
                return 0.0
            ordered = sorted(self._values)
        rank = max(1, math.ceil(pct / 100 * len(ordered)))
        return ordered[rank - 1]


class MetricsRegistry:
    """Get-or-create registry keyed by metric name."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, description: str = "") -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, description)
            return self._counters[name]

    def gauge(self, name: str, description: str = "") -> Gauge:
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name, description)
            return self._gauges[name]

    def histogram(self, name: str, description: str = "") -> Histogram:
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name, description)
            return self._histograms[name]

    def poller_summary(self, poller: str) -> dict[str, float | int]:
        """
        Condensed view of one poller's metric family.

        Missing metrics read as zero so a poller that never ticked still
        produces a complete row.
        """
        prefix = f"poll_{poller}"
        with self._lock:
            runs = self._counters.get(f"{prefix}_runs_total")
            skips = self._counters.get(f"{prefix}_skipped_total")
            errors = self._counters.get(f"{prefix}_errors_total")
            duration = self._histograms.get(f"{prefix}_duration_seconds")
        return {
            "runs": runs.value if runs else 0,
            "skipped": skips.value if skips else 0,
            "errors": errors.value if errors else 0,
            "avg_seconds": round(duration.avg, 6) if duration else 0.0,
            "p95_seconds": round(duration.percentile(95), 6) if duration else 0.0,
            "max_seconds": round(duration.max, 6) if duration else 0.0,
        }

    def to_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            sections = [
                ("counter", self._counters),
                ("gauge", self._gauges),
            ]
            for kind, metrics in sections:
                for name in sorted(metrics):
                    metric = metrics[name]
                    if metric.description:
                        lines.append(f"# HELP {name} {metric.description}")
                    lines.append(f"# TYPE {name} {kind}")
                    lines.append(f"{name} {metric.value}")

            for name in sorted(self._histograms):
                h = self._histograms[name]
                if h.description:
                    lines.append(f"# HELP {name} {h.description}")
                lines.append(f"# TYPE {name} summary")
                lines.append(f'{name}{{quantile="0.95"}} {h.percentile(95)}')
                lines.append(f"{name}_count {h.count}")
                lines.append(f"{name}_sum {h.sum}")

        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, dict[str, float | int | str]]:
        result: dict[str, dict[str, float | int | str]] = {}
        with self._lock:
            for name, c in self._counters.items():
                result[name] = {"type": "counter", "value": c.value}
            for name, g in self._gauges.items():
                result[name] = {"type": "gauge", "value": g.value}
            for name, h in self._histograms.items():
                result[name] = {
                    "type": "histogram",
                    "count": h.count,
                    "sum": h.sum,
                    "avg": h.avg,
                    "max": h.max,
                }
        return result


REGISTRY = MetricsRegistry()


cache_keys_invalidated = REGISTRY.counter(
    "cache_keys_invalidated_total", "Cache keys deleted by invalidation passes"
)
cache_invalidation_errors = REGISTRY.counter(
    "cache_invalidation_errors_total", "Cache invalidation failures (swallowed)"
)
notifications_created = REGISTRY.counter(
    "notifications_created_total", "Notification rows created by the engine"
)
store_latency = REGISTRY.histogram(
    "store_call_seconds", "Latency of LifecycleStore operations, one observation per call"
)


def timed(histogram: Histogram) -> Callable:
    """Record each call's wall time on `histogram`, including failed calls."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                histogram.observe(time.perf_counter() - start)

        return wrapper

    return decorator
