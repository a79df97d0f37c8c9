"""In-process metrics for the triage engine.

Counts what the session store and dispatcher do (runs started, finished,
conflicts, ingested and evicted activities, stream lines that fell back to
raw log text) so an operator endpoint can expose them in Prometheus text
format.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from threading import Lock
from typing import Any

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted(labels.items())) if labels else ()


class MetricType(StrEnum):
    """Types of metrics."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricValue:
    """A single metric value with metadata."""

    name: str
    type: MetricType
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    help_text: str = ""


class _ScalarMetric:
    """Shared storage for counters and gauges."""

    metric_type: MetricType

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._values: dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def _add(self, value: float, labels: dict[str, str] | None) -> None:
        with self._lock:
            self._values[_label_key(labels)] += value

    def get(self, labels: dict[str, str] | None = None) -> float:
        """Get the current value for a label set."""
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def total(self) -> float:
        """Sum over every label set."""
        with self._lock:
            return sum(self._values.values())

    def get_all(self) -> list[MetricValue]:
        """Get all values with their labels."""
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    type=self.metric_type,
                    value=value,
                    labels=dict(label_key),
                    help_text=self.help_text,
                )
                for label_key, value in self._values.items()
            ]


class Counter(_ScalarMetric):
    """A monotonically increasing counter.

    Example:
        counter = Counter("triage_sessions_started_total", "Runs started")
        counter.inc()
        counter.inc(labels={"mode": "plan"})
    """

    metric_type = MetricType.COUNTER

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Increment the counter.

        Raises:
            ValueError: If value is negative.
        """
        if value < 0:
            raise ValueError("Counter can only increase")
        self._add(value, labels)


class Gauge(_ScalarMetric):
    """A metric that can go up or down."""

    metric_type = MetricType.GAUGE

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        """Set the gauge value."""
        with self._lock:
            self._values[_label_key(labels)] = value

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Increment the gauge."""
        self._add(value, labels)

    def dec(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Decrement the gauge."""
        self._add(-value, labels)


class Histogram:
    """A histogram of observed values.

    Example:
        histogram = Histogram("triage_fetch_duration_seconds", "Issue fetch duration")
        histogram.observe(0.8, labels={"source": "command"})
    """

    DEFAULT_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, float("inf"))

    def __init__(
        self,
        name: str,
        help_text: str = "",
        buckets: tuple[float, ...] | None = None,
    ) -> None:
        self.name = name
        self.help_text = help_text
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._observations: dict[LabelKey, list[float]] = defaultdict(list)
        self._lock = Lock()

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        """Record an observation."""
        with self._lock:
            self._observations[_label_key(labels)].append(value)

    def get_stats(self, labels: dict[str, str] | None = None) -> dict[str, float]:
        """Return count, sum, min, max and mean for a label set."""
        with self._lock:
            values = list(self._observations.get(_label_key(labels), []))

        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "mean": 0}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": sum(values) / len(values),
        }

    def get_buckets(self, labels: dict[str, str] | None = None) -> dict[float, int]:
        """Return per-bucket counts (each value lands in its smallest bucket)."""
        with self._lock:
            values = list(self._observations.get(_label_key(labels), []))

        bucket_counts: dict[float, int] = dict.fromkeys(self._buckets, 0)
        for value in values:
            for bucket in self._buckets:
                if value <= bucket:
                    bucket_counts[bucket] += 1
                    break
        return bucket_counts


class MetricsRegistry:
    """Singleton holding every metric the engine records.

    Example:
        registry = MetricsRegistry.get_instance()
        registry.sessions_started.inc()
        snapshot = registry.get_all_metrics()
    """

    _instance: MetricsRegistry | None = None
    _lock = Lock()

    def __init__(self) -> None:
        self.issues_fetched = Counter(
            "triage_issues_fetched_total", "Issues returned by the issue source"
        )
        self.sessions_started = Counter("triage_sessions_started_total", "Fix runs started")
        self.sessions_completed = Counter(
            "triage_sessions_completed_total", "Fix runs that completed"
        )
        self.sessions_failed = Counter("triage_sessions_failed_total", "Fix runs that failed")
        self.sessions_cancelled = Counter(
            "triage_sessions_cancelled_total", "Fix runs cancelled by the user"
        )
        self.conflicts_rejected = Counter(
            "triage_conflicts_rejected_total", "Start requests rejected as already processing"
        )
        self.activities_ingested = Counter(
            "triage_activities_ingested_total", "Activities recorded into sessions"
        )
        self.activities_evicted = Counter(
            "triage_activities_evicted_total", "Activities dropped by the retention cap"
        )
        self.stream_parse_fallbacks = Counter(
            "triage_stream_parse_fallbacks_total", "Agent lines surfaced as raw log text"
        )
        self.transport_errors = Counter(
            "triage_transport_errors_total", "Process or network failures on event streams"
        )
        self.active_sessions = Gauge("triage_active_sessions", "Sessions pending or processing")
        self.fetch_duration = Histogram(
            "triage_fetch_duration_seconds", "Issue source fetch duration in seconds"
        )
        self._start_time = time.time()

    @classmethod
    def get_instance(cls) -> MetricsRegistry:
        """Get the singleton metrics registry instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton; the next get_instance() starts from zero."""
        with cls._lock:
            cls._instance = None

    def _counters(self) -> list[Counter]:
        return [
            self.issues_fetched,
            self.sessions_started,
            self.sessions_completed,
            self.sessions_failed,
            self.sessions_cancelled,
            self.conflicts_rejected,
            self.activities_ingested,
            self.activities_evicted,
            self.stream_parse_fallbacks,
            self.transport_errors,
        ]

    def get_uptime_seconds(self) -> float:
        """Seconds since the registry was created."""
        return time.time() - self._start_time

    def get_all_metrics(self) -> dict[str, Any]:
        """Return a nested snapshot of every metric."""
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "issues": {"fetched": self.issues_fetched.total()},
            "sessions": {
                "started": self.sessions_started.total(),
                "completed": self.sessions_completed.total(),
                "failed": self.sessions_failed.total(),
                "cancelled": self.sessions_cancelled.total(),
                "conflicts": self.conflicts_rejected.total(),
                "active": self.active_sessions.get(),
            },
            "activities": {
                "ingested": self.activities_ingested.total(),
                "evicted": self.activities_evicted.total(),
            },
            "stream": {
                "parse_fallbacks": self.stream_parse_fallbacks.total(),
                "transport_errors": self.transport_errors.total(),
            },
            "fetch_duration": self.fetch_duration.get_stats(),
        }

    def to_prometheus_format(self) -> str:
        """Export counters and gauges in Prometheus text format."""
        lines: list[str] = []
        for metric in [*self._counters(), self.active_sessions]:
            if metric.help_text:
                lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type.value}")
            for value in metric.get_all():
                if value.labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in value.labels.items())
                    lines.append(f"{metric.name}{{{label_str}}} {value.value}")
                else:
                    lines.append(f"{metric.name} {value.value}")

        lines.append("# HELP triage_uptime_seconds Engine uptime in seconds")
        lines.append("# TYPE triage_uptime_seconds gauge")
        lines.append(f"triage_uptime_seconds {self.get_uptime_seconds()}")
        return "\n".join(lines)


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    return MetricsRegistry.get_instance()


class Timer:
    """Context manager that records elapsed seconds into a histogram.

    Example:
        with Timer(get_metrics().fetch_duration, labels={"source": "http"}):
            issues = await source.fetch_issues()
    """

    def __init__(self, histogram: Histogram, labels: dict[str, str] | None = None) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start: float | None = None

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        if self._start is not None:
            self._histogram.observe(time.perf_counter() - self._start, labels=self._labels)
