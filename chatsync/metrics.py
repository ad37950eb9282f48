"""Sync metrics for observability.

Prometheus-compatible counters, gauges and histograms for:
- Delivery attempts by record kind and outcome, with latency
- Remote change events applied or ignored by reconciliation
- Sequence gaps detected per conversation
- Outbound queue depth
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any


@dataclass
class Histogram:
    """Cumulative-bucket histogram for latency tracking."""

    buckets: list[float] = field(
        default_factory=lambda: [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
    )
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation."""
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket:
                self.counts[bucket] += 1

    def to_prometheus(self, name: str, labels: str = "") -> str:
        """Render in Prometheus histogram format."""
        extra = f", {labels}" if labels else ""
        lines = [f'{name}_bucket{{le="{bucket}"{extra}}} {self.counts[bucket]}' for bucket in self.buckets]
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        label_str = f"{{{labels}}}" if labels else ""
        lines.append(f"{name}_sum{label_str} {self.sum}")
        lines.append(f"{name}_count{label_str} {self.count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Thread-safe registry for sync metrics."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self.started_at = time.time()

    @staticmethod
    def _labels_to_key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        """Increment a counter metric."""
        key = self._labels_to_key(labels)
        with self._lock:
            self._counters[name][key] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Set a gauge metric."""
        key = self._labels_to_key(labels)
        with self._lock:
            self._gauges[name][key] = value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Record a histogram observation."""
        key = self._labels_to_key(labels)
        with self._lock:
            self._histograms[name].setdefault(key, Histogram()).observe(value)

    def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Current value of a counter (0 if never incremented)."""
        with self._lock:
            return self._counters.get(name, {}).get(self._labels_to_key(labels), 0)

    def reset(self) -> None:
        """Drop every recorded metric."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def to_prometheus(self) -> str:
        """Generate Prometheus text format output."""
        lines = []
        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, label_values in series.items():
                    lines.append(f"# TYPE {name} {kind}")
                    for label_key, value in label_values.items():
                        label_str = f"{{{label_key}}}" if label_key else ""
                        lines.append(f"{name}{label_str} {value}")
                    lines.append("")

            for name, label_histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for label_key, histogram in label_histograms.items():
                    lines.append(histogram.to_prometheus(name, label_key))
                lines.append("")

        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        """Get metrics as a dictionary (for JSON endpoints)."""
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "gauges": {k: dict(v) for k, v in self._gauges.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }


# Global metrics registry
metrics = MetricsRegistry()


def record_delivery(kind: str, outcome: str, duration: float) -> None:
    """Record one delivery attempt ("message"/"conversation", outcome)."""
    metrics.inc_counter("chatsync_delivery_attempts_total", {"kind": kind, "outcome": outcome})
    metrics.observe_histogram("chatsync_delivery_duration_seconds", duration, {"kind": kind})


def record_remote_event(outcome: str) -> None:
    """Record a remote change event ("inserted", "applied", "ignored")."""
    metrics.inc_counter("chatsync_remote_events_total", {"outcome": outcome})


def record_sequence_gap(kind: str) -> None:
    """Record a detected sequence gap ("missing" or "out_of_order")."""
    metrics.inc_counter("chatsync_sequence_gaps_total", {"kind": kind})


def set_outbound_gauges(pending: int, failed: int) -> None:
    """Publish the outbound queue depth."""
    metrics.set_gauge("chatsync_outbound_pending", pending)
    metrics.set_gauge("chatsync_outbound_failed", failed)


def record_http_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an emulator HTTP request."""
    labels = {"method": method, "path": path, "status": str(status_code)}
    metrics.inc_counter("chatsync_http_requests_total", labels)
    metrics.observe_histogram("chatsync_http_request_duration_seconds", duration, labels)
