"""Operation metrics for the lending ledger.

Tracks per-operation outcomes, attempts used and latency so operators
can watch the contention rate (attempts_used > 1) and how often each
resource runs out of units. Exposed in Prometheus text format.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock

LATENCY_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]

Labels = dict[str, str]


def _label_key(labels: Labels | None) -> str:
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


@dataclass
class Histogram:
    """Cumulative-bucket histogram."""

    buckets: list[float] = field(default_factory=lambda: list(LATENCY_BUCKETS))
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bound in self.buckets:
            if value <= bound:
                self.counts[bound] += 1

    def render(self, name: str, label_key: str = "") -> list[str]:
        extra = f",{label_key}" if label_key else ""
        suffix = f"{{{label_key}}}" if label_key else ""
        lines = [
            f'{name}_bucket{{le="{bound}"{extra}}} {self.counts[bound]}'
            for bound in self.buckets
        ]
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        lines.append(f"{name}_sum{suffix} {self.sum}")
        lines.append(f"{name}_count{suffix} {self.count}")
        return lines


class MetricsRegistry:
    """Thread-safe in-process registry of counters and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)

    def inc_counter(self, name: str, labels: Labels | None = None, value: int = 1) -> None:
        key = _label_key(labels)
        with self._lock:
            self._counters[name][key] += value

    def observe_histogram(self, name: str, value: float, labels: Labels | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            histogram = self._histograms[name].get(key)
            if histogram is None:
                histogram = self._histograms[name][key] = Histogram()
            histogram.observe(value)

    def counter_value(self, name: str, labels: Labels | None = None) -> int:
        """Current value of one counter series, 0 if never incremented."""
        key = _label_key(labels)
        with self._lock:
            series = self._counters.get(name)
            return series.get(key, 0) if series else 0

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def to_prometheus(self) -> str:
        """Render all series in Prometheus text exposition format."""
        lines: list[str] = []
        with self._lock:
            for name, series in self._counters.items():
                lines.append(f"# TYPE {name} counter")
                for key, value in series.items():
                    lines.append(f"{name}{{{key}}} {value}" if key else f"{name} {value}")
                lines.append("")
            for name, series in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for key, histogram in series.items():
                    lines.extend(histogram.render(name, key))
                lines.append("")
        return "\n".join(lines)


# Global metrics registry
metrics = MetricsRegistry()


def record_operation(
    operation: str,
    outcome: str,
    attempts: int,
    duration: float,
    resource_id: int | None = None,
    registry: MetricsRegistry | None = None,
) -> None:
    """Record one finished acquire/release call."""
    registry = registry or metrics
    registry.inc_counter(
        "lendledger_operations_total", {"operation": operation, "outcome": outcome}
    )
    registry.inc_counter(
        "lendledger_operation_attempts_total", {"operation": operation}, value=attempts
    )
    if attempts > 1:
        registry.inc_counter("lendledger_contended_operations_total", {"operation": operation})
    if outcome == "resource_exhausted" and resource_id is not None:
        registry.inc_counter("lendledger_exhausted_total", {"resource_id": str(resource_id)})
    registry.observe_histogram(
        "lendledger_operation_duration_seconds", duration, {"operation": operation}
    )
