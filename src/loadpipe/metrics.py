"""
Pipeline metrics.

Counters and gauges are accumulated per driver in a PipelineMetrics
instance and pushed to injected sinks on flush, so nothing is held in
process-wide state. Sinks:
- PrometheusMetricsSink: prometheus_client Counter/Gauge on its own registry
- LoggingMetricsSink: one log record per metric

Metric names:
- messages_received, messages_parse_failed, messages_acked, ack_failures,
  messages_retained
- batches_flushed{trigger}, batches_committed{status}
- load_jobs{target,status}, rows_loaded{target}, columns_added{target}
- backpressure_delay_seconds{target}, concurrent_jobs{target} (gauges)
- staging_pending_deletions (gauge)
"""

import logging
from collections import defaultdict
from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge

logger = logging.getLogger(__name__)

LabelKey = tuple[tuple[str, str], ...]

# name -> (kind, description, label names)
METRIC_DEFINITIONS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "messages_received": ("counter", "Messages received from the queue", ()),
    "messages_parse_failed": ("counter", "Messages dropped as unparseable", ()),
    "messages_acked": ("counter", "Messages deleted from the queue after a commit", ()),
    "ack_failures": ("counter", "Queue deletes that failed after a commit", ()),
    "messages_retained": ("counter", "Messages left for redelivery after a failed commit", ()),
    "batches_flushed": ("counter", "Batches flushed by the accumulator", ("trigger",)),
    "batches_committed": ("counter", "Batch commit outcomes", ("status",)),
    "load_jobs": ("counter", "Terminal load jobs per target", ("target", "status")),
    "rows_loaded": ("counter", "Rows loaded per target", ("target",)),
    "columns_added": ("counter", "Columns added by schema sync", ("target",)),
    "backpressure_delay_seconds": (
        "gauge",
        "Most recent admission delay per target",
        ("target",),
    ),
    "concurrent_jobs": ("gauge", "Most recent concurrent job count per target", ("target",)),
    "staging_pending_deletions": ("gauge", "Staged batches awaiting deferred deletion", ()),
}


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


class MetricsSink(Protocol):

    def increment(self, name: str, amount: float, labels: dict[str, str]) -> None:
        ...

    def gauge(self, name: str, value: float, labels: dict[str, str]) -> None:
        ...


class PipelineMetrics:
    """
    Per-driver metric accumulator.

    increment() adds to both the pending delta and the cumulative total.
    flush() sends pending deltas and the latest gauge values to every sink
    and clears the deltas. A failing sink is logged and skipped.
    """

    def __init__(self, sinks: list[MetricsSink] | None = None):
        self._sinks: list[MetricsSink] = list(sinks or [])
        self._deltas: dict[tuple[str, LabelKey], float] = defaultdict(float)
        self._totals: dict[tuple[str, LabelKey], float] = defaultdict(float)
        self._gauges: dict[tuple[str, LabelKey], float] = {}

    def add_sink(self, sink: MetricsSink) -> None:
        self._sinks.append(sink)

    def increment(self, name: str, amount: float = 1, **labels: str) -> None:
        if amount == 0:
            return
        key = (name, _label_key(labels))
        self._deltas[key] += amount
        self._totals[key] += amount

    def gauge(self, name: str, value: float | None, **labels: str) -> None:
        if value is None:
            return
        self._gauges[(name, _label_key(labels))] = float(value)

    def total(self, name: str, **labels: str) -> float:
        """Cumulative count for a name, summed over series matching the given labels."""
        wanted = set(_label_key(labels))
        return sum(
            value
            for (metric, key), value in self._totals.items()
            if metric == name and wanted.issubset(key)
        )

    def gauge_value(self, name: str, **labels: str) -> float | None:
        return self._gauges.get((name, _label_key(labels)))

    def totals(self) -> dict[str, float]:
        """Cumulative counts per metric name across all label sets."""
        result: dict[str, float] = defaultdict(float)
        for (name, _), value in self._totals.items():
            result[name] += value
        return dict(result)

    def flush(self) -> int:
        """Push pending deltas and gauges to the sinks. Returns series pushed."""
        deltas = dict(self._deltas)
        self._deltas.clear()
        gauges = dict(self._gauges)

        for sink in self._sinks:
            try:
                for (name, key), amount in deltas.items():
                    sink.increment(name, amount, dict(key))
                for (name, key), value in gauges.items():
                    sink.gauge(name, value, dict(key))
            except Exception as e:
                logger.warning(
                    "Metrics sink failed during flush",
                    extra={"error_type": type(sink).__name__, "error_message": str(e)[:200]},
                )
        return len(deltas) + len(gauges)


class PrometheusMetricsSink:
    """Maps pipeline metrics onto prometheus_client collectors."""

    def __init__(self, registry: CollectorRegistry | None = None, namespace: str = "loadpipe"):
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._collectors: dict[str, Counter | Gauge] = {}

    def _collector(self, name: str, kind: str, labels: dict[str, str]) -> Counter | Gauge:
        collector = self._collectors.get(name)
        if collector is not None:
            return collector

        _, description, labelnames = METRIC_DEFINITIONS.get(
            name, (kind, name.replace("_", " "), tuple(sorted(labels)))
        )
        cls = Counter if kind == "counter" else Gauge
        collector = cls(
            f"{self.namespace}_{name}",
            description,
            labelnames=list(labelnames),
            registry=self.registry,
        )
        self._collectors[name] = collector
        return collector

    def increment(self, name: str, amount: float, labels: dict[str, str]) -> None:
        collector = self._collector(name, "counter", labels)
        (collector.labels(**labels) if labels else collector).inc(amount)

    def gauge(self, name: str, value: float, labels: dict[str, str]) -> None:
        collector = self._collector(name, "gauge", labels)
        (collector.labels(**labels) if labels else collector).set(value)


class LoggingMetricsSink:

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def increment(self, name: str, amount: float, labels: dict[str, str]) -> None:
        logger.log(
            self.level,
            "metric %s +%s",
            name,
            amount,
            extra={"metric": name, "metric_value": amount, "labels": labels},
        )

    def gauge(self, name: str, value: float, labels: dict[str, str]) -> None:
        logger.log(
            self.level,
            "metric %s = %s",
            name,
            value,
            extra={"metric": name, "metric_value": value, "labels": labels},
        )
