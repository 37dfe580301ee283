"""
Prometheus-style metrics for fleet-remediate.

A :class:`MetricsCollector` is created by the caller and injected into the
queue and the fleet planner; there is no module-level instance. Metrics are
exported in Prometheus text format.
"""

import threading
from typing import Dict, List, Optional

RUNS_ENQUEUED = "fleet_remediate_runs_enqueued_total"
RUN_OUTCOMES = "fleet_remediate_run_outcomes_total"
RUN_DURATION = "fleet_remediate_run_duration_seconds"
RUNS_REPLAYED = "fleet_remediate_runs_replayed_total"
RUNS_RECOVERED = "fleet_remediate_runs_recovered_total"
APPROVAL_DECISIONS = "fleet_remediate_approval_decisions_total"
DRAIN_PASSES = "fleet_remediate_drain_passes_total"
QUEUE_DEPTH = "fleet_remediate_queue_runs"
FLEET_STAGES_EXECUTED = "fleet_remediate_fleet_stages_executed_total"
FLEET_HOSTS_REJECTED = "fleet_remediate_fleet_hosts_rejected_total"


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Collects gauges, counters and simple histograms (count and sum) keyed by
    metric name and label set.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": "succeeded"})
        >>> print(metrics.get_metrics())
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._gauges: Dict[str, Dict[str, float]] = {}
        self._counters: Dict[str, Dict[str, int]] = {}
        self._histograms: Dict[str, Dict[str, List[float]]] = {}

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """
        Set a gauge metric value.

        Args:
            name: Metric name
            value: Metric value
            labels: Label dictionary (e.g., {'state': 'queued'})
        """
        label_key = self._make_label_key(labels or {})
        with self._lock:
            self._gauges.setdefault(name, {})[label_key] = value

    def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        label_key = self._make_label_key(labels or {})
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[label_key] = series.get(label_key, 0) + value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a histogram observation."""
        label_key = self._make_label_key(labels or {})
        with self._lock:
            self._histograms.setdefault(name, {}).setdefault(label_key, []).append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        label_key = self._make_label_key(labels or {})
        with self._lock:
            return self._counters.get(name, {}).get(label_key, 0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        label_key = self._make_label_key(labels or {})
        with self._lock:
            return self._gauges.get(name, {}).get(label_key)

    def get_metrics(self) -> str:
        """
        Get all metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []
        with self._lock:
            for name, labels_dict in self._gauges.items():
                lines.append(f"# TYPE {name} gauge")
                for label_key, value in labels_dict.items():
                    lines.append(f"{name}{{{label_key}}} {value}")

            for name, labels_dict in self._counters.items():
                lines.append(f"# TYPE {name} counter")
                for label_key, value in labels_dict.items():
                    lines.append(f"{name}{{{label_key}}} {value}")

            # Simplified histograms: count and sum only
            for name, labels_dict in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for label_key, values in labels_dict.items():
                    lines.append(f"{name}_count{{{label_key}}} {len(values)}")
                    lines.append(f"{name}_sum{{{label_key}}} {sum(values)}")

        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._gauges.clear()
            self._counters.clear()
            self._histograms.clear()

    def _make_label_key(self, labels: Dict[str, str]) -> str:
        """Convert label dict to string key."""
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
