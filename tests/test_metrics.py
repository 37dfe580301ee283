"""
Tests for the metrics collector.
"""
import threading

from fleet_remediate.metrics import QUEUE_DEPTH, RUN_DURATION, RUN_OUTCOMES, MetricsCollector


def test_counters_by_label() -> None:
    """Counters are tracked per label set."""
    metrics = MetricsCollector()
    metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": "succeeded"})
    metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": "succeeded"})
    metrics.increment_counter(RUN_OUTCOMES, value=3, labels={"outcome": "dlq"})

    assert metrics.get_counter(RUN_OUTCOMES, {"outcome": "succeeded"}) == 2
    assert metrics.get_counter(RUN_OUTCOMES, {"outcome": "dlq"}) == 3
    assert metrics.get_counter(RUN_OUTCOMES) == 0
    assert metrics.get_counter("missing") == 0


def test_gauges_overwrite() -> None:
    metrics = MetricsCollector()
    metrics.set_gauge(QUEUE_DEPTH, 4, {"state": "queued"})
    metrics.set_gauge(QUEUE_DEPTH, 1, {"state": "queued"})
    assert metrics.get_gauge(QUEUE_DEPTH, {"state": "queued"}) == 1
    assert metrics.get_gauge(QUEUE_DEPTH, {"state": "running"}) is None


def test_prometheus_text() -> None:
    """Export renders type lines, sorted labels and histogram count/sum."""
    metrics = MetricsCollector()
    metrics.set_gauge(QUEUE_DEPTH, 2, {"state": "dlq"})
    metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": "retry", "action": "restart-sshd"})
    metrics.record_histogram(RUN_DURATION, 1.5)
    metrics.record_histogram(RUN_DURATION, 0.5)

    text = metrics.get_metrics()

    assert f"# TYPE {QUEUE_DEPTH} gauge" in text
    assert f'{QUEUE_DEPTH}{{state="dlq"}} 2' in text
    assert f'{RUN_OUTCOMES}{{action="restart-sshd",outcome="retry"}} 1' in text
    assert f"{RUN_DURATION}_count{{}} 2" in text
    assert f"{RUN_DURATION}_sum{{}} 2.0" in text


def test_reset() -> None:
    metrics = MetricsCollector()
    metrics.increment_counter(RUN_OUTCOMES)
    metrics.reset()
    assert metrics.get_metrics() == ""


def test_concurrent_increments() -> None:
    """Increments from several threads are not lost."""
    metrics = MetricsCollector()

    def worker() -> None:
        for _ in range(500):
            metrics.increment_counter(RUN_OUTCOMES)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert metrics.get_counter(RUN_OUTCOMES) == 2000
