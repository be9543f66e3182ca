"""
Unit tests for the metrics collector
"""

import json

from copytrader.core.metrics import LatencyTimer, MetricsCollector


def test_counters_with_and_without_labels(metrics):
    metrics.increment_counter("positions_opened")
    metrics.increment_counter("positions_opened", value=2)
    metrics.increment_counter("copy_signals", labels={"outcome": "executed"})
    metrics.increment_counter("copy_signals", labels={"outcome": "no_price"})

    assert metrics.get_counter("positions_opened") == 3
    assert metrics.get_counter("copy_signals", labels={"outcome": "executed"}) == 1
    assert metrics.get_counter("copy_signals") == 0


def test_gauges(metrics):
    metrics.set_gauge("open_positions", 2)
    metrics.set_gauge("open_positions", 1)
    assert metrics.get_gauge("open_positions") == 1
    assert metrics.get_gauge("missing") == 0.0


def test_histogram_percentiles(metrics):
    for value in range(1, 101):
        metrics.record_latency("price_lookup", float(value))

    stats = metrics.get_histogram_stats("price_lookup")
    assert stats.count == 100
    assert stats.min == 1.0
    assert stats.max == 100.0
    assert abs(stats.p50 - 50.5) < 1e-9
    assert metrics.get_counter("price_lookup_count") == 100
    assert metrics.get_histogram_stats("never_recorded") is None


def test_latency_timer_records(metrics):
    with LatencyTimer(metrics, "trade_execution", {"venue": "relay", "side": "buy"}) as timer:
        pass

    assert timer.latency_ms is not None
    assert metrics.get_histogram_stats("trade_execution").count == 1
    assert metrics.get_counter("trade_execution_count", labels={"venue": "relay", "side": "buy"}) == 1


def test_export_is_json_serialisable(metrics):
    metrics.increment_counter("exit_decisions", labels={"reason": "take_profit"})
    metrics.set_gauge("open_positions", 1)
    metrics.record_latency("price_lookup", 12.5)

    exported = metrics.export_metrics()
    json.dumps(exported)

    assert exported["counters"]["exit_decisions{reason=take_profit}"] == 1
    assert exported["gauges"]["open_positions"] == 1
    assert exported["histograms"]["price_lookup"]["count"] == 1


def test_reset(metrics):
    metrics.increment_counter("a")
    metrics.reset()
    assert metrics.export_metrics() == {"counters": {}, "gauges": {}, "histograms": {}}
