"""
In-process metrics for the copy-trading worker

Counters and gauges are keyed by (name, labels); latencies keep a bounded window of
samples per operation. The status loop logs ``export_metrics()`` periodically.
"""

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional, Tuple


Series = Tuple[str, Tuple[Tuple[str, str], ...]]


def series_key(name: str, labels: Optional[Dict[str, str]] = None) -> Series:
    return name, tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def series_name(series: Series) -> str:
    """``name`` or ``name{k=v,...}`` for a labeled series"""
    name, labels = series
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def quantile(sorted_samples: List[float], q: float) -> float:
    """Linear-interpolated quantile (0 <= q <= 1) of already sorted samples"""
    if not sorted_samples:
        return 0.0
    position = q * (len(sorted_samples) - 1)
    low = int(position)
    high = min(low + 1, len(sorted_samples) - 1)
    fraction = position - low
    return sorted_samples[low] + (sorted_samples[high] - sorted_samples[low]) * fraction


@dataclass
class HistogramStats:
    """Latency summary for one operation (milliseconds)"""
    operation: str
    count: int
    p50: float
    p95: float
    p99: float
    mean: float
    min: float
    max: float


class MetricsCollector:
    """
    Counters, gauges and latency histograms for one worker

    Built once by the worker and passed to each component that records metrics;
    tests assert against their own instance.
    """

    def __init__(self, max_samples: int = 10000):
        self.max_samples = max_samples
        self._counters: Dict[Series, int] = {}
        self._gauges: Dict[Series, float] = {}
        self._samples: Dict[str, Deque[float]] = {}

    def increment_counter(self, metric_name: str, value: int = 1, labels: Optional[Dict[str, str]] = None) -> None:
        key = series_key(metric_name, labels)
        self._counters[key] = self._counters.get(key, 0) + value

    def set_gauge(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self._gauges[series_key(metric_name, labels)] = value

    def record_latency(self, operation: str, latency_ms: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Add a latency sample and bump ``{operation}_count`` under the same labels"""
        samples = self._samples.get(operation)
        if samples is None:
            samples = self._samples[operation] = deque(maxlen=self.max_samples)
        samples.append(latency_ms)
        self.increment_counter(f"{operation}_count", labels=labels)

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        return self._counters.get(series_key(metric_name, labels), 0)

    def get_gauge(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._gauges.get(series_key(metric_name, labels), 0.0)

    def get_histogram_stats(self, operation: str) -> Optional[HistogramStats]:
        samples = sorted(self._samples.get(operation) or ())
        if not samples:
            return None

        return HistogramStats(
            operation=operation,
            count=len(samples),
            p50=quantile(samples, 0.50),
            p95=quantile(samples, 0.95),
            p99=quantile(samples, 0.99),
            mean=sum(samples) / len(samples),
            min=samples[0],
            max=samples[-1]
        )

    def export_metrics(self) -> Dict:
        """JSON-serialisable snapshot: counters, gauges and per-operation latency stats"""
        histograms = {}
        for operation in self._samples:
            stats = self.get_histogram_stats(operation)
            if stats is not None:
                summary = asdict(stats)
                summary.pop("operation")
                histograms[operation] = summary

        return {
            "counters": {series_name(key): value for key, value in self._counters.items()},
            "gauges": {series_name(key): value for key, value in self._gauges.items()},
            "histograms": histograms,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._samples.clear()


class LatencyTimer:
    """
    Times a block and records it on exit, exceptions included

        with LatencyTimer(metrics, "price_lookup", {"source": "jupiter"}):
            ...
    """

    def __init__(self, metrics: MetricsCollector, operation: str, labels: Optional[Dict[str, str]] = None):
        self.metrics = metrics
        self.operation = operation
        self.labels = labels
        self.latency_ms: Optional[float] = None
        self._started = 0.0

    def __enter__(self) -> "LatencyTimer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.latency_ms = (time.perf_counter() - self._started) * 1000
        self.metrics.record_latency(self.operation, self.latency_ms, self.labels)
        return False
