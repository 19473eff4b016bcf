"""In-process metrics (counters, gauges, histograms) with optional JSON file export."""

from __future__ import annotations

import bisect
import json
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from birbnest.logger import get_logger
from birbnest.telemetry_config import TelemetryConfig

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
BATCH_SIZE_BUCKETS = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0)

Labels = Optional[Sequence[Any]]
Duration = Union[timedelta, float, int]


def _seconds(duration: Duration) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _bound_text(bound: float) -> str:
    return "+Inf" if bound == float("inf") else f"{bound:g}"


class _Metric:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        registry: Optional[MetricsRegistry] = None,
    ) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        if registry is not None:
            registry._add(self)

    def _key(self, labels: Labels) -> tuple[str, ...]:
        values = tuple(str(v) for v in labels) if labels is not None else ()
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(values)}"
            )
        return values

    def _label_text(self, key: tuple[str, ...]) -> str:
        return ",".join(f"{n}={v}" for n, v in zip(self.label_names, key))

    def _samples(self) -> dict[tuple[str, ...], Any]:
        raise NotImplementedError

    def _empty_sample(self) -> Any:
        raise NotImplementedError

    def _snapshot(self) -> Any:
        samples = self._samples()
        if not self.label_names:
            return samples.get((), self._empty_sample())
        return {self._label_text(key): value for key, value in sorted(samples.items())}


class Counter(_Metric):
    """A monotonically increasing value, optionally split by labels."""

    kind = "counter"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._values: dict[tuple[str, ...], float] = {}

    def inc(self, labels: Labels = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self.name}: counter cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _samples(self) -> dict[tuple[str, ...], Any]:
        with self._lock:
            return dict(self._values)

    def _empty_sample(self) -> Any:
        return 0.0


class Gauge(_Metric):
    """A value that can go up and down, optionally split by labels."""

    kind = "gauge"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._values: dict[tuple[str, ...], float] = {}

    def set(self, value: float, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _samples(self) -> dict[tuple[str, ...], Any]:
        with self._lock:
            return dict(self._values)

    def _empty_sample(self) -> Any:
        return 0.0


class _HistogramData:
    __slots__ = ("counts", "total", "sum")

    def __init__(self, size: int) -> None:
        self.counts = [0] * size
        self.total = 0
        self.sum = 0.0


class Histogram(_Metric):
    """Counts observations into upper-bounded buckets, optionally split by labels."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        registry: Optional[MetricsRegistry] = None,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        bounds = [float(b) for b in buckets]
        if not bounds:
            raise ValueError(f"{name}: histogram needs at least one bucket")
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError(f"{name}: buckets must be strictly increasing")
        if bounds[-1] != float("inf"):
            bounds.append(float("inf"))
        self.buckets = tuple(bounds)
        self._data: dict[tuple[str, ...], _HistogramData] = {}
        super().__init__(name, help, label_names, registry)

    def observe(self, value: float, labels: Labels = None) -> None:
        key = self._key(labels)
        value = float(value)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            data = self._data.setdefault(key, _HistogramData(len(self.buckets)))
            data.counts[index] += 1
            data.total += 1
            data.sum += value

    def count(self, labels: Labels = None) -> int:
        key = self._key(labels)
        with self._lock:
            data = self._data.get(key)
            return data.total if data is not None else 0

    def bucket_counts(self, labels: Labels = None) -> dict[float, int]:
        """Cumulative observation counts keyed by bucket upper bound (last is +inf)."""
        key = self._key(labels)
        with self._lock:
            data = self._data.get(key)
            counts = list(data.counts) if data is not None else [0] * len(self.buckets)
        result: dict[float, int] = {}
        running = 0
        for bound, count in zip(self.buckets, counts):
            running += count
            result[bound] = running
        return result

    def _sample_of(self, key: tuple[str, ...], data: Optional[_HistogramData]) -> dict[str, Any]:
        total = data.total if data is not None else 0
        total_sum = data.sum if data is not None else 0.0
        cumulative: dict[str, int] = {}
        running = 0
        for index, bound in enumerate(self.buckets):
            running += data.counts[index] if data is not None else 0
            cumulative[_bound_text(bound)] = running
        return {"count": total, "sum": total_sum, "buckets": cumulative}

    def _samples(self) -> dict[tuple[str, ...], Any]:
        with self._lock:
            return {key: self._sample_of(key, data) for key, data in self._data.items()}

    def _empty_sample(self) -> Any:
        return self._sample_of((), None)


class MetricsRegistry:
    """A named collection of metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, _Metric] = {}

    def _add(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name!r} is already registered")
            self._metrics[metric.name] = metric

    def snapshot(self) -> dict[str, Any]:
        """Return current values as a JSON-serialisable mapping keyed by metric name."""
        with self._lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric._snapshot() for metric in metrics}


class FileMetricsExporter:
    """Writes registry snapshots to a JSON file, on demand or periodically."""

    def __init__(self, file_path: Union[str, Path], registry: Optional[MetricsRegistry] = None) -> None:
        self.file_path = Path(file_path)
        self.registry = registry if registry is not None else default_registry()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def export(self) -> dict[str, Any]:
        """Write the current snapshot with a Unix timestamp; return what was written."""
        with self._lock:
            data = {"timestamp": int(time.time()), **self.registry.snapshot()}
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.file_path, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.write("\n")
        return data

    def start(self, interval: Duration) -> None:
        """Export every ``interval`` in a background thread until ``stop``."""
        seconds = _seconds(interval)
        if seconds <= 0:
            raise ValueError("export interval must be positive")
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(seconds,), name="birbnest-metrics-export", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join()
        self._thread = None

    def _run(self, seconds: float) -> None:
        while not self._stop.wait(seconds):
            try:
                self.export()
            except (OSError, TypeError, ValueError) as exc:
                get_logger().error("Failed to export metrics to file", exc_info=exc)


_registry = MetricsRegistry()

CACHE_HITS = Counter("cache_hits_total", "Total number of cache hits", registry=_registry)
CACHE_MISSES = Counter("cache_misses_total", "Total number of cache misses", registry=_registry)
CACHE_OPERATION_DURATION = Histogram(
    "cache_operation_duration_seconds",
    "Duration of cache operations in seconds",
    ("operation", "status"),
    registry=_registry,
)
CACHE_SIZE = Gauge("cache_size_bytes", "Current size of the cache in bytes", registry=_registry)

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ("method", "endpoint", "status"),
    registry=_registry,
)
HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ("method", "endpoint"),
    registry=_registry,
)
ACTIVE_CONNECTIONS = Gauge("active_connections", "Number of active HTTP connections", registry=_registry)

MESSAGES_PROCESSED_TOTAL = Counter(
    "messages_processed_total",
    "Total number of messages processed",
    ("type", "status"),
    registry=_registry,
)
MESSAGE_PROCESSING_DURATION = Histogram(
    "message_processing_duration_seconds",
    "Duration of message processing in seconds",
    ("type",),
    registry=_registry,
)
QUEUE_DEPTH = Gauge("queue_depth", "Current depth of the queue", ("queue",), registry=_registry)
BATCH_SIZE = Histogram(
    "batch_size",
    "Size of processing batches",
    ("type",),
    registry=_registry,
    buckets=BATCH_SIZE_BUCKETS,
)
DLQ_MESSAGES_TOTAL = Counter(
    "dlq_messages_total", "Total number of messages sent to DLQ", ("reason",), registry=_registry
)

SERVICE_UP = Gauge("service_up", "Whether the service is up (1) or down (0)", registry=_registry)
DATABASE_CONNECTIONS_ACTIVE = Gauge(
    "database_connections_active", "Number of active database connections", registry=_registry
)
REDIS_CONNECTIONS_ACTIVE = Gauge(
    "redis_connections_active", "Number of active Redis connections", registry=_registry
)

_init_lock = threading.Lock()
_initialized = False
_file_exporter: Optional[FileMetricsExporter] = None


def default_registry() -> MetricsRegistry:
    """Return the registry holding the service's standard metrics."""
    return _registry


def init_metrics(config: TelemetryConfig) -> MetricsRegistry:
    """Mark the service up and start file export if configured; only the first call acts."""
    global _initialized, _file_exporter
    with _init_lock:
        if not _initialized:
            if config.export_to_file and config.metrics_file_path:
                exporter = FileMetricsExporter(config.metrics_file_path, _registry)
                exporter.start(config.metrics_interval)
                _file_exporter = exporter
            SERVICE_UP.set(1)
            _initialized = True
    return _registry


def record_cache_hit() -> None:
    CACHE_HITS.inc()


def record_cache_miss() -> None:
    CACHE_MISSES.inc()


def record_cache_operation(operation: str, status: str, duration: Duration) -> None:
    CACHE_OPERATION_DURATION.observe(_seconds(duration), (operation, status))


def record_http_request(method: str, endpoint: str, status: str, duration: Duration) -> None:
    HTTP_REQUESTS_TOTAL.inc((method, endpoint, status))
    HTTP_REQUEST_DURATION.observe(_seconds(duration), (method, endpoint))


def record_message_processed(msg_type: str, status: str, duration: Duration) -> None:
    MESSAGES_PROCESSED_TOTAL.inc((msg_type, status))
    MESSAGE_PROCESSING_DURATION.observe(_seconds(duration), (msg_type,))


def record_batch_size(batch_type: str, size: int) -> None:
    BATCH_SIZE.observe(float(size), (batch_type,))


def record_dlq_message(reason: str) -> None:
    DLQ_MESSAGES_TOTAL.inc((reason,))


def update_queue_depth(queue: str, depth: int) -> None:
    QUEUE_DEPTH.set(float(depth), (queue,))


def update_cache_size(size: int) -> None:
    CACHE_SIZE.set(float(size))


def update_active_connections(count: int) -> None:
    ACTIVE_CONNECTIONS.set(float(count))


def update_database_connections(count: int) -> None:
    DATABASE_CONNECTIONS_ACTIVE.set(float(count))


def update_redis_connections(count: int) -> None:
    REDIS_CONNECTIONS_ACTIVE.set(float(count))