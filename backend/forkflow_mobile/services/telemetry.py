"""
Performance telemetry for the mobile interaction-tracking pipeline.
Records API calls, GPS acquisitions and file uploads into bounded buffers,
computes trailing-hour summaries and exports CSV.
"""
import asyncio
import csv
import io
import logging
import math
import re
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterable, List, Optional, Type, TypeVar

from .local_storage import KeyValueStore, PERFORMANCE_METRICS_KEY, load_json, save_json

logger = logging.getLogger(__name__)

METRIC_UNITS = ("ms", "bytes", "count", "percentage")
METRIC_CATEGORIES = ("api", "gps", "upload", "database", "ui")

# Warning thresholds
SLOW_API_MS = 2000
SLOW_GPS_MS = 10000
LOW_GPS_ACCURACY_M = 100
SLOW_UPLOAD_MS = 30000

SUMMARY_WINDOW_SECONDS = 60 * 60

# Samples kept in the persisted snapshot, per buffer
PERSIST_LIMITS = {"metrics": 100, "api_metrics": 100, "gps_metrics": 50, "upload_metrics": 50}


@dataclass
class MetricSample:
    name: str
    value: float
    unit: str
    category: str
    timestamp: float


@dataclass
class ApiSample:
    endpoint: str
    method: str
    duration_ms: int
    success: bool
    error_message: Optional[str]
    timestamp: float


@dataclass
class GpsSample:
    accuracy: float
    acquisition_time_ms: int
    success: bool
    error_type: Optional[str]
    timestamp: float


@dataclass
class UploadSample:
    file_size: int
    upload_time_ms: int
    compression_ratio: Optional[float]
    success: bool
    error_message: Optional[str]
    timestamp: float


S = TypeVar("S")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _success_rate(samples: List) -> int:
    if not samples:
        return 100
    return _round_half_up(sum(1 for s in samples if s.success) / len(samples) * 100)


def _average(values: List[float]) -> int:
    if not values:
        return 0
    return _round_half_up(sum(values) / len(values))


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class PerformanceTelemetryCollector:
    """
    Owns the telemetry buffers. Each buffer is a ring of ``max_samples`` entries
    (oldest evicted first); entries older than ``retention_days`` are purged by
    ``purge_expired``, which the background cleanup loop runs every
    ``cleanup_interval_seconds``.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        max_samples: int = 1000,
        retention_days: int = 7,
        cleanup_interval_seconds: float = 3600.0,
        persist_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_samples = max_samples
        self.retention_seconds = retention_days * 24 * 60 * 60
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock
        self.persist_interval_seconds = persist_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None
        self._persist_task: Optional[asyncio.Task] = None
        self._last_persisted: Optional[float] = None
        self._dirty = False

        self.metrics: Deque[MetricSample] = deque(maxlen=max_samples)
        self.api_metrics: Deque[ApiSample] = deque(maxlen=max_samples)
        self.gps_metrics: Deque[GpsSample] = deque(maxlen=max_samples)
        self.upload_metrics: Deque[UploadSample] = deque(maxlen=max_samples)
        self._load_from_storage()

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def _elapsed_ms(self, start_time: float) -> int:
        return _round_half_up((self.clock() - start_time) * 1000)

    def track_api_call(
        self,
        endpoint: str,
        method: str,
        start_time: float,
        success: bool,
        error_message: Optional[str] = None,
    ) -> ApiSample:
        """Record one API call; ``start_time`` is epoch seconds as returned by ``time.time()``."""
        duration = self._elapsed_ms(start_time)
        sample = ApiSample(
            endpoint=endpoint,
            method=method,
            duration_ms=duration,
            success=success,
            error_message=error_message,
            timestamp=self.clock(),
        )
        self.api_metrics.append(sample)
        name = "api_%s_%s" % (method.lower(), re.sub(r"[^a-zA-Z0-9]", "_", endpoint))
        self._add_metric(name, duration, "ms", "api", sample.timestamp)

        if duration > SLOW_API_MS:
            logger.warning("Slow API call detected: %s %s took %dms", method, endpoint, duration)

        self._persist_soon()
        return sample

    def track_gps_acquisition(
        self,
        start_time: float,
        accuracy: float,
        success: bool,
        error_type: Optional[str] = None,
    ) -> GpsSample:
        acquisition_time = self._elapsed_ms(start_time)
        sample = GpsSample(
            accuracy=accuracy,
            acquisition_time_ms=acquisition_time,
            success=success,
            error_type=error_type,
            timestamp=self.clock(),
        )
        self.gps_metrics.append(sample)
        self._add_metric("gps_acquisition_time", acquisition_time, "ms", "gps", sample.timestamp)
        self._add_metric("gps_accuracy", accuracy, "count", "gps", sample.timestamp)

        if acquisition_time > SLOW_GPS_MS:
            logger.warning("Slow GPS acquisition: %dms", acquisition_time)
        if accuracy > LOW_GPS_ACCURACY_M:
            logger.warning("Low GPS accuracy: +/-%sm", accuracy)

        self._persist_soon()
        return sample

    def track_file_upload(
        self,
        file_size: int,
        start_time: float,
        success: bool,
        compression_ratio: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> UploadSample:
        upload_time = self._elapsed_ms(start_time)
        sample = UploadSample(
            file_size=file_size,
            upload_time_ms=upload_time,
            compression_ratio=compression_ratio,
            success=success,
            error_message=error_message,
            timestamp=self.clock(),
        )
        self.upload_metrics.append(sample)
        self._add_metric("file_upload_time", upload_time, "ms", "upload", sample.timestamp)
        self._add_metric("file_upload_size", file_size, "bytes", "upload", sample.timestamp)
        if compression_ratio:
            self._add_metric("file_compression_ratio", compression_ratio, "percentage", "upload", sample.timestamp)

        if upload_time > SLOW_UPLOAD_MS:
            logger.warning("Slow file upload: %dms for %d bytes", upload_time, file_size)

        self._persist_soon()
        return sample

    def track_custom_metric(self, name: str, value: float, unit: str, category: str) -> MetricSample:
        if unit not in METRIC_UNITS:
            raise ValueError(f"Unknown metric unit: {unit}")
        if category not in METRIC_CATEGORIES:
            raise ValueError(f"Unknown metric category: {category}")
        sample = self._add_metric(name, value, unit, category, self.clock())
        self._persist_soon()
        return sample

    def _add_metric(self, name: str, value: float, unit: str, category: str, timestamp: float) -> MetricSample:
        sample = MetricSample(name=name, value=value, unit=unit, category=category, timestamp=timestamp)
        self.metrics.append(sample)
        return sample

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_performance_summary(self) -> Dict:
        """Summarise the samples recorded during the trailing hour."""
        cutoff = self.clock() - SUMMARY_WINDOW_SECONDS
        api = [m for m in self.api_metrics if m.timestamp > cutoff]
        gps = [m for m in self.gps_metrics if m.timestamp > cutoff]
        uploads = [m for m in self.upload_metrics if m.timestamp > cutoff]

        slow_api = sum(1 for m in api if m.duration_ms > SLOW_API_MS)
        slow_gps = sum(1 for m in gps if m.acquisition_time_ms > SLOW_GPS_MS)
        low_accuracy = sum(1 for m in gps if m.accuracy > LOW_GPS_ACCURACY_M)
        slow_uploads = sum(1 for m in uploads if m.upload_time_ms > SLOW_UPLOAD_MS)

        return {
            "time_range": "Last Hour",
            "api": {
                "total_calls": len(api),
                "success_rate": _success_rate(api),
                "avg_response_time": _average([m.duration_ms for m in api]),
                "slow_calls": slow_api,
            },
            "gps": {
                "total_acquisitions": len(gps),
                "success_rate": _success_rate(gps),
                "avg_acquisition_time": _average([m.acquisition_time_ms for m in gps]),
                "avg_accuracy": _average([m.accuracy for m in gps]),
                "low_accuracy_count": low_accuracy,
            },
            "uploads": {
                "total_uploads": len(uploads),
                "success_rate": _success_rate(uploads),
                "avg_upload_time": _average([m.upload_time_ms for m in uploads]),
                "total_data_uploaded": sum(m.file_size for m in uploads),
            },
            "warnings": {
                "slow_api_calls": slow_api,
                "slow_gps_acquisitions": slow_gps,
                "low_gps_accuracy": low_accuracy,
                "slow_uploads": slow_uploads,
            },
        }

    def get_all_metrics(self) -> Dict[str, List]:
        return {
            "general": list(self.metrics),
            "api": list(self.api_metrics),
            "gps": list(self.gps_metrics),
            "uploads": list(self.upload_metrics),
        }

    def clear_metrics(self) -> None:
        self.metrics.clear()
        self.api_metrics.clear()
        self.gps_metrics.clear()
        self.upload_metrics.clear()
        self.flush()

    def export_metrics_as_csv(self) -> str:
        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n")
        writer.writerow(["timestamp", "category", "name", "value", "unit"])
        for m in self.metrics:
            writer.writerow([_iso(m.timestamp), m.category, m.name, m.value, m.unit])
        return out.getvalue().rstrip("\n")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Drop samples older than the retention horizon. Returns how many were removed."""
        cutoff = self.clock() - self.retention_seconds
        removed = 0
        for attr in ("metrics", "api_metrics", "gps_metrics", "upload_metrics"):
            buf = getattr(self, attr)
            kept = [m for m in buf if m.timestamp > cutoff]
            removed += len(buf) - len(kept)
            setattr(self, attr, deque(kept, maxlen=self.max_samples))
        if removed:
            logger.info("Purged %d expired performance samples", removed)
            self.flush()
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            self.purge_expired()

    async def _persist_loop(self) -> None:
        while True:
            await asyncio.sleep(self.persist_interval_seconds)
            if self._dirty:
                self.flush()

    def start(self) -> None:
        """Start the periodic purge and snapshot writer on the running event loop."""
        loop = asyncio.get_running_loop()
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = loop.create_task(self._cleanup_loop())
        if self.store is not None and (self._persist_task is None or self._persist_task.done()):
            self._persist_task = loop.create_task(self._persist_loop())

    async def stop(self) -> None:
        for task in (self._cleanup_task, self._persist_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        self._persist_task = None
        if self._dirty:
            self.flush()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_soon(self) -> None:
        """Mark the snapshot stale; write it at most once per ``persist_interval_seconds``."""
        self._dirty = True
        if self._last_persisted is None or self.clock() - self._last_persisted >= self.persist_interval_seconds:
            self.flush()

    def flush(self) -> None:
        """Write the capped snapshot of every buffer to the store."""
        self._dirty = False
        if self.store is None:
            return
        snapshot = {
            attr: [asdict(m) for m in list(getattr(self, attr))[-limit:]]
            for attr, limit in PERSIST_LIMITS.items()
        }
        save_json(self.store, PERFORMANCE_METRICS_KEY, snapshot)
        self._last_persisted = self.clock()

    def _load_from_storage(self) -> None:
        data = load_json(self.store, PERFORMANCE_METRICS_KEY)
        if not isinstance(data, dict):
            return
        self.metrics.extend(_restore(MetricSample, data.get("metrics")))
        self.api_metrics.extend(_restore(ApiSample, data.get("api_metrics")))
        self.gps_metrics.extend(_restore(GpsSample, data.get("gps_metrics")))
        self.upload_metrics.extend(_restore(UploadSample, data.get("upload_metrics")))


def _restore(cls: Type[S], rows: Optional[Iterable]) -> List[S]:
    if not isinstance(rows, list):
        return []
    restored = []
    for row in rows:
        try:
            restored.append(cls(**row))
        except (TypeError, ValueError):
            logger.warning("Skipping malformed %s snapshot entry", cls.__name__)
    return restored
