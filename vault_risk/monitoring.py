"""
In-process metrics for the event pipeline, external reads and metric cycles
"""
import threading
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class MetricPoint:
    """Single metric data point"""
    name: str
    value: float
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    unit: str = "count"


class MetricsCollector:
    """Collects and stores application metrics"""

    def __init__(self, max_points_per_metric: int = 1000):
        self.max_points = max_points_per_metric
        self.metrics: Dict[str, Deque[MetricPoint]] = defaultdict(
            lambda: deque(maxlen=max_points_per_metric)
        )
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str, tags: Optional[Dict[str, str]]) -> str:
        if not tags:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}[{rendered}]"

    def increment(self, name: str, value: float = 1.0, tags: Dict[str, str] = None):
        """Increment a counter metric"""
        key = self._key(name, tags)
        with self._lock:
            self.counters[key] += value
            self._record_point(name, self.counters[key], tags or {}, "count")

    def set_gauge(self, name: str, value: float, tags: Dict[str, str] = None):
        """Set a gauge metric"""
        with self._lock:
            self.gauges[self._key(name, tags)] = value
            self._record_point(name, value, tags or {}, "gauge")

    def record_histogram(self, name: str, value: float, tags: Dict[str, str] = None):
        """Record a histogram value"""
        key = self._key(name, tags)
        with self._lock:
            values = self.histograms[key]
            values.append(value)
            if len(values) > self.max_points:
                del values[:-self.max_points]
            self._record_point(name, value, tags or {}, "histogram")

    def _record_point(self, name: str, value: float, tags: Dict[str, str], unit: str):
        self.metrics[name].append(MetricPoint(
            name=name,
            value=value,
            timestamp=datetime.now(timezone.utc),
            tags=tags,
            unit=unit,
        ))

    def get_counter(self, name: str, tags: Dict[str, str] = None) -> float:
        with self._lock:
            return self.counters.get(self._key(name, tags), 0.0)

    def get_gauge(self, name: str, tags: Dict[str, str] = None) -> Optional[float]:
        with self._lock:
            return self.gauges.get(self._key(name, tags))

    def get_metric_summary(self, name: str, hours: int = 24) -> Dict[str, Any]:
        """Get summary statistics for a metric"""
        cutoff_time = datetime.now(timezone.utc) - timedelta(hours=hours)
        with self._lock:
            values = [p.value for p in self.metrics.get(name, ()) if p.timestamp > cutoff_time]

        if not values:
            return {"name": name, "count": 0}

        return {
            "name": name,
            "count": len(values),
            "min": min(values),
            "max": max(values),
            "avg": sum(values) / len(values),
            "latest": values[-1],
            "time_window_hours": hours,
        }

    def get_all_current_metrics(self) -> Dict[str, Any]:
        """Get current values for all metrics"""
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histogram_counts": {name: len(values) for name, values in self.histograms.items()},
            }

    @asynccontextmanager
    async def track_operation(self, operation: str, **tags: str):
        """Time an operation into ``<operation>.duration_ms`` and count failures."""
        start_time = time.perf_counter()
        try:
            yield
        except Exception:
            self.increment(f"{operation}.errors", tags=tags or None)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.record_histogram(f"{operation}.duration_ms", duration_ms, tags=tags or None)
