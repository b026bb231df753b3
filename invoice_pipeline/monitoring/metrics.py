import logging
import threading
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

HISTOGRAM_SIZE = 1000


def _key(name: str, tags: Optional[Dict[str, str]] = None) -> str:
    if not tags:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(tags.items())) + "}"


def _percentile(ordered, fraction: float) -> float:
    index = min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))
    return ordered[index]


class ProcessingMetrics:
    """
    In-process counters and bounded histograms for the pipeline.
    """

    def __init__(self, histogram_size: int = HISTOGRAM_SIZE):
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._histograms: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=histogram_size))

    def record_processing_success(self, processing_time_ms: float):
        self.increment_counter("invoice.processing.success")
        self.record_histogram("invoice.processing.time", processing_time_ms)
        logger.debug(f"Recorded processing success ({processing_time_ms:.1f} ms)")

    def record_processing_failure(self, processing_time_ms: float):
        self.increment_counter("invoice.processing.failure")
        self.record_histogram("invoice.processing.time", processing_time_ms)
        logger.debug(f"Recorded processing failure ({processing_time_ms:.1f} ms)")

    def record_duplicate_detection(self, detection_method: str):
        self.increment_counter("invoice.duplicate.detected", tags={"method": detection_method})

    def record_validation_failure(self, validation_type: str):
        self.increment_counter("invoice.validation.failure", tags={"type": validation_type})

    def increment_counter(self, name: str, value: float = 1, tags: Optional[Dict[str, str]] = None):
        with self._lock:
            self._counters[_key(name, tags)] += value

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(_key(name, tags), 0)

    def record_histogram(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        with self._lock:
            self._histograms[_key(name, tags)].append(value)

    def get_histogram_stats(self, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[Dict[str, float]]:
        with self._lock:
            values = list(self._histograms.get(_key(name, tags), ()))
        if not values:
            return None

        ordered = sorted(values)
        total = sum(ordered)
        return {
            "count": len(ordered),
            "sum": total,
            "avg": total / len(ordered),
            "min": ordered[0],
            "max": ordered[-1],
            "p50": _percentile(ordered, 0.50),
            "p95": _percentile(ordered, 0.95),
            "p99": _percentile(ordered, 0.99),
        }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            names = list(self._histograms.keys())
        return {
            "counters": counters,
            "histograms": {name: self.get_histogram_stats(name) for name in names},
        }
