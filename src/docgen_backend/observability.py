"""
Telemetry sink for the worker.

Dependency records, gauges and counters are written to the module logger and
accumulated in memory so the stats endpoint can report them. Counters are keyed
by metric name plus their sorted label pairs, e.g. ``docgen_failures_total{reason=UPLOAD_FAILED}``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Metric names
DOCGEN_DURATION_MS = "docgen_duration_ms"
DOCGEN_FAILURES_TOTAL = "docgen_failures_total"
RETRIES_TOTAL = "retries_total"
TEMPLATE_CACHE_HIT = "template_cache_hit"
TEMPLATE_CACHE_MISS = "template_cache_miss"
QUEUE_DEPTH = "queue_depth"
CONVERSION_POOL_ACTIVE = "conversion_pool_active"
CONVERSION_POOL_QUEUED = "conversion_pool_queued"


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)


def _metric_key(name: str, labels: Dict[str, Any]) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}{{{rendered}}}"


class TelemetrySink:
    """
    Collects dependency records, gauges and counters.

    Thread Safety:
        All mutations happen under a single lock; ``snapshot`` returns copies.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._dependencies: Dict[str, Dict[str, float]] = {}

    def track_dependency(
        self,
        dependency_type: str,
        name: str,
        duration_ms: float,
        success: bool,
        correlation_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Record one call to an external dependency (converter run, store call, ...).

        Args:
            dependency_type: Kind of dependency, e.g. ``"conversion"``
            name: Operation name, e.g. ``"soffice:pdf"``
            duration_ms: Wall-clock duration of the call
            success: Whether the call succeeded
            correlation_id: Correlation id of the work item being processed
            error: Error summary when the call failed
        """
        level = logging.DEBUG if success else logging.WARNING
        logger.log(
            level,
            f"dependency type={dependency_type} name={name} duration_ms={duration_ms:.1f} "
            f"success={success} correlation_id={correlation_id}" + (f" error={error}" if error else ""),
        )
        key = f"{dependency_type}:{name}"
        with self._lock:
            record = self._dependencies.setdefault(
                key, {"calls": 0, "failures": 0, "total_duration_ms": 0.0}
            )
            record["calls"] += 1
            record["total_duration_ms"] += duration_ms
            if not success:
                record["failures"] += 1

    def track_gauge(self, name: str, value: float, **labels: Any) -> None:
        key = _metric_key(name, labels)
        with self._lock:
            self._gauges[key] = value
        logger.debug(f"gauge {key}={value}")

    def increment(self, name: str, value: float = 1, **labels: Any) -> None:
        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] += value
        logger.debug(f"counter {key} += {value}")

    def counter(self, name: str, **labels: Any) -> float:
        with self._lock:
            return self._counters.get(_metric_key(name, labels), 0)

    def gauge(self, name: str, **labels: Any) -> Optional[float]:
        with self._lock:
            return self._gauges.get(_metric_key(name, labels))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "dependencies": {key: dict(value) for key, value in self._dependencies.items()},
            }
