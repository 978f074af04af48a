"""
Metric collection.

Every other component reports through the MetricSink: cache hit rates,
provider latencies, per-stage costs, prefetch outcomes, errors and process
memory.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import psutil

from .clock import Clock

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


def process_memory_ratio(limit_mb: Optional[float] = None) -> float:
    """Resident memory of this process as a fraction of `limit_mb`, or of physical memory."""
    rss = psutil.Process().memory_info().rss
    limit = limit_mb * 1024 * 1024 if limit_mb else psutil.virtual_memory().total
    return rss / limit


@dataclass(frozen=True)
class MetricSample:
    """Immutable timestamped measurement."""
    timestamp: float
    name: str
    value: float
    unit: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class MetricSink:
    """Append-only store of metric samples with a retention horizon.

    Samples are appended in clock order, so the oldest samples are always at
    the left end of the deque and the retention sweep only pops from there.
    """

    def __init__(self, clock: Clock, retention_seconds: float = DEFAULT_RETENTION_SECONDS):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be > 0")
        self.clock = clock
        self.retention_seconds = retention_seconds
        self.started_at = clock.now()
        self._samples: Deque[MetricSample] = deque()

    def record(
        self,
        name: str,
        value: float,
        unit: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MetricSample:
        """Append a sample stamped with the current time."""
        sample = MetricSample(
            timestamp=self.clock.now(),
            name=name,
            value=float(value),
            unit=unit,
            metadata=dict(metadata or {}),
        )
        self._samples.append(sample)
        logger.debug("metric %s=%s%s %s", name, value, unit, metadata or "")
        return sample

    def samples(self, name: Optional[str] = None, window: Optional[float] = None) -> List[MetricSample]:
        """Samples for `name` (or all) recorded within the last `window` seconds."""
        cutoff = None if window is None else self.clock.now() - window
        return [
            s for s in self._samples
            if (name is None or s.name == name) and (cutoff is None or s.timestamp >= cutoff)
        ]

    def latest(self, name: str, window: Optional[float] = None) -> Optional[float]:
        matching = self.samples(name, window)
        return matching[-1].value if matching else None

    def mean(self, name: str, window: float) -> Optional[float]:
        matching = self.samples(name, window)
        if not matching:
            return None
        return sum(s.value for s in matching) / len(matching)

    def sweep(self) -> int:
        """Drop samples older than the retention horizon. Returns the number dropped."""
        cutoff = self.clock.now() - self.retention_seconds
        dropped = 0
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()
            dropped += 1
        if dropped:
            logger.info("Cleaned %d old metric samples", dropped)
        return dropped

    def __len__(self) -> int:
        return len(self._samples)

    # Convenience recorders

    def record_api_latency(self, service: str, latency_ms: float) -> None:
        self.record(f"api_latency_{service}", latency_ms, "ms", {"service": service})
        self.record("api_latency", latency_ms, "ms", {"service": service})

    def record_cache_performance(self, hits: int, misses: int) -> None:
        total = hits + misses
        hit_rate = hits / total if total > 0 else 0.0
        self.record("cache_hits", hits, "count")
        self.record("cache_misses", misses, "count")
        self.record("cache_hit_rate", hit_rate, "percentage")

    def record_generation(self, duration: float, success: bool, cost: float, processing_ms: float) -> None:
        """Record one finished pipeline run and the resulting throughput per minute."""
        self.record("video_generation_time", processing_ms, "ms")
        self.record("video_generation_cost", cost, "usd")
        self.record("video_duration", duration, "seconds")
        self.record("video_generation_success", 1 if success else 0, "boolean")

        throughput = len(self.samples("video_generation_success", 60))
        self.record("throughput", throughput, "videos/min")

    def record_error(self, service: str, error_type: str, message: str) -> None:
        """Record an error and the error rate over the last five minutes."""
        self.record("error_count", 1, "count", {
            "service": service,
            "error_type": error_type,
            "message": message,
        })

        operations = self.samples("video_generation_success", 300)
        errors = self.samples("error_count", 300)
        error_rate = len(errors) / len(operations) if operations else 0.0
        self.record("error_rate", error_rate, "percentage")

    def record_memory_usage(self, ratio: float) -> None:
        self.record("memory_usage", ratio, "percentage")

    def uptime(self) -> float:
        return self.clock.now() - self.started_at
