"""Metrics service for tracking crawl unit throughput and latency.

The orchestrator records every processed unit here. The moving per-stage
latency drives the ``eta`` reported by the status endpoint; the counters are
exposed by ``GET /metrics``.
"""

import threading
from typing import Dict, Optional

# Seconds per unit assumed before any unit of the stage has completed
DEFAULT_STAGE_LATENCY = {1: 2.0, 2: 3.0}

# Weight of the newest sample in the moving average
SMOOTHING = 0.2


class CrawlMetrics:
    """Thread-safe per-stage unit counters and moving latency.

    Args:
        seeds: Initial latency per stage in seconds.
        smoothing: Weight of each new sample in the exponential average.
    """

    def __init__(
        self,
        seeds: Optional[Dict[int, float]] = None,
        smoothing: float = SMOOTHING,
    ):
        self._lock = threading.Lock()
        self._seeds = dict(DEFAULT_STAGE_LATENCY if seeds is None else seeds)
        self._smoothing = smoothing
        self.reset()

    def record_unit(self, stage: int, latency_s: float, failed: bool = False) -> None:
        """Record a processed unit.

        Failed units count towards the failure counter but not the latency,
        which should reflect how long useful work takes.

        Args:
            stage: Crawl stage the unit belonged to (1 or 2).
            latency_s: Wall time spent on the unit in seconds.
            failed: Whether the unit ended in a fetch error.
        """
        with self._lock:
            if failed:
                self._failures[stage] = self._failures.get(stage, 0) + 1
                return

            self._units[stage] = self._units.get(stage, 0) + 1
            current = self._latency.get(stage, self._seeds.get(stage, 0.0))
            self._latency[stage] = (
                self._smoothing * latency_s + (1 - self._smoothing) * current
            )
            if latency_s > self._max_latency.get(stage, 0.0):
                self._max_latency[stage] = latency_s

    def record_rate_limit(self) -> None:
        with self._lock:
            self._rate_limited += 1

    def moving_latency(self, stage: int) -> float:
        with self._lock:
            return self._latency.get(stage, self._seeds.get(stage, 0.0))

    def eta(self, stage: int, count_left: int) -> int:
        """Estimated seconds to finish ``count_left`` units of ``stage``."""
        return int(round(self.moving_latency(stage) * count_left))

    def get_metrics(self) -> Dict:
        """Get current metrics.

        Returns:
            Dictionary with, per stage, the units processed, failed units and
            the moving and maximum latency in milliseconds, plus the number of
            rate-limit responses seen.
        """
        with self._lock:
            stages = {}
            for stage in sorted(set(self._seeds) | set(self._units) | set(self._failures)):
                latency = self._latency.get(stage, self._seeds.get(stage, 0.0))
                stages[str(stage)] = {
                    "units_processed": self._units.get(stage, 0),
                    "units_failed": self._failures.get(stage, 0),
                    "moving_latency_ms": round(latency * 1000, 2),
                    "max_latency_ms": round(self._max_latency.get(stage, 0.0) * 1000, 2),
                }
            return {"stages": stages, "rate_limited": self._rate_limited}

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._units: Dict[int, int] = {}
            self._failures: Dict[int, int] = {}
            self._latency: Dict[int, float] = {}
            self._max_latency: Dict[int, float] = {}
            self._rate_limited = 0
