"""
In-process metrics for analysis jobs: outcomes, cache behaviour, fallbacks
and per-stage timings.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List

# Per-stage sample cap; oldest samples are dropped first
MAX_TIMING_SAMPLES = 200


@dataclass
class MetricsCollector:
    """Thread-safe metrics collector for analysis jobs."""

    # Counters
    jobs_submitted: int = 0
    jobs_deduplicated: int = 0
    jobs_completed: int = 0
    jobs_degraded: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    # Fallback tracking
    fallback_counts: Dict[str, int] = field(default_factory=dict)
    failure_codes: Dict[str, int] = field(default_factory=dict)

    # Timing
    stage_timings: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    # Thread safety
    _lock: Lock = field(default_factory=Lock)

    def record_submission(self, deduplicated: bool = False):
        with self._lock:
            if deduplicated:
                self.jobs_deduplicated += 1
            else:
                self.jobs_submitted += 1

    def record_cache_lookup(self, hit: bool):
        with self._lock:
            if hit:
                self.cache_hits += 1
            else:
                self.cache_misses += 1

    def record_outcome(self, outcome: str, code: str = ""):
        """Record a terminal outcome: completed, degraded, failed or cancelled."""
        with self._lock:
            if outcome == "completed":
                self.jobs_completed += 1
            elif outcome == "degraded":
                self.jobs_degraded += 1
            elif outcome == "cancelled":
                self.jobs_cancelled += 1
            else:
                self.jobs_failed += 1
                if code:
                    self.failure_codes[code] = self.failure_codes.get(code, 0) + 1

    def record_fallback(self, reason_code: str):
        with self._lock:
            self.fallback_counts[reason_code] = self.fallback_counts.get(reason_code, 0) + 1

    def record_stage_timing(self, stage: str, duration: float):
        with self._lock:
            samples = self.stage_timings[stage]
            samples.append(duration)
            if len(samples) > MAX_TIMING_SAMPLES:
                del samples[0]

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            lookups = self.cache_hits + self.cache_misses
            return {
                "jobs": {
                    "submitted": self.jobs_submitted,
                    "deduplicated": self.jobs_deduplicated,
                    "completed": self.jobs_completed,
                    "degraded": self.jobs_degraded,
                    "failed": self.jobs_failed,
                    "cancelled": self.jobs_cancelled,
                    "failure_codes": dict(self.failure_codes),
                },
                "cache": {
                    "hits": self.cache_hits,
                    "misses": self.cache_misses,
                    "hit_rate": self.cache_hits / max(lookups, 1),
                },
                "fallbacks": dict(self.fallback_counts),
                "timing": {
                    stage: {
                        "count": len(samples),
                        "avg_seconds": sum(samples) / max(len(samples), 1),
                        "max_seconds": max(samples, default=0.0),
                    }
                    for stage, samples in self.stage_timings.items()
                },
            }

    def reset(self):
        with self._lock:
            self.jobs_submitted = self.jobs_deduplicated = 0
            self.jobs_completed = self.jobs_degraded = self.jobs_failed = self.jobs_cancelled = 0
            self.cache_hits = self.cache_misses = 0
            self.fallback_counts.clear()
            self.failure_codes.clear()
            self.stage_timings.clear()


# Global metrics collector instance
_metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return _metrics_collector
