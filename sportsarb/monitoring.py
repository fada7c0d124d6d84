"""Rolling performance metrics kept in process memory."""

from collections import deque
from typing import Optional

MAX_SAMPLES = 100


class PerformanceMonitor:
    """Keep the last ``max_samples`` values per metric name."""

    def __init__(self, max_samples: int = MAX_SAMPLES):
        self.max_samples = max_samples
        self._metrics: dict[str, deque] = {}

    def record_metric(self, name: str, value: float):
        samples = self._metrics.get(name)
        if samples is None:
            samples = self._metrics[name] = deque(maxlen=self.max_samples)
        samples.append(value)

    def get_metric_stats(self, name: str) -> Optional[dict]:
        samples = self._metrics.get(name)
        if not samples:
            return None
        return {
            "avg": sum(samples) / len(samples),
            "min": min(samples),
            "max": max(samples),
            "count": len(samples),
        }

    def get_all_metrics(self) -> dict:
        return {name: self.get_metric_stats(name) for name in self._metrics}

    def reset(self):
        self._metrics.clear()


# Singleton instance
_monitor: Optional[PerformanceMonitor] = None


def get_performance_monitor() -> PerformanceMonitor:
    """Get or create the singleton PerformanceMonitor instance."""
    global _monitor
    if _monitor is None:
        _monitor = PerformanceMonitor()
    return _monitor
