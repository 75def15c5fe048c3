"""
Anonymous Voting Client Monitoring
In-process counters for request timings and contract drift signals
"""

import logging
from collections import defaultdict, deque
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Most recent samples kept per timing metric
HISTOGRAM_WINDOW = 1000


class MetricsCollector:
    """Collects and stores client metrics"""

    def __init__(self):
        self.counters = defaultdict(int)
        self.histograms = defaultdict(lambda: deque(maxlen=HISTOGRAM_WINDOW))

    def increment(self, metric: str, value: int = 1):
        """Increment a counter"""
        self.counters[metric] += value

    def record_timing(self, metric: str, duration_ms: float):
        """Record a timing measurement"""
        self.histograms[metric].append(duration_ms)

    def get_metrics(self) -> Dict[str, Any]:
        """Get all metrics"""
        return {
            "counters": dict(self.counters),
            "histograms": {
                name: {
                    "count": len(values),
                    "min": min(values) if values else 0,
                    "max": max(values) if values else 0,
                    "avg": sum(values) / len(values) if values else 0
                }
                for name, values in self.histograms.items()
            }
        }

    def reset(self):
        self.counters.clear()
        self.histograms.clear()


class MonitoringService:
    """Records client-side protocol health"""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.metrics = MetricsCollector()

    def record_request(self, operation: str, duration_ms: float, outcome: str):
        """Record a remote call timing and its outcome"""
        self.metrics.record_timing(f"request.{operation}", duration_ms)
        self.metrics.increment(f"request.{operation}.{outcome}")

    def record_shape_variance(self, response_type: str, field: str):
        """A field was found at a non-canonical position"""
        self.metrics.increment(f"shape_variance.{response_type}.{field}")

    def record_shape_mismatch(self, response_type: str, field: str):
        """A required field was missing from a success response"""
        self.metrics.increment(f"shape_mismatch.{response_type}.{field}")

    def get_drift_report(self) -> Dict[str, int]:
        """Counters describing backend contract drift"""
        return {
            name: count
            for name, count in self.metrics.counters.items()
            if name.startswith(("shape_variance.", "shape_mismatch."))
        }


# Global monitoring service instance
_monitoring_service: Optional[MonitoringService] = None


def get_monitoring_service() -> MonitoringService:
    """Get global monitoring service instance"""
    global _monitoring_service
    if _monitoring_service is None:
        _monitoring_service = MonitoringService()
    return _monitoring_service
