"""
Connectors - Request Metrics.

============================================================
PURPOSE
============================================================
In-process counters for each provider connector.

METRICS TRACKED:
- Latency per request path
- Successful / failed wire requests
- Provider throttling (HTTP 429/418)
- Transport failures (network errors, timeouts)
- Orders submitted / rejected / canceled

============================================================
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Counted events."""

    REQUEST_SUCCESS = "request_success"
    REQUEST_FAILURE = "request_failure"
    THROTTLED = "throttled"
    TRANSPORT_ERROR = "transport_error"
    ORDER_SUBMITTED = "order_submitted"
    ORDER_REJECTED = "order_rejected"
    ORDER_CANCELED = "order_canceled"


@dataclass
class LatencyStats:
    """Running latency aggregate."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, latency_ms: float) -> None:
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = latency_ms if self.min_ms is None else min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": self.min_ms or 0.0,
            "max_ms": self.max_ms,
        }


class ConnectorMetrics:
    """Metrics for one provider connector."""

    def __init__(self, exchange: str):
        self._exchange = exchange
        self._started = datetime.now(timezone.utc)
        self._latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._counters: Dict[MetricType, int] = {mt: 0 for mt in MetricType}
        self._http_errors: Dict[int, int] = defaultdict(int)

    # --------------------------------------------------------
    # RECORDING
    # --------------------------------------------------------

    def record_request(
        self,
        path: str,
        latency_ms: float,
        success: bool,
        http_status: Optional[int] = None,
    ) -> None:
        """
        Record one wire request.

        Args:
            path: Request path without query string
            latency_ms: Round-trip time
            success: True for a 2xx/3xx response
            http_status: Response status, None for transport failures
        """
        self._latency[path].record(latency_ms)

        if success:
            self._counters[MetricType.REQUEST_SUCCESS] += 1
            return

        self._counters[MetricType.REQUEST_FAILURE] += 1
        if http_status is None:
            self._counters[MetricType.TRANSPORT_ERROR] += 1
        else:
            self._http_errors[http_status] += 1
            if http_status in (418, 429):
                self._counters[MetricType.THROTTLED] += 1

    def record_order_submitted(self) -> None:
        self._counters[MetricType.ORDER_SUBMITTED] += 1

    def record_order_rejected(self) -> None:
        self._counters[MetricType.ORDER_REJECTED] += 1

    def record_order_canceled(self) -> None:
        self._counters[MetricType.ORDER_CANCELED] += 1

    # --------------------------------------------------------
    # REPORTING
    # --------------------------------------------------------

    def count(self, metric: MetricType) -> int:
        return self._counters[metric]

    def get_summary(self) -> Dict[str, Any]:
        """All counters as a nested dict."""
        success = self._counters[MetricType.REQUEST_SUCCESS]
        failure = self._counters[MetricType.REQUEST_FAILURE]
        total = success + failure

        overall = LatencyStats()
        for stats in self._latency.values():
            overall.count += stats.count
            overall.total_ms += stats.total_ms
            overall.max_ms = max(overall.max_ms, stats.max_ms)
            if stats.min_ms is not None:
                overall.min_ms = (
                    stats.min_ms if overall.min_ms is None else min(overall.min_ms, stats.min_ms)
                )

        return {
            "exchange": self._exchange,
            "uptime_seconds": (datetime.now(timezone.utc) - self._started).total_seconds(),
            "requests": {
                "total": total,
                "success": success,
                "failure": failure,
                "success_rate": success / total if total else 1.0,
            },
            "latency": overall.to_dict(),
            "errors": {
                "throttled": self._counters[MetricType.THROTTLED],
                "transport": self._counters[MetricType.TRANSPORT_ERROR],
                "by_http_status": dict(self._http_errors),
            },
            "orders": {
                "submitted": self._counters[MetricType.ORDER_SUBMITTED],
                "rejected": self._counters[MetricType.ORDER_REJECTED],
                "canceled": self._counters[MetricType.ORDER_CANCELED],
            },
        }

    def get_latency_by_path(self) -> Dict[str, Dict[str, float]]:
        return {path: stats.to_dict() for path, stats in self._latency.items()}

    def reset(self) -> None:
        self._started = datetime.now(timezone.utc)
        self._latency.clear()
        self._counters = {mt: 0 for mt in MetricType}
        self._http_errors.clear()


# ============================================================
# REGISTRY
# ============================================================

class MetricsRegistry:
    """Collects the metrics of every live connector."""

    def __init__(self):
        self._metrics: Dict[str, ConnectorMetrics] = {}

    def register(self, name: str, metrics: ConnectorMetrics) -> None:
        self._metrics[name] = metrics

    def unregister(self, name: str) -> None:
        self._metrics.pop(name, None)

    def get_all_summaries(self) -> Dict[str, Dict[str, Any]]:
        return {name: m.get_summary() for name, m in self._metrics.items()}


_global_registry = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Get the process-wide metrics registry."""
    return _global_registry


__all__ = [
    "MetricType",
    "LatencyStats",
    "ConnectorMetrics",
    "MetricsRegistry",
    "get_metrics_registry",
]
