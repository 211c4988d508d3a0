import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlgateway.performance.alerts import PerformanceAlert
from sqlgateway.performance.models import HealthStatus, PerformanceMetric, PerformanceThresholds

logger = logging.getLogger(__name__)

REPORT_PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

# relative change between the two halves of the period that counts as a trend
TREND_TOLERANCE = 0.1


@dataclass(frozen=True)
class PerformanceSummary:
    period: str
    sample_count: int = 0
    average_cpu_usage: float = 0.0
    average_memory_usage: float = 0.0
    average_query_time: float = 0.0
    average_error_rate: float = 0.0
    peak_connections: int = 0
    total_queries: int = 0


@dataclass
class PerformanceReport:
    period: str
    generated_at: datetime
    summary: PerformanceSummary
    health: HealthStatus
    trends: Dict[str, str] = field(default_factory=dict)
    alerts: List[PerformanceAlert] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        summary = self.summary
        return {
            "period": self.period,
            "generated_at": self.generated_at.isoformat(),
            "health": self.health.value,
            "summary": {
                "sample_count": summary.sample_count,
                "average_cpu_usage": summary.average_cpu_usage,
                "average_memory_usage": summary.average_memory_usage,
                "average_query_time": summary.average_query_time,
                "average_error_rate": summary.average_error_rate,
                "peak_connections": summary.peak_connections,
                "total_queries": summary.total_queries,
            },
            "trends": dict(self.trends),
            "alerts": {
                "total": len(self.alerts),
                "active": sum(1 for alert in self.alerts if alert.is_active),
                "critical": sum(1 for alert in self.alerts if alert.is_critical() and not alert.is_resolved),
            },
            "recommendations": list(self.recommendations),
        }


class PerformanceReporter:
    def __init__(self, thresholds: Optional[PerformanceThresholds] = None):
        self.thresholds = thresholds or PerformanceThresholds()

    def generate_report(self, metrics: Sequence[PerformanceMetric], alerts: Sequence[PerformanceAlert],
                        period: str = "1h", now: Optional[datetime] = None) -> PerformanceReport:
        if period not in REPORT_PERIODS:
            raise ValueError(f"Unsupported report period '{period}', expected one of {', '.join(REPORT_PERIODS)}")

        now = now or datetime.now()
        since = now - REPORT_PERIODS[period]
        window = [metric for metric in metrics if metric.timestamp >= since]
        window_alerts = [alert for alert in alerts if alert.created_at >= since]

        summary = self.generate_summary(window, period)
        health = HealthStatus.worst(*(metric.evaluate_health() for metric in window[-1:]))

        report = PerformanceReport(
            period=period,
            generated_at=now,
            summary=summary,
            health=health,
            trends=self.analyze_trends(window),
            alerts=window_alerts,
            recommendations=self._recommendations(summary, window_alerts),
        )
        logger.info(f"Generated {period} performance report from {len(window)} metric(s), health {health.value}")
        return report

    def generate_summary(self, metrics: Sequence[PerformanceMetric], period: str = "1h") -> PerformanceSummary:
        if not metrics:
            return PerformanceSummary(period=period)

        return PerformanceSummary(
            period=period,
            sample_count=len(metrics),
            average_cpu_usage=_average(metrics, lambda m: m.system.cpu_percent),
            average_memory_usage=_average(metrics, lambda m: m.system.memory_percent),
            average_query_time=_average(metrics, lambda m: m.queries.average_time),
            average_error_rate=_average(metrics, lambda m: m.queries.error_rate),
            peak_connections=max(metric.connection_pool.total for metric in metrics),
            total_queries=max(metric.queries.count for metric in metrics),
        )

    def analyze_trends(self, metrics: Sequence[PerformanceMetric]) -> Dict[str, str]:
        readers = {
            "connection_pool": lambda m: m.connection_pool.utilization,
            "query_time": lambda m: m.queries.average_time,
            "cpu": lambda m: m.system.cpu_percent,
            "memory": lambda m: m.system.memory_percent,
        }
        return {name: _trend(metrics, reader) for name, reader in readers.items()}

    def get_connection_pool_summary(self, metric: Optional[PerformanceMetric]) -> Dict[str, Any]:
        if metric is None:
            return {
                "total_connections": 0,
                "active_connections": 0,
                "idle_connections": 0,
                "utilization": 0.0,
                "status": HealthStatus.WARNING.value,
            }

        pool = metric.connection_pool
        status = HealthStatus.HEALTHY
        if pool.utilization > 90:
            status = HealthStatus.CRITICAL
        elif pool.utilization > 75:
            status = HealthStatus.WARNING

        return {
            "total_connections": pool.total,
            "active_connections": pool.active,
            "idle_connections": pool.idle,
            "max_connections": pool.max_size,
            "utilization": pool.utilization,
            "status": status.value,
        }

    def _recommendations(self, summary: PerformanceSummary, alerts: Sequence[PerformanceAlert]) -> List[str]:
        recommendations = []
        critical = [alert for alert in alerts if alert.is_critical() and not alert.is_resolved]

        if critical:
            recommendations.append(f"CRITICAL: {len(critical)} critical issue(s) require immediate attention")
        if summary.average_query_time > self.thresholds.slow_query_ms:
            recommendations.append("Consider optimizing slow queries or adding database indexes")
        if summary.average_cpu_usage > self.thresholds.high_cpu:
            recommendations.append("High CPU usage detected. Consider query optimization or scaling resources")
        if summary.average_memory_usage > self.thresholds.high_memory:
            recommendations.append("High memory usage detected. Consider adjusting the connection pool size")
        if summary.average_error_rate > self.thresholds.max_error_rate:
            recommendations.append("High error rate detected. Review database connectivity and query validity")

        if not recommendations:
            recommendations.append("Database performance is within acceptable parameters")
        return recommendations


def _average(metrics: Sequence[PerformanceMetric], reader: Callable[[PerformanceMetric], float]) -> float:
    values = [reader(metric) for metric in metrics]
    return round(sum(values) / len(values), 2) if values else 0.0


def _trend(metrics: Sequence[PerformanceMetric], reader: Callable[[PerformanceMetric], float]) -> str:
    if len(metrics) < 2:
        return "insufficient data"

    middle = len(metrics) // 2
    earlier = _average(metrics[:middle], reader)
    later = _average(metrics[middle:], reader)

    if earlier == later:
        return "stable"
    if earlier == 0:
        return "increasing"
    change = (later - earlier) / earlier
    if change > TREND_TOLERANCE:
        return "increasing"
    if change < -TREND_TOLERANCE:
        return "decreasing"
    return "stable"
