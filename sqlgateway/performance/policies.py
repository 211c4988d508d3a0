import logging
from enum import Enum
from typing import List, Optional

from sqlgateway.events import (
    EventBus,
    EventType,
    PerformanceAlertTriggeredEvent,
    QueryExecutedEvent,
    SchemaChangedEvent,
    SlowQueryEvent,
)
from sqlgateway.performance.models import ConnectionPoolSnapshot, HealthStatus

logger = logging.getLogger(__name__)


class QuerySeverity(Enum):
    NORMAL = "normal"
    SLOW = "slow"
    CRITICAL = "critical"


class QueryPerformancePolicy:
    def __init__(self, slow_query_ms: float = 1000.0, critical_query_ms: float = 5000.0,
                 large_result_rows: int = 1000):
        self.slow_query_ms = slow_query_ms
        self.critical_query_ms = critical_query_ms
        self.large_result_rows = large_result_rows

    def evaluate(self, event: QueryExecutedEvent) -> bool:
        return event.execution_time > self.slow_query_ms

    def get_severity(self, event: QueryExecutedEvent) -> QuerySeverity:
        if event.execution_time > self.critical_query_ms:
            return QuerySeverity.CRITICAL
        if event.execution_time > self.slow_query_ms:
            return QuerySeverity.SLOW
        return QuerySeverity.NORMAL

    def get_recommendations(self, event: QueryExecutedEvent) -> List[str]:
        if not self.evaluate(event):
            return []

        sql = event.sql.lower()
        recommendations = ["Consider adding appropriate indexes for this query"]
        if "select *" in sql:
            recommendations.append("Avoid SELECT * and list only the columns you need")
        if "where" not in sql and ("update" in sql or "delete" in sql):
            recommendations.append("Add a WHERE clause to limit the rows being modified")
        if "like '%" in sql:
            recommendations.append("Leading wildcards in LIKE clauses prevent index usage")
        if event.row_count > self.large_result_rows:
            recommendations.append("Consider pagination for large result sets")
        return recommendations


class ConnectionPoolPolicy:
    def __init__(self, warning_threshold: float = 70.0, critical_threshold: float = 90.0,
                 min_idle_connections: int = 2):
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.min_idle_connections = min_idle_connections

    def evaluate(self, pool: ConnectionPoolSnapshot) -> bool:
        return pool.utilization > self.warning_threshold or pool.idle < self.min_idle_connections

    def get_health_status(self, pool: ConnectionPoolSnapshot) -> HealthStatus:
        if pool.utilization >= self.critical_threshold:
            return HealthStatus.CRITICAL
        if pool.utilization >= self.warning_threshold:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def get_recommendations(self, pool: ConnectionPoolSnapshot) -> List[str]:
        recommendations = []

        if pool.utilization >= self.critical_threshold:
            recommendations.append("Increase the maximum pool size immediately")
            recommendations.append("Check for connection leaks in application code")
        elif pool.utilization >= self.warning_threshold:
            recommendations.append("Consider increasing the maximum pool size")
            recommendations.append("Monitor connection usage patterns")

        if pool.idle < self.min_idle_connections:
            recommendations.append("Increase the minimum pool size to keep connections available")
        if pool.total and pool.active > pool.total * 0.9:
            recommendations.append("Set a connection request timeout to prevent hanging requests")
        return recommendations


class EventDispatcher:
    def __init__(self, event_bus: EventBus, query_policy: Optional[QueryPerformancePolicy] = None,
                 pool_policy: Optional[ConnectionPoolPolicy] = None):
        self.event_bus = event_bus
        self.query_policy = query_policy or QueryPerformancePolicy()
        self.pool_policy = pool_policy or ConnectionPoolPolicy()
        self._unsubscribers = [
            event_bus.subscribe(EventType.QUERY_EXECUTED, self._on_query_executed),
            event_bus.subscribe(EventType.QUERY_SLOW, self._on_slow_query),
            event_bus.subscribe(EventType.SCHEMA_CHANGED, self._on_schema_changed),
            event_bus.subscribe(EventType.PERFORMANCE_ALERT_TRIGGERED, self._on_alert),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def _on_query_executed(self, event: QueryExecutedEvent) -> None:
        if not self.query_policy.evaluate(event):
            return

        severity = self.query_policy.get_severity(event)
        await self.event_bus.publish(SlowQueryEvent(
            query_id=event.query_id,
            sql=event.sql,
            execution_time=event.execution_time,
            threshold=self.query_policy.slow_query_ms,
            is_critical=severity == QuerySeverity.CRITICAL,
            recommendations=self.query_policy.get_recommendations(event),
        ))

    def _on_slow_query(self, event: SlowQueryEvent) -> None:
        sql = event.sql if len(event.sql) <= 100 else event.sql[:100] + "..."
        logger.warning(f"Slow query {event.query_id} ({event.execution_time:.1f} ms): {sql}")
        for recommendation in event.recommendations:
            logger.info(f"Query recommendation: {recommendation}")

    def _on_schema_changed(self, event: SchemaChangedEvent) -> None:
        logger.info(f"Schema changed: {event.get_summary()}")

    def _on_alert(self, event: PerformanceAlertTriggeredEvent) -> None:
        logger.warning(f"Performance alert: {event.get_summary()}")
        logger.info(f"Performance recommendation: {event.get_recommendation()}")
