from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from sqlgateway.database.models import to_serializable


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def worst(cls, *statuses: "HealthStatus") -> "HealthStatus":
        order = [cls.HEALTHY, cls.WARNING, cls.CRITICAL]
        return max(statuses, key=order.index, default=cls.HEALTHY)


@dataclass(frozen=True)
class PerformanceThresholds:
    slow_query_ms: float = 1000.0
    critical_query_ms: float = 5000.0
    high_cpu: float = 80.0
    critical_cpu: float = 90.0
    high_memory: float = 85.0
    critical_memory: float = 95.0
    high_disk: float = 85.0
    critical_disk: float = 95.0
    pool_warning: float = 70.0
    pool_critical: float = 90.0
    max_connections: int = 100
    max_error_rate: float = 5.0

    @property
    def critical_error_rate(self) -> float:
        return self.max_error_rate * 2


@dataclass(frozen=True)
class ConnectionPoolSnapshot:
    total: int = 0
    active: int = 0
    idle: int = 0
    max_size: int = 0
    utilization: float = 0.0

    def evaluate(self) -> HealthStatus:
        if self.utilization >= 90:
            return HealthStatus.CRITICAL
        if self.utilization >= 70:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY


@dataclass(frozen=True)
class QuerySnapshot:
    count: int = 0
    slow_count: int = 0
    average_time: float = 0.0
    min_time: float = 0.0
    max_time: float = 0.0
    throughput: float = 0.0
    error_rate: float = 0.0

    @property
    def slow_ratio(self) -> float:
        return self.slow_count / self.count if self.count else 0.0

    def evaluate(self) -> HealthStatus:
        if self.average_time > 5000 or self.slow_ratio > 0.1:
            return HealthStatus.CRITICAL
        if self.average_time > 2000 or self.slow_ratio > 0.05:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY


@dataclass(frozen=True)
class SystemSnapshot:
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0

    def evaluate(self) -> HealthStatus:
        peak = max(self.cpu_percent, self.memory_percent, self.disk_percent)
        if peak > 90:
            return HealthStatus.CRITICAL
        if peak > 70:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY


@dataclass(frozen=True)
class PerformanceMetric:
    connection_pool: ConnectionPoolSnapshot = field(default_factory=ConnectionPoolSnapshot)
    queries: QuerySnapshot = field(default_factory=QuerySnapshot)
    system: SystemSnapshot = field(default_factory=SystemSnapshot)
    timestamp: datetime = field(default_factory=datetime.now)
    metric_id: str = field(default_factory=lambda: uuid4().hex)

    def evaluate_health(self) -> HealthStatus:
        return HealthStatus.worst(
            self.connection_pool.evaluate(),
            self.queries.evaluate(),
            self.system.evaluate(),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = to_serializable(self)
        data["health"] = self.evaluate_health().value
        return data
