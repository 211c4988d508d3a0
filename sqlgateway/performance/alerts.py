import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlgateway.exceptions import AlertStateError
from sqlgateway.performance.models import PerformanceMetric, PerformanceThresholds

logger = logging.getLogger(__name__)


class AlertType(Enum):
    CONNECTION_POOL_HIGH_UTILIZATION = "connection_pool_high_utilization"
    SLOW_QUERY_DETECTED = "slow_query_detected"
    HIGH_CPU_USAGE = "high_cpu_usage"
    HIGH_MEMORY_USAGE = "high_memory_usage"
    HIGH_DISK_USAGE = "high_disk_usage"
    CONNECTION_TIMEOUT = "connection_timeout"
    QUERY_TIMEOUT = "query_timeout"
    HIGH_ERROR_RATE = "high_error_rate"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


@dataclass
class PerformanceAlert:
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    measurement: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    alert_id: str = field(default_factory=lambda: uuid4().hex)
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    @property
    def is_acknowledged(self) -> bool:
        return self.status == AlertStatus.ACKNOWLEDGED

    @property
    def is_resolved(self) -> bool:
        return self.status == AlertStatus.RESOLVED

    def acknowledge(self, now: Optional[datetime] = None) -> None:
        if self.status == AlertStatus.RESOLVED:
            raise AlertStateError(self.alert_id, "Cannot acknowledge a resolved alert")
        self.status = AlertStatus.ACKNOWLEDGED
        self.acknowledged_at = now or datetime.now()

    def resolve(self, now: Optional[datetime] = None) -> None:
        self.status = AlertStatus.RESOLVED
        self.resolved_at = now or datetime.now()

    def get_duration(self, now: Optional[datetime] = None) -> float:
        end = self.resolved_at or now or datetime.now()
        return (end - self.created_at).total_seconds() * 1000

    def is_critical(self) -> bool:
        return self.severity == AlertSeverity.CRITICAL

    def should_escalate(self, threshold_minutes: float = 30, now: Optional[datetime] = None) -> bool:
        if self.status != AlertStatus.ACTIVE:
            return False
        minutes = ((now or datetime.now()) - self.created_at).total_seconds() / 60
        return minutes > threshold_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.alert_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "measurement": dict(self.measurement),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "duration_ms": round(self.get_duration(), 1),
        }


class AlertEvaluator:
    def __init__(self, thresholds: Optional[PerformanceThresholds] = None):
        self.thresholds = thresholds or PerformanceThresholds()

    def evaluate(self, metric: PerformanceMetric) -> List[PerformanceAlert]:
        alerts = []
        thresholds = self.thresholds
        pool = metric.connection_pool
        queries = metric.queries
        system = metric.system

        alerts.extend(self._check(
            AlertType.CONNECTION_POOL_HIGH_UTILIZATION, "Connection pool utilization",
            pool.utilization, thresholds.pool_warning, thresholds.pool_critical, "%", inclusive=True,
            extra={"active": pool.active, "total": pool.total},
        ))

        if pool.total > thresholds.max_connections:
            alerts.append(PerformanceAlert(
                alert_type=AlertType.CONNECTION_POOL_HIGH_UTILIZATION,
                severity=AlertSeverity.HIGH,
                message=f"Open connections ({pool.total}) exceed the limit of {thresholds.max_connections}",
                measurement={"value": pool.total, "threshold": thresholds.max_connections},
            ))

        if queries.count:
            alerts.extend(self._check(
                AlertType.SLOW_QUERY_DETECTED, "Average query time",
                queries.average_time, thresholds.slow_query_ms, thresholds.critical_query_ms, " ms",
                extra={"slow_count": queries.slow_count, "max_time": queries.max_time},
            ))
            alerts.extend(self._check(
                AlertType.HIGH_ERROR_RATE, "Query error rate",
                queries.error_rate, thresholds.max_error_rate, thresholds.critical_error_rate, "%",
                extra={"count": queries.count},
            ))

        alerts.extend(self._check(
            AlertType.HIGH_CPU_USAGE, "CPU usage",
            system.cpu_percent, thresholds.high_cpu, thresholds.critical_cpu, "%",
        ))
        alerts.extend(self._check(
            AlertType.HIGH_MEMORY_USAGE, "Memory usage",
            system.memory_percent, thresholds.high_memory, thresholds.critical_memory, "%",
        ))
        alerts.extend(self._check(
            AlertType.HIGH_DISK_USAGE, "Disk usage",
            system.disk_percent, thresholds.high_disk, thresholds.critical_disk, "%",
        ))

        for alert in alerts:
            logger.warning(f"Performance alert [{alert.severity.value}] {alert.alert_type.value}: {alert.message}")
        return alerts

    def _check(self, alert_type: AlertType, label: str, value: float, warning: float, critical: float,
               unit: str, inclusive: bool = False, extra: Optional[Dict[str, Any]] = None) -> List[PerformanceAlert]:
        if inclusive:
            breached_critical, breached_warning = value >= critical, value >= warning
        else:
            breached_critical, breached_warning = value >= critical, value > warning

        if breached_critical:
            severity, threshold = AlertSeverity.CRITICAL, critical
        elif breached_warning:
            severity, threshold = AlertSeverity.HIGH, warning
        else:
            return []

        measurement = {"value": value, "threshold": threshold}
        measurement.update(extra or {})
        return [PerformanceAlert(
            alert_type=alert_type,
            severity=severity,
            message=f"{label} is {value:.1f}{unit} (threshold {threshold:g}{unit})",
            measurement=measurement,
        )]
