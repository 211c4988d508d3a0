import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, List, Optional

from sqlgateway.events import (
    EventBus,
    EventType,
    MonitoringEvent,
    PerformanceAlertTriggeredEvent,
    QueryFailedEvent,
    SlowQueryEvent,
)
from sqlgateway.exceptions import AlertStateError
from sqlgateway.performance.alerts import AlertEvaluator, AlertSeverity, AlertType, PerformanceAlert
from sqlgateway.performance.metrics_collector import MetricsCollector
from sqlgateway.performance.models import PerformanceMetric

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 5000
DEFAULT_MAX_METRICS_HISTORY = 1000
DEFAULT_MAX_ALERTS = 1000


@dataclass(frozen=True)
class MonitoringStatus:
    success: bool
    message: str
    interval_ms: Optional[int] = None

    def to_dict(self):
        return {"success": self.success, "message": self.message, "interval_ms": self.interval_ms}


class PerformanceMonitor:
    def __init__(self, collector: MetricsCollector, evaluator: Optional[AlertEvaluator] = None,
                 event_bus: Optional[EventBus] = None,
                 interval_ms: int = DEFAULT_INTERVAL_MS,
                 max_metrics_history: int = DEFAULT_MAX_METRICS_HISTORY,
                 max_alerts: int = DEFAULT_MAX_ALERTS,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.collector = collector
        self.evaluator = evaluator or AlertEvaluator(collector.thresholds)
        self.event_bus = event_bus
        self.interval_ms = interval_ms
        self.max_metrics_history = max_metrics_history
        self.max_alerts = max_alerts
        self._sleep = sleep
        self._metrics: Deque[PerformanceMetric] = deque(maxlen=max_metrics_history)
        self._alerts: "OrderedDict[str, PerformanceAlert]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None
        self._ticks = 0

        if event_bus is not None:
            event_bus.subscribe(EventType.QUERY_SLOW, self._on_slow_query)
            event_bus.subscribe(EventType.QUERY_FAILED, self._on_query_failed)

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._ticks

    async def start_monitoring(self, interval_ms: Optional[int] = None) -> MonitoringStatus:
        if self.is_monitoring:
            return MonitoringStatus(False, "Performance monitoring is already running", self.interval_ms)

        interval = self.interval_ms if interval_ms is None else int(interval_ms)
        if interval <= 0:
            return MonitoringStatus(False, f"Invalid monitoring interval: {interval_ms}", self.interval_ms)

        self.interval_ms = interval
        self._task = asyncio.create_task(self._run())
        logger.info(f"Performance monitoring started (interval {interval} ms)")
        await self._publish(MonitoringEvent(running=True, interval_ms=interval))
        return MonitoringStatus(True, f"Performance monitoring started with a {interval} ms interval", interval)

    async def stop_monitoring(self) -> MonitoringStatus:
        if not self.is_monitoring:
            self._task = None
            return MonitoringStatus(False, "Performance monitoring is not running", self.interval_ms)

        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        logger.info("Performance monitoring stopped")
        await self._publish(MonitoringEvent(running=False, interval_ms=self.interval_ms))
        return MonitoringStatus(True, "Performance monitoring stopped", self.interval_ms)

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_ms / 1000)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Performance monitoring tick failed: {e}")

    async def tick(self) -> PerformanceMetric:
        metric = self.collector.collect()
        self._metrics.append(metric)
        self._ticks += 1

        for alert in self.evaluator.evaluate(metric):
            await self._raise_alert(alert)
        return metric

    async def _raise_alert(self, alert: PerformanceAlert) -> None:
        self._alerts[alert.alert_id] = alert
        while len(self._alerts) > self.max_alerts:
            self._alerts.popitem(last=False)

        await self._publish(PerformanceAlertTriggeredEvent(
            alert_id=alert.alert_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            message=alert.message,
            measurement=dict(alert.measurement),
        ))

    async def _on_slow_query(self, event: SlowQueryEvent) -> None:
        severity = AlertSeverity.CRITICAL if event.is_critical else AlertSeverity.HIGH
        await self._raise_alert(PerformanceAlert(
            alert_type=AlertType.SLOW_QUERY_DETECTED,
            severity=severity,
            message=f"Query {event.query_id} took {event.execution_time:.1f} ms (threshold {event.threshold:g} ms)",
            measurement={"value": event.execution_time, "threshold": event.threshold, "query_id": event.query_id},
        ))

    async def _on_query_failed(self, event: QueryFailedEvent) -> None:
        if not event.is_timeout:
            return
        await self._raise_alert(PerformanceAlert(
            alert_type=AlertType.QUERY_TIMEOUT,
            severity=AlertSeverity.MEDIUM,
            message=f"Query {event.query_id} timed out: {event.error_message}",
            measurement={"value": event.execution_time, "query_id": event.query_id},
        ))

    def get_current_metric(self) -> Optional[PerformanceMetric]:
        return self._metrics[-1] if self._metrics else None

    def get_metrics_history(self, limit: int = 100) -> List[PerformanceMetric]:
        if limit <= 0:
            return []
        return list(self._metrics)[-limit:]

    def get_metrics_since(self, since: datetime) -> List[PerformanceMetric]:
        return [metric for metric in self._metrics if metric.timestamp >= since]

    def get_active_alerts(self) -> List[PerformanceAlert]:
        return [alert for alert in self._alerts.values() if alert.is_active]

    def get_all_alerts(self) -> List[PerformanceAlert]:
        return list(self._alerts.values())

    def get_alert(self, alert_id: str) -> PerformanceAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertStateError(alert_id, f"Alert not found: {alert_id}")
        return alert

    def acknowledge_alert(self, alert_id: str) -> PerformanceAlert:
        alert = self.get_alert(alert_id)
        alert.acknowledge()
        logger.info(f"Alert {alert_id} acknowledged")
        return alert

    def resolve_alert(self, alert_id: str) -> PerformanceAlert:
        alert = self.get_alert(alert_id)
        alert.resolve()
        logger.info(f"Alert {alert_id} resolved")
        return alert

    def get_escalation_candidates(self, threshold_minutes: float = 30,
                                  now: Optional[datetime] = None) -> List[PerformanceAlert]:
        return [alert for alert in self._alerts.values() if alert.should_escalate(threshold_minutes, now)]

    def clear_metrics(self) -> int:
        count = len(self._metrics)
        self._metrics.clear()
        self.collector.reset()
        return count

    async def _publish(self, event) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event)
