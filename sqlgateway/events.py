import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    QUERY_EXECUTED = "query.executed"
    QUERY_FAILED = "query.failed"
    QUERY_SLOW = "query.slow"
    SCHEMA_CHANGED = "schema.changed"
    PERFORMANCE_ALERT_TRIGGERED = "performance.alert.triggered"
    MONITORING_STARTED = "performance.monitoring.started"
    MONITORING_STOPPED = "performance.monitoring.stopped"
    DATABASE_CONNECTED = "database.connected"
    DATABASE_DISCONNECTED = "database.disconnected"
    DATABASE_ERROR = "database.error"
    CACHE_CLEARED = "system.cache.cleared"


class Event:
    event_type: ClassVar[EventType]

    @property
    def name(self) -> str:
        return self.event_type.value


@dataclass(frozen=True)
class QueryExecutedEvent(Event):
    event_type: ClassVar[EventType] = EventType.QUERY_EXECUTED

    query_id: str
    sql: str
    execution_time: float
    row_count: int
    success: bool = True
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class QueryFailedEvent(Event):
    event_type: ClassVar[EventType] = EventType.QUERY_FAILED

    query_id: str
    sql: str
    execution_time: float
    error_message: str
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_timeout(self) -> bool:
        message = self.error_message.lower()
        return "timeout" in message or "timed out" in message


@dataclass(frozen=True)
class SlowQueryEvent(Event):
    event_type: ClassVar[EventType] = EventType.QUERY_SLOW

    query_id: str
    sql: str
    execution_time: float
    threshold: float
    is_critical: bool = False
    recommendations: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SchemaChangedEvent(Event):
    event_type: ClassVar[EventType] = EventType.SCHEMA_CHANGED

    object_type: str
    object_name: str
    change_type: str
    sql: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def get_summary(self) -> str:
        return f"{self.change_type} {self.object_type} {self.object_name}"


@dataclass(frozen=True)
class PerformanceAlertTriggeredEvent(Event):
    event_type: ClassVar[EventType] = EventType.PERFORMANCE_ALERT_TRIGGERED

    alert_id: str
    alert_type: str
    severity: str
    message: str
    measurement: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def get_summary(self) -> str:
        return f"[{self.severity.upper()}] {self.alert_type}: {self.message}"

    def get_recommendation(self) -> str:
        recommendations = {
            "connection_pool_high_utilization": "Increase the pool size or look for connections that are not being released",
            "slow_query_detected": "Review the execution plan and add indexes for the filtered columns",
            "high_cpu_usage": "Look for expensive queries or scale the database host",
            "high_memory_usage": "Reduce the connection pool size or result set sizes",
            "high_disk_usage": "Free disk space or archive old data",
            "connection_timeout": "Check network connectivity and the database server load",
            "query_timeout": "Optimize the query or raise the request timeout",
            "high_error_rate": "Review database connectivity and query validity",
        }
        return recommendations.get(self.alert_type, "Review the database performance metrics")


@dataclass(frozen=True)
class ConnectionEvent(Event):
    connection_id: str
    db_type: str
    status: str
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def event_type(self) -> EventType:
        if self.error_message:
            return EventType.DATABASE_ERROR
        if self.status == "connected":
            return EventType.DATABASE_CONNECTED
        return EventType.DATABASE_DISCONNECTED


@dataclass(frozen=True)
class MonitoringEvent(Event):
    running: bool
    interval_ms: int
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def event_type(self) -> EventType:
        return EventType.MONITORING_STARTED if self.running else EventType.MONITORING_STOPPED


@dataclass(frozen=True)
class CacheClearedEvent(Event):
    event_type: ClassVar[EventType] = EventType.CACHE_CLEARED

    caches: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


EventHandler = Callable[[Event], Any]


class EventBus:
    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self._published = 0
        self._handler_errors = 0

    def subscribe(self, event_type: EventType, handler: EventHandler) -> Callable[[], None]:
        if not isinstance(event_type, EventType):
            raise ValueError(f"Unknown event type: {event_type}")
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

        def unsubscribe():
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, event: Event) -> None:
        self._published += 1
        # copy so handlers may unsubscribe while being notified
        for handler in list(self._handlers.get(event.event_type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._handler_errors += 1
                logger.error(f"Event handler error for {event.name}: {e}")

    def get_subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def get_stats(self) -> Dict[str, int]:
        return {
            "published": self._published,
            "handler_errors": self._handler_errors,
            "subscribers": self.get_subscriber_count(),
        }

    def clear(self) -> None:
        self._handlers.clear()
