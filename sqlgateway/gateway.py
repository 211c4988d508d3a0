import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlgateway.database.adapters import EngineFactory
from sqlgateway.database.connection_manager import AdapterFactory, ConnectionManager
from sqlgateway.database.models import QueryOptions, to_serializable
from sqlgateway.events import CacheClearedEvent, EventBus
from sqlgateway.exceptions import (
    ConfigurationError,
    GatewayError,
    InvalidParametersError,
    QueryExecutionError,
    UnknownOperationError,
)
from sqlgateway.performance.alerts import AlertEvaluator
from sqlgateway.performance.metrics_collector import MetricsCollector
from sqlgateway.performance.monitor import PerformanceMonitor
from sqlgateway.performance.policies import ConnectionPoolPolicy, EventDispatcher, QueryPerformancePolicy
from sqlgateway.performance.reporter import REPORT_PERIODS, PerformanceReporter
from sqlgateway.services.query_service import QueryExecutionService
from sqlgateway.services.schema_service import SchemaService
from sqlgateway.utils.cache_manager import SchemaCache
from sqlgateway.utils.config_manager import GatewaySettings

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_ID = "default"
INTERNAL_ERROR = "internal_error"


class Operation(Enum):
    EXECUTE_QUERY = "execute-query"
    EXECUTE_BATCH = "execute-batch"
    GET_SCHEMA = "get-schema"
    LIST_TABLES = "list-tables"
    DESCRIBE_TABLE = "describe-table"
    GET_SCHEMA_STATISTICS = "get-schema-statistics"
    GET_CONNECTION_POOL_STATUS = "get-connection-pool-status"
    START_PERFORMANCE_MONITORING = "start-performance-monitoring"
    GENERATE_PERFORMANCE_REPORT = "generate-performance-report"
    GET_QUERY_STATS = "get-query-stats"
    CLEAR_CACHES = "clear-caches"

    @classmethod
    def names(cls) -> List[str]:
        return [operation.value for operation in cls]


# operations that need a live database connection before they run
CONNECTED_OPERATIONS = {
    Operation.EXECUTE_QUERY,
    Operation.EXECUTE_BATCH,
    Operation.GET_SCHEMA,
    Operation.LIST_TABLES,
    Operation.DESCRIBE_TABLE,
    Operation.GET_SCHEMA_STATISTICS,
}


@dataclass
class OperationResponse:
    success: bool
    data: Any = None
    message: Optional[str] = None
    error_type: Optional[str] = None
    suggestion: Optional[str] = None

    @classmethod
    def from_error(cls, error: GatewayError) -> "OperationResponse":
        return cls(
            success=False,
            message=error.get_human_readable_message(),
            error_type=error.error_type,
            suggestion=error.suggestion,
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": to_serializable(self.data)}
        payload = {"success": False, "message": self.message, "error_type": self.error_type}
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


@dataclass
class GatewayContext:
    settings: Optional[GatewaySettings]
    event_bus: EventBus
    connection_manager: ConnectionManager
    query_service: QueryExecutionService
    schema_service: SchemaService
    collector: MetricsCollector
    monitor: PerformanceMonitor
    reporter: PerformanceReporter
    dispatcher: EventDispatcher

    @classmethod
    def create(cls, settings: Optional[GatewaySettings] = None,
               engine_factory: Optional[EngineFactory] = None,
               adapter_factory: Optional[AdapterFactory] = None,
               cache: Optional[SchemaCache] = None,
               collector_options: Optional[Mapping[str, Any]] = None) -> "GatewayContext":
        event_bus = EventBus()
        connection_manager = ConnectionManager(
            event_bus=event_bus,
            adapter_factory=adapter_factory,
            engine_factory=engine_factory,
        )

        if settings is not None:
            thresholds = settings.thresholds
            if cache is None:
                cache = SchemaCache(ttl=settings.cache_ttl)
            history_size = settings.query_history_size
            interval_ms = settings.metrics_interval_ms
            max_metrics_history = settings.max_metrics_history
        else:
            thresholds = None
            history_size = 1000
            interval_ms = 5000
            max_metrics_history = 1000

        collector = MetricsCollector(connection_manager, thresholds=thresholds, event_bus=event_bus,
                                     **dict(collector_options or {}))
        thresholds = collector.thresholds

        return cls(
            settings=settings,
            event_bus=event_bus,
            connection_manager=connection_manager,
            query_service=QueryExecutionService(connection_manager, event_bus=event_bus,
                                                history_size=history_size),
            schema_service=SchemaService(connection_manager, cache=cache, event_bus=event_bus),
            collector=collector,
            monitor=PerformanceMonitor(collector, AlertEvaluator(thresholds), event_bus=event_bus,
                                       interval_ms=interval_ms, max_metrics_history=max_metrics_history),
            reporter=PerformanceReporter(thresholds),
            dispatcher=EventDispatcher(
                event_bus,
                query_policy=QueryPerformancePolicy(thresholds.slow_query_ms, thresholds.critical_query_ms),
                pool_policy=ConnectionPoolPolicy(thresholds.pool_warning, thresholds.pool_critical),
            ),
        )


OperationHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class DatabaseGateway:
    def __init__(self, context: GatewayContext):
        self.context = context
        self._handlers: Dict[Operation, OperationHandler] = {
            Operation.EXECUTE_QUERY: self._execute_query,
            Operation.EXECUTE_BATCH: self._execute_batch,
            Operation.GET_SCHEMA: self._get_schema,
            Operation.LIST_TABLES: self._list_tables,
            Operation.DESCRIBE_TABLE: self._describe_table,
            Operation.GET_SCHEMA_STATISTICS: self._get_schema_statistics,
            Operation.GET_CONNECTION_POOL_STATUS: self._get_connection_pool_status,
            Operation.START_PERFORMANCE_MONITORING: self._start_performance_monitoring,
            Operation.GENERATE_PERFORMANCE_REPORT: self._generate_performance_report,
            Operation.GET_QUERY_STATS: self._get_query_stats,
            Operation.CLEAR_CACHES: self._clear_caches,
        }

    @classmethod
    def from_settings(cls, settings: GatewaySettings, **kwargs) -> "DatabaseGateway":
        return cls(GatewayContext.create(settings, **kwargs))

    async def handle(self, operation: str, parameters: Optional[Mapping[str, Any]] = None) -> OperationResponse:
        try:
            resolved = self._resolve(operation)
            params = dict(parameters or {})
            if resolved in CONNECTED_OPERATIONS:
                await self.ensure_connection()
            data = await self._handlers[resolved](params)
        except GatewayError as e:
            logger.warning(f"Operation {operation} failed ({e.error_type}): {e.message}")
            return OperationResponse.from_error(e)
        except Exception as e:
            logger.exception(f"Operation {operation} failed unexpectedly")
            return OperationResponse(
                success=False,
                message=f"Operation {operation} failed: {e}",
                error_type=INTERNAL_ERROR,
            )

        logger.debug(f"Operation {operation} succeeded")
        return OperationResponse(success=True, data=data)

    def _resolve(self, operation: str) -> Operation:
        try:
            return Operation(operation)
        except ValueError:
            raise UnknownOperationError(operation, Operation.names())

    async def ensure_connection(self) -> None:
        manager = self.context.connection_manager
        if manager.current_connection_id is not None:
            return

        settings = self.context.settings
        if settings is None:
            raise ConfigurationError("No database connection is configured")

        logger.info(f"Creating default {settings.db_type.value} connection to {settings.database.host}")
        await manager.create_connection(DEFAULT_CONNECTION_ID, settings.database, settings.db_type)

    async def close(self) -> None:
        await self.context.monitor.stop_monitoring()
        self.context.dispatcher.close()
        failures = await self.context.connection_manager.disconnect_all()
        if failures:
            logger.warning(f"Failed to close {len(failures)} connection(s) cleanly")

    async def _execute_query(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = _require_str(Operation.EXECUTE_QUERY, params, "query")
        parameters = params.get("parameters")
        if parameters is not None and not isinstance(parameters, (list, tuple, dict)):
            raise InvalidParametersError(Operation.EXECUTE_QUERY.value, "'parameters' must be a list or an object")

        options = QueryOptions(parameters=parameters, timeout_ms=_optional_int(params, "timeout"))
        query_id, result = await self.context.query_service.execute_with_id(query, options)
        if not result.success:
            raise QueryExecutionError(query_id, result.error or "unknown error")
        return result.to_dict()

    async def _execute_batch(self, params: Dict[str, Any]) -> Dict[str, Any]:
        queries = params.get("queries")
        if not isinstance(queries, (list, tuple)) or not queries:
            raise InvalidParametersError(Operation.EXECUTE_BATCH.value, "'queries' must be a non-empty list")
        if not all(isinstance(query, str) and query.strip() for query in queries):
            raise InvalidParametersError(Operation.EXECUTE_BATCH.value, "every query must be a non-empty string")

        batch = await self.context.query_service.execute_batch(queries)
        return batch.to_dict()

    async def _get_schema(self, params: Dict[str, Any]) -> Dict[str, Any]:
        schema = await self.context.schema_service.get_schema(
            include_system=bool(params.get("include_system_tables", False)),
        )
        return schema.to_dict()

    async def _list_tables(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        pattern = params.get("pattern")
        if pattern is not None and not isinstance(pattern, str):
            raise InvalidParametersError(Operation.LIST_TABLES.value, "'pattern' must be a string")

        tables = await self.context.schema_service.list_tables(pattern)
        return [
            {"schema": table.schema, "name": table.name, "type": table.type.value}
            for table in tables
        ]

    async def _describe_table(self, params: Dict[str, Any]) -> Dict[str, Any]:
        table_name = params.get("table_name")
        if table_name is not None and not isinstance(table_name, str):
            raise InvalidParametersError(Operation.DESCRIBE_TABLE.value, "'table_name' must be a string")

        table = await self.context.schema_service.get_table_info(table_name or "")
        return table.to_dict()

    async def _get_schema_statistics(self, params: Dict[str, Any]) -> Dict[str, Any]:
        statistics = await self.context.schema_service.get_schema_statistics(
            include_system=bool(params.get("include_system_tables", False)),
        )
        return statistics.to_dict()

    async def _get_connection_pool_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        metric = self.context.monitor.get_current_metric()
        if metric is None and len(self.context.connection_manager):
            metric = self.context.collector.collect()

        summary = self.context.reporter.get_connection_pool_summary(metric)
        summary["connections"] = self.context.connection_manager.get_connection_stats()
        return summary

    async def _start_performance_monitoring(self, params: Dict[str, Any]) -> Dict[str, Any]:
        status = await self.context.monitor.start_monitoring(_optional_int(params, "interval"))
        return status.to_dict()

    async def _generate_performance_report(self, params: Dict[str, Any]) -> Dict[str, Any]:
        period = params.get("period") or "1h"
        if period not in REPORT_PERIODS:
            raise InvalidParametersError(
                Operation.GENERATE_PERFORMANCE_REPORT.value,
                f"'period' must be one of {', '.join(REPORT_PERIODS)}",
            )

        monitor = self.context.monitor
        metrics = monitor.get_metrics_history(limit=monitor.max_metrics_history)
        if not metrics:
            metrics = [self.context.collector.collect()]

        report = self.context.reporter.generate_report(metrics, monitor.get_all_alerts(), period)
        data = report.to_dict()
        data["monitoring"] = monitor.is_monitoring
        data["active_alerts"] = [alert.to_dict() for alert in monitor.get_active_alerts()]
        return data

    async def _get_query_stats(self, params: Dict[str, Any]) -> Dict[str, Any]:
        data = self.context.query_service.get_query_stats().to_dict()
        limit = _optional_int(params, "history_limit")
        if limit:
            data["recent_queries"] = [
                entry.preview() for entry in self.context.query_service.get_query_history(limit)
            ]
        return data

    async def _clear_caches(self, params: Dict[str, Any]) -> Dict[str, Any]:
        cleared = {
            "schema_cache": self.context.schema_service.clear_cache(),
            "query_history": self.context.query_service.clear_history(),
            "metrics": self.context.monitor.clear_metrics(),
        }
        await self.context.event_bus.publish(CacheClearedEvent(caches=list(cleared)))
        logger.info(f"Caches cleared: {cleared}")
        return {"cleared": cleared}


def _require_str(operation: Operation, params: Dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParametersError(operation.value, f"'{name}' is required")
    return value


def _optional_int(params: Dict[str, Any], name: str) -> Optional[int]:
    value = params.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParametersError("request", f"'{name}' must be an integer")
