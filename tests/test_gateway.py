from decimal import Decimal

import pytest

from sqlgateway.database.models import DatabaseConfig, DatabaseType, QueryResult
from sqlgateway.events import EventType
from sqlgateway.gateway import DatabaseGateway, GatewayContext, Operation
from sqlgateway.performance.models import PerformanceThresholds
from sqlgateway.utils.cache_manager import SchemaCache
from sqlgateway.utils.config_manager import GatewaySettings, load_settings
from tests.conftest import FakeClock, make_table


@pytest.fixture
def settings():
    return GatewaySettings(
        db_type=DatabaseType.MSSQL,
        database=DatabaseConfig(host="sql.internal", database="sales", username="sa", password="secret"),
        thresholds=PerformanceThresholds(slow_query_ms=100, critical_query_ms=500),
    )


@pytest.fixture
def gateway(settings, adapter_factory):
    adapter_factory.tables = [
        make_table("Users", columns=3, primary_keys=["col0"]),
        make_table("Orders", columns=5),
    ]
    return DatabaseGateway.from_settings(settings, adapter_factory=adapter_factory)


@pytest.mark.asyncio
async def test_default_connection_is_created_lazily(gateway, adapter_factory):
    assert adapter_factory.created == []

    response = await gateway.handle("execute-query", {"query": "SELECT 1 AS test"})
    await gateway.handle("execute-query", {"query": "SELECT 2"})

    assert response.success
    assert response.data["rows"] == [{"test": 1}]
    assert len(adapter_factory.created) == 1
    adapter = adapter_factory.created[0]
    assert adapter.db_type == DatabaseType.MSSQL
    assert adapter.config.host == "sql.internal"
    assert gateway.context.connection_manager.current_connection_id == "default"


@pytest.mark.asyncio
async def test_describe_missing_table(gateway):
    response = await gateway.handle("describe-table", {"table_name": "dbo.Ghost"})

    assert response.success is False
    assert response.error_type == "schema_validation_error"
    assert "dbo.Ghost" in response.message
    assert response.suggestion


@pytest.mark.asyncio
async def test_describe_table(gateway):
    response = await gateway.handle("describe-table", {"table_name": "dbo.Users"})

    assert response.success
    assert response.data["name"] == "Users"
    assert response.data["primary_keys"] == ["col0"]
    assert len(response.data["columns"]) == 3


@pytest.mark.asyncio
async def test_unknown_operation(gateway):
    response = await gateway.handle("drop-database", {})

    assert response.success is False
    assert response.error_type == "unknown_operation"
    assert "execute-query" in response.suggestion
    assert response.to_dict() == {
        "success": False,
        "message": "Unknown operation: drop-database",
        "error_type": "unknown_operation",
        "suggestion": response.suggestion,
    }


@pytest.mark.asyncio
async def test_query_failure_is_reported(gateway, adapter_factory):
    await gateway.ensure_connection()
    adapter_factory.created[0].responses["SELECT * FROM Missing"] = QueryResult(
        success=False, error="Invalid object name 'Missing'"
    )

    response = await gateway.handle("execute-query", {"query": "SELECT * FROM Missing"})

    assert response.success is False
    assert response.error_type == "query_execution_error"
    assert "Invalid object name 'Missing'" in response.message
    assert "doesn't exist" in response.suggestion


@pytest.mark.asyncio
async def test_invalid_parameters(gateway):
    missing = await gateway.handle("execute-query", {})
    bad_params = await gateway.handle("execute-query", {"query": "SELECT 1", "parameters": "oops"})
    bad_batch = await gateway.handle("execute-batch", {"queries": []})
    bad_timeout = await gateway.handle("execute-query", {"query": "SELECT 1", "timeout": "soon"})

    for response in (missing, bad_params, bad_batch, bad_timeout):
        assert response.success is False
        assert response.error_type == "invalid_parameters"


@pytest.mark.asyncio
async def test_missing_settings_is_a_configuration_error():
    gateway = DatabaseGateway(GatewayContext.create())
    response = await gateway.handle("get-schema", {})

    assert response.success is False
    assert response.error_type == "configuration_error"


@pytest.mark.asyncio
async def test_batch_and_schema_operations(gateway):
    batch = await gateway.handle("execute-batch", {"queries": ["SELECT 1", "SELECT 2"]})
    assert batch.data["total"] == 2
    assert batch.data["successful"] == 2

    tables = await gateway.handle("list-tables", {"pattern": "^ord"})
    assert tables.data == [{"schema": "dbo", "name": "Orders", "type": "table"}]

    schema = await gateway.handle("get-schema", {})
    assert schema.data["name"] == "sales"
    assert len(schema.data["tables"]) == 2

    statistics = await gateway.handle("get-schema-statistics", {})
    assert statistics.data["total_tables"] == 2
    assert statistics.data["total_columns"] == 8


@pytest.mark.asyncio
async def test_slow_query_raises_alert(gateway, adapter_factory):
    await gateway.ensure_connection()
    adapter_factory.created[0].responses["SELECT heavy"] = QueryResult(success=True, execution_time=750.0)

    await gateway.handle("execute-query", {"query": "SELECT heavy"})

    alerts = gateway.context.monitor.get_active_alerts()
    assert len(alerts) == 1
    assert alerts[0].alert_type.value == "slow_query_detected"
    assert alerts[0].is_critical()


@pytest.mark.asyncio
async def test_pool_status_and_report(gateway):
    before = await gateway.handle("get-connection-pool-status", {})
    assert before.data["status"] == "warning"
    assert before.data["connections"]["total"] == 0

    await gateway.handle("execute-query", {"query": "SELECT 1"})
    status = await gateway.handle("get-connection-pool-status", {})
    assert status.data["total_connections"] == 2
    assert status.data["active_connections"] == 1
    assert status.data["utilization"] == 10.0
    assert status.data["connections"]["current"] == "default"

    report = await gateway.handle("generate-performance-report", {"period": "24h"})
    assert report.success
    assert report.data["period"] == "24h"
    assert report.data["summary"]["sample_count"] == 1
    assert report.data["monitoring"] is False

    invalid = await gateway.handle("generate-performance-report", {"period": "forever"})
    assert invalid.error_type == "invalid_parameters"


@pytest.mark.asyncio
async def test_start_performance_monitoring(gateway):
    try:
        started = await gateway.handle("start-performance-monitoring", {"interval": 60000})
        again = await gateway.handle("start-performance-monitoring", {})
    finally:
        await gateway.close()

    assert started.data == {"success": True, "message": started.data["message"], "interval_ms": 60000}
    assert again.success
    assert again.data["success"] is False


@pytest.mark.asyncio
async def test_query_stats_and_clear_caches(gateway):
    cleared_events = []
    gateway.context.event_bus.subscribe(EventType.CACHE_CLEARED, cleared_events.append)

    await gateway.handle("execute-query", {"query": "SELECT 1"})
    await gateway.handle("execute-query", {"query": "SELECT 2"})
    await gateway.handle("describe-table", {"table_name": "Users"})
    await gateway.context.monitor.tick()

    stats = await gateway.handle("get-query-stats", {"history_limit": 1})
    assert stats.data["total_queries"] == 2
    assert stats.data["recent_queries"][0]["query"] == "SELECT 2"

    cleared = await gateway.handle("clear-caches", {})
    assert cleared.data == {"cleared": {"schema_cache": 1, "query_history": 2, "metrics": 1}}
    assert cleared_events[0].caches == ["schema_cache", "query_history", "metrics"]

    after = await gateway.handle("get-query-stats", {})
    assert after.data["total_queries"] == 0


@pytest.mark.asyncio
async def test_close_disconnects(gateway, adapter_factory):
    await gateway.handle("execute-query", {"query": "SELECT 1"})
    await gateway.close()

    assert adapter_factory.created[0].disconnect_calls == 1
    assert len(gateway.context.connection_manager) == 0


def test_operation_names():
    assert len(Operation.names()) == 11
    assert "clear-caches" in Operation.names()


@pytest.mark.asyncio
async def test_mssql_select_scenario(adapter_factory):
    settings = GatewaySettings(
        db_type=DatabaseType.MSSQL,
        database=DatabaseConfig(host="localhost", port=1433, database="test", username="u", password="p"),
    )
    gateway = DatabaseGateway.from_settings(settings, adapter_factory=adapter_factory)

    response = await gateway.handle("execute-query", {"query": "SELECT 1 as test"})

    assert response.success
    assert response.data["rows"] == [{"test": 1}]
    assert response.data["rows_affected"] in (0, 1)
    assert response.data["execution_time"] >= 0


@pytest.mark.asyncio
async def test_schema_statistics_are_served_from_cache(gateway, adapter_factory):
    first = await gateway.handle("get-schema-statistics", {})
    second = await gateway.handle("get-schema-statistics", {})

    assert first.to_dict() == second.to_dict()
    assert adapter_factory.created[0].calls["get_schema"] == 1


def test_schema_cache_uses_configured_ttl(adapter_factory):
    settings = load_settings(environ={
        "DB_SERVER": "sql.internal",
        "DB_DATABASE": "sales",
        "DB_USER": "sa",
        "CACHE_EXPIRATION_TIME": "1000",
    })
    context = GatewayContext.create(settings, adapter_factory=adapter_factory)

    assert settings.cache_ttl == 1.0
    assert context.schema_service.cache.ttl == settings.cache_ttl


@pytest.mark.asyncio
async def test_injected_cache_expires_through_gateway(settings, adapter_factory):
    clock = FakeClock()
    cache = SchemaCache(ttl=5.0, clock=clock)
    adapter_factory.tables = [make_table("Users")]
    gateway = DatabaseGateway.from_settings(settings, adapter_factory=adapter_factory, cache=cache)

    await gateway.handle("describe-table", {"table_name": "dbo.Users"})
    clock.advance(4.0)
    await gateway.handle("describe-table", {"table_name": "dbo.Users"})
    assert gateway.context.schema_service.cache is cache
    assert adapter_factory.created[0].calls["get_table_info"] == 1

    clock.advance(1.001)
    await gateway.handle("describe-table", {"table_name": "dbo.Users"})
    assert adapter_factory.created[0].calls["get_table_info"] == 2


@pytest.mark.asyncio
async def test_non_finite_numeric_values_are_serialized(gateway, adapter_factory):
    await gateway.ensure_connection()
    adapter_factory.created[0].responses["SELECT 'Infinity'::numeric AS v"] = QueryResult(
        success=True, rows=[{"v": Decimal("Infinity"), "w": Decimal("NaN"), "x": Decimal("2.50")}]
    )

    response = await gateway.handle("execute-query", {"query": "SELECT 'Infinity'::numeric AS v"})

    assert response.success
    assert response.data["rows"] == [{"v": "Infinity", "w": "NaN", "x": 2.5}]


@pytest.mark.asyncio
async def test_unexpected_errors_become_structured_failures(gateway, monkeypatch):
    def broken_stats():
        raise RuntimeError("stats store unavailable")

    monkeypatch.setattr(gateway.context.query_service, "get_query_stats", broken_stats)

    response = await gateway.handle("get-query-stats", {})

    assert response.success is False
    assert response.error_type == "internal_error"
    assert "stats store unavailable" in response.message
    assert "Traceback" not in response.message
