import pytest

from sqlgateway.database.connection_manager import ConnectionManager
from sqlgateway.database.models import QueryOptions, QueryResult
from sqlgateway.events import EventBus, EventType
from sqlgateway.exceptions import DatabaseConnectionError, QueryExecutionError
from sqlgateway.services.query_service import QueryExecutionService


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def manager(event_bus, adapter_factory):
    return ConnectionManager(event_bus=event_bus, adapter_factory=adapter_factory)


@pytest.fixture
def service(manager, event_bus):
    return QueryExecutionService(manager, event_bus=event_bus, history_size=10)


@pytest.mark.asyncio
async def test_execute_query_records_history(service, manager, db_config):
    adapter = await manager.create_connection("main", db_config)

    result = await service.execute_query("SELECT 1 AS test", QueryOptions(parameters=[1]))
    await service.execute_query("SELECT 2")

    assert result.success
    assert result.rows == [{"test": 1}]
    assert adapter.executed[0] == ("SELECT 1 AS test", [1])

    history = service.get_query_history()
    assert [entry.query for entry in history] == ["SELECT 2", "SELECT 1 AS test"]
    assert service.get_query_history(limit=1)[0].query == "SELECT 2"


@pytest.mark.asyncio
async def test_history_is_bounded(service, manager, db_config):
    await manager.create_connection("main", db_config)
    for i in range(15):
        await service.execute_query(f"SELECT {i}")

    history = service.get_query_history()
    assert len(history) == 10
    assert history[0].query == "SELECT 14"
    assert history[-1].query == "SELECT 5"


@pytest.mark.asyncio
async def test_execute_without_connection_raises(service):
    with pytest.raises(DatabaseConnectionError):
        await service.execute_query("SELECT 1")

    entry = service.get_query_history()[0]
    assert entry.success is False
    assert "No active database connection" in entry.error


@pytest.mark.asyncio
async def test_unexpected_adapter_error_is_wrapped(service, manager, db_config, event_bus):
    failed = []
    event_bus.subscribe(EventType.QUERY_FAILED, failed.append)
    adapter = await manager.create_connection("main", db_config)
    adapter.responses["SELECT boom"] = RuntimeError("socket closed")

    with pytest.raises(QueryExecutionError) as excinfo:
        await service.execute_query("SELECT boom")

    assert excinfo.value.original_message == "socket closed"
    assert excinfo.value.query_id == failed[0].query_id


@pytest.mark.asyncio
async def test_failed_result_publishes_query_failed(service, manager, db_config, event_bus):
    executed, failed = [], []
    event_bus.subscribe(EventType.QUERY_EXECUTED, executed.append)
    event_bus.subscribe(EventType.QUERY_FAILED, failed.append)
    adapter = await manager.create_connection("main", db_config)
    adapter.responses["SELECT * FROM nope"] = QueryResult(success=False, error="Invalid object name 'nope'")

    query_id, result = await service.execute_with_id("SELECT * FROM nope")

    assert result.success is False
    assert executed == []
    assert failed[0].query_id == query_id
    assert failed[0].error_message == "Invalid object name 'nope'"


@pytest.mark.asyncio
async def test_batch_continues_after_failure(service, manager, db_config):
    adapter = await manager.create_connection("main", db_config)
    adapter.responses["SELECT bad"] = QueryResult(success=False, error="syntax error")
    adapter.responses["SELECT worse"] = RuntimeError("lost connection")

    batch = await service.execute_batch(["SELECT 1", "SELECT bad", "SELECT worse", "SELECT 2"])

    assert batch.total == 4
    assert batch.successful == 2
    assert batch.failed == 2
    assert [query for query, _ in adapter.executed] == ["SELECT 1", "SELECT bad", "SELECT worse", "SELECT 2"]
    assert "lost connection" in batch.results[2].error
    assert batch.to_dict()["failed"] == 2


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_first_failure(service, manager, db_config):
    adapter = await manager.create_connection("main", db_config)
    adapter.responses["UPDATE b"] = QueryResult(success=False, error="constraint violation")

    with pytest.raises(QueryExecutionError, match="constraint violation"):
        await service.execute_in_transaction([
            "UPDATE a",
            ("UPDATE b", [1]),
            {"query": "UPDATE c", "parameters": {"id": 2}},
        ])

    assert [query for query, _ in adapter.executed] == ["UPDATE a", "UPDATE b"]
    assert adapter.transaction_log == ["begin", "rollback"]


@pytest.mark.asyncio
async def test_transaction_commits(service, manager, db_config):
    adapter = await manager.create_connection("main", db_config)

    results = await service.execute_in_transaction([
        "UPDATE a",
        {"query": "UPDATE c", "parameters": {"id": 2}},
    ])

    assert len(results) == 2
    assert adapter.executed[1] == ("UPDATE c", {"id": 2})
    assert adapter.transaction_log == ["begin", "commit"]


@pytest.mark.asyncio
async def test_query_stats(service, manager, db_config):
    adapter = await manager.create_connection("main", db_config)
    long_query = "SELECT " + ", ".join(f"column_{i}" for i in range(40)) + " FROM wide_table"
    adapter.responses["SELECT slow"] = QueryResult(success=True, execution_time=50.0)
    adapter.responses["SELECT fail"] = QueryResult(success=False, error="boom", execution_time=3.0)
    adapter.responses[long_query] = QueryResult(success=True, execution_time=0.5)

    assert service.get_query_stats().total_queries == 0

    await service.execute_query("SELECT slow")
    await service.execute_query("SELECT fail")
    await service.execute_query(long_query)

    stats = service.get_query_stats()
    assert stats.total_queries == 3
    assert stats.successful_queries == 2
    assert stats.failed_queries == 1
    assert stats.success_rate == 66.67
    assert stats.average_execution_time == 17.833
    assert stats.slowest_query["query"] == "SELECT slow"
    assert stats.fastest_query["query"] == long_query[:100] + "..."
    assert stats.fastest_query["execution_time"] == 0.5


@pytest.mark.asyncio
async def test_stats_ties_keep_first_entry(service, manager, db_config):
    await manager.create_connection("main", db_config)
    await service.execute_query("SELECT first")
    await service.execute_query("SELECT second")

    stats = service.get_query_stats()
    assert stats.slowest_query["query"] == "SELECT first"
    assert stats.fastest_query["query"] == "SELECT first"


@pytest.mark.asyncio
async def test_ddl_publishes_schema_changed(service, manager, db_config, event_bus):
    changes = []
    event_bus.subscribe(EventType.SCHEMA_CHANGED, changes.append)
    await manager.create_connection("main", db_config)

    await service.execute_query("CREATE TABLE [dbo].[Orders] (id INT)")
    await service.execute_query("create or alter procedure dbo.usp_refresh AS SELECT 1")
    await service.execute_query("DROP INDEX IF EXISTS ix_orders ON dbo.Orders")
    await service.execute_query("SELECT * FROM dbo.Orders")

    assert [(c.change_type, c.object_type) for c in changes] == [
        ("CREATE", "table"),
        ("CREATE", "procedure"),
        ("DROP", "index"),
    ]
    assert changes[0].object_name == "dbo.Orders"
    assert changes[1].object_name == "dbo.usp_refresh"


@pytest.mark.asyncio
async def test_clear_history(service, manager, db_config):
    await manager.create_connection("main", db_config)
    await service.execute_query("SELECT 1")
    await service.execute_query("SELECT 2")

    assert service.clear_history() == 2
    assert service.get_query_history() == []
