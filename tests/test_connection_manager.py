import pytest

from sqlgateway.database.connection_manager import ConnectionManager
from sqlgateway.database.models import ConnectionStatus, DatabaseConfig, DatabaseType
from sqlgateway.events import EventBus, EventType
from sqlgateway.exceptions import ConfigurationError, DatabaseConnectionError


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def manager(event_bus, adapter_factory):
    return ConnectionManager(event_bus=event_bus, adapter_factory=adapter_factory)


@pytest.mark.asyncio
async def test_first_connection_becomes_current(manager, db_config):
    adapter = await manager.create_connection("primary", db_config, "postgresql")
    await manager.create_connection("secondary", db_config, DatabaseType.MYSQL)

    assert manager.current_connection_id == "primary"
    assert manager.get_current_connection() is adapter
    assert len(manager) == 2
    assert manager.get_record("primary").status == ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_unknown_type_is_a_connection_error(manager, db_config, adapter_factory):
    with pytest.raises(DatabaseConnectionError, match="Unsupported database type"):
        await manager.create_connection("main", db_config, "oracle")
    assert adapter_factory.created == []


@pytest.mark.asyncio
async def test_missing_type_is_a_configuration_error(manager, db_config):
    with pytest.raises(ConfigurationError):
        await manager.create_connection("main", db_config, None)


@pytest.mark.asyncio
async def test_invalid_config_is_rejected(manager):
    with pytest.raises(ConfigurationError, match="host"):
        await manager.create_connection("main", DatabaseConfig(host="", database="db", username="sa"))


@pytest.mark.asyncio
async def test_failed_connect_is_not_registered(manager, db_config, adapter_factory, event_bus):
    errors = []
    event_bus.subscribe(EventType.DATABASE_ERROR, errors.append)
    adapter_factory.fail_connect = True

    with pytest.raises(DatabaseConnectionError) as excinfo:
        await manager.create_connection("main", db_config)

    assert excinfo.value.connection_id == "main"
    assert "main" not in manager
    assert manager.current_connection_id is None
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_duplicate_id_is_rejected(manager, db_config):
    await manager.create_connection("main", db_config)
    with pytest.raises(DatabaseConnectionError, match="already exists"):
        await manager.create_connection("main", db_config)


def test_no_current_connection_raises(manager):
    with pytest.raises(DatabaseConnectionError, match="No active database connection"):
        manager.get_current_connection()


@pytest.mark.asyncio
async def test_switch_connection(manager, db_config):
    await manager.create_connection("a", db_config)
    b = await manager.create_connection("b", db_config)

    assert manager.switch_connection("b") is b
    assert manager.current_connection_id == "b"

    with pytest.raises(DatabaseConnectionError, match="not found"):
        manager.switch_connection("missing")
    assert manager.current_connection_id == "b"


@pytest.mark.asyncio
async def test_removing_current_promotes_first_remaining(manager, db_config, event_bus):
    disconnected = []
    event_bus.subscribe(EventType.DATABASE_DISCONNECTED, disconnected.append)

    a = await manager.create_connection("a", db_config)
    await manager.create_connection("b", db_config)
    await manager.create_connection("c", db_config)
    manager.switch_connection("b")

    await manager.remove_connection("b")
    assert manager.current_connection_id == "a"

    await manager.remove_connection("a")
    assert manager.current_connection_id == "c"
    assert a.disconnect_calls == 1
    assert len(disconnected) == 2

    await manager.remove_connection("c")
    assert manager.current_connection_id is None


@pytest.mark.asyncio
async def test_remove_deregisters_even_when_disconnect_fails(manager, db_config):
    adapter = await manager.create_connection("a", db_config)
    adapter.fail_disconnect = True

    with pytest.raises(DatabaseConnectionError):
        await manager.remove_connection("a")

    assert "a" not in manager
    assert manager.current_connection_id is None


@pytest.mark.asyncio
async def test_disconnect_all_collects_failures(manager, db_config):
    a = await manager.create_connection("a", db_config)
    b = await manager.create_connection("b", db_config)
    b.fail_disconnect = True

    failures = await manager.disconnect_all()

    assert len(failures) == 1 and failures[0].startswith("b:")
    assert a.disconnect_calls == 1 and b.disconnect_calls == 1
    assert len(manager) == 0
    assert manager.current_connection_id is None


@pytest.mark.asyncio
async def test_auto_reconnect(manager, db_config):
    adapter = await manager.create_connection("main", db_config)

    assert await manager.auto_reconnect() is True
    assert adapter.connect_calls == 2

    adapter.fail_connect = True
    assert await manager.auto_reconnect("main") is False
    assert manager.get_record("main").status == ConnectionStatus.ERROR
    assert await manager.auto_reconnect("unknown") is False


@pytest.mark.asyncio
async def test_test_connection_never_raises(manager, db_config):
    assert await manager.test_connection() is False

    adapter = await manager.create_connection("main", db_config)
    assert await manager.test_connection() is True

    adapter.healthy = False
    assert await manager.test_connection("main") is False


@pytest.mark.asyncio
async def test_stats_and_pool_status(manager, db_config):
    await manager.create_connection("a", db_config)
    await manager.create_connection("b", db_config)

    stats = manager.get_connection_stats()
    assert stats["total"] == 2
    assert stats["active"] == 2
    assert stats["current"] == "a"
    assert [item["current"] for item in stats["connections"]] == [True, False]

    assert manager.get_pool_status() == {"total": 4, "active": 2, "idle": 2, "max": 20}
