import logging
from typing import Any, Callable, Dict, List, Optional, Union

from sqlgateway.database.adapters import DatabaseAdapter, EngineFactory, create_adapter
from sqlgateway.database.models import ConnectionRecord, ConnectionStatus, DatabaseConfig, DatabaseType
from sqlgateway.events import ConnectionEvent, EventBus
from sqlgateway.exceptions import ConfigurationError, DatabaseConnectionError

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[DatabaseType, DatabaseConfig], DatabaseAdapter]


class ConnectionManager:
    def __init__(self, event_bus: Optional[EventBus] = None,
                 adapter_factory: Optional[AdapterFactory] = None,
                 engine_factory: Optional[EngineFactory] = None):
        self.event_bus = event_bus
        self._engine_factory = engine_factory
        self._adapter_factory = adapter_factory or self._default_adapter_factory
        self._adapters: Dict[str, DatabaseAdapter] = {}
        self._records: Dict[str, ConnectionRecord] = {}
        self._current_id: Optional[str] = None

    def _default_adapter_factory(self, db_type: DatabaseType, config: DatabaseConfig) -> DatabaseAdapter:
        return create_adapter(db_type, config, engine_factory=self._engine_factory)

    @property
    def current_connection_id(self) -> Optional[str]:
        return self._current_id

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._adapters

    async def create_connection(self, connection_id: str, config: DatabaseConfig,
                                db_type: Union[str, DatabaseType, None] = DatabaseType.MSSQL) -> DatabaseAdapter:
        if not connection_id:
            raise ConfigurationError("Connection id is required")
        if connection_id in self._adapters:
            raise DatabaseConnectionError(f"Connection already exists: {connection_id}", connection_id)

        resolved_type = DatabaseType.parse(db_type)
        config.validate()

        record = ConnectionRecord(connection_id=connection_id, db_type=resolved_type, config=config)
        adapter = self._adapter_factory(resolved_type, config)

        record.status = ConnectionStatus.CONNECTING
        try:
            await adapter.connect()
        except DatabaseConnectionError as e:
            record.status = ConnectionStatus.ERROR
            logger.error(f"Failed to create connection {connection_id}: {e}")
            await self._publish(record, error=str(e))
            e.connection_id = connection_id
            raise

        record.status = ConnectionStatus.CONNECTED
        record.touch()
        self._adapters[connection_id] = adapter
        self._records[connection_id] = record

        if self._current_id is None:
            self._current_id = connection_id

        logger.info(f"Connection created: {connection_id} ({resolved_type.value})")
        await self._publish(record)
        return adapter

    def get_current_connection(self) -> DatabaseAdapter:
        if self._current_id is None:
            raise DatabaseConnectionError("No active database connection.")
        self._records[self._current_id].touch()
        return self._adapters[self._current_id]

    def get_connection(self, connection_id: str) -> DatabaseAdapter:
        if connection_id not in self._adapters:
            raise DatabaseConnectionError(f"Connection not found: {connection_id}", connection_id)
        return self._adapters[connection_id]

    def get_record(self, connection_id: str) -> ConnectionRecord:
        if connection_id not in self._records:
            raise DatabaseConnectionError(f"Connection not found: {connection_id}", connection_id)
        return self._records[connection_id]

    def switch_connection(self, connection_id: str) -> DatabaseAdapter:
        adapter = self.get_connection(connection_id)
        self._current_id = connection_id
        logger.info(f"Switched current connection to {connection_id}")
        return adapter

    async def remove_connection(self, connection_id: str) -> None:
        adapter = self.get_connection(connection_id)
        record = self._records[connection_id]

        try:
            await adapter.disconnect()
        finally:
            del self._adapters[connection_id]
            del self._records[connection_id]
            record.status = ConnectionStatus.DISCONNECTED

            if self._current_id == connection_id:
                self._current_id = next(iter(self._adapters), None)

        logger.info(f"Connection removed: {connection_id}")
        await self._publish(record)

    async def disconnect_all(self) -> List[str]:
        failures = []

        for connection_id, adapter in list(self._adapters.items()):
            record = self._records[connection_id]
            try:
                await adapter.disconnect()
                record.status = ConnectionStatus.DISCONNECTED
            except Exception as e:
                record.status = ConnectionStatus.ERROR
                record.error = str(e)
                failures.append(f"{connection_id}: {e}")
                logger.error(f"Failed to disconnect {connection_id}: {e}")

        self._adapters.clear()
        self._records.clear()
        self._current_id = None

        if failures:
            logger.warning(f"disconnect_all finished with {len(failures)} failure(s)")
        else:
            logger.info("All connections closed")
        return failures

    async def auto_reconnect(self, connection_id: Optional[str] = None) -> bool:
        target = connection_id or self._current_id
        if target is None or target not in self._adapters:
            logger.warning(f"Cannot reconnect unknown connection: {target}")
            return False

        adapter = self._adapters[target]
        record = self._records[target]

        try:
            await adapter.disconnect()
            record.status = ConnectionStatus.CONNECTING
            await adapter.connect()
        except Exception as e:
            record.status = ConnectionStatus.ERROR
            record.error = str(e)
            logger.error(f"Reconnect failed for {target}: {e}")
            await self._publish(record, error=str(e))
            return False

        record.status = ConnectionStatus.CONNECTED
        record.error = None
        record.touch()
        logger.info(f"Reconnected {target}")
        await self._publish(record)
        return True

    async def test_connection(self, connection_id: Optional[str] = None) -> bool:
        target = connection_id or self._current_id
        if target is None or target not in self._adapters:
            return False
        try:
            return await self._adapters[target].test_connection()
        except Exception as e:
            logger.warning(f"Connection test failed for {target}: {e}")
            return False

    def get_connection_list(self) -> List[Dict[str, Any]]:
        connections = []
        for connection_id, record in self._records.items():
            item = record.to_dict()
            item["current"] = connection_id == self._current_id
            connections.append(item)
        return connections

    def get_connection_stats(self) -> Dict[str, Any]:
        active = sum(1 for record in self._records.values() if record.status == ConnectionStatus.CONNECTED)
        return {
            "total": len(self._adapters),
            "active": active,
            "current": self._current_id,
            "connections": self.get_connection_list(),
        }

    def get_pool_status(self) -> Dict[str, int]:
        totals = {"total": 0, "active": 0, "idle": 0, "max": 0}
        for adapter in self._adapters.values():
            status = adapter.get_pool_status()
            for key in totals:
                totals[key] += int(status.get(key, 0))
        return totals

    async def _publish(self, record: ConnectionRecord, error: Optional[str] = None) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(ConnectionEvent(
            connection_id=record.connection_id,
            db_type=record.db_type.value,
            status=record.status.value,
            error_message=error,
        ))
