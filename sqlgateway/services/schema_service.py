import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, TypeVar

from sqlgateway.database.connection_manager import ConnectionManager
from sqlgateway.database.models import SchemaInfo, TableInfo, TableType, to_serializable
from sqlgateway.events import EventBus, EventType, SchemaChangedEvent
from sqlgateway.exceptions import SchemaValidationError
from sqlgateway.utils.cache_manager import CacheStats, SchemaCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SchemaStatistics:
    database: str
    total_tables: int
    total_views: int
    total_procedures: int
    total_functions: int
    total_columns: int
    total_indexes: int
    total_foreign_keys: int
    average_columns_per_table: float
    largest_table: Optional[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(self)


class SchemaService:
    def __init__(self, connection_manager: ConnectionManager, cache: Optional[SchemaCache] = None,
                 event_bus: Optional[EventBus] = None):
        self.connection_manager = connection_manager
        self.cache = cache if cache is not None else SchemaCache()
        self.event_bus = event_bus
        if event_bus is not None:
            event_bus.subscribe(EventType.SCHEMA_CHANGED, self._on_schema_changed)

    def _key(self, kind: str, *parts: Any) -> tuple:
        return (kind, self.connection_manager.current_connection_id) + parts

    async def _cached(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Schema cache hit: {key}")
            return cached

        value = await loader()
        self.cache.set(key, value)
        return value

    async def get_schema(self, include_system: bool = False, include_details: bool = True) -> SchemaInfo:
        adapter = self.connection_manager.get_current_connection()
        return await self._cached(
            self._key("schema", include_system, include_details),
            lambda: adapter.get_schema(include_details=include_details, include_system=include_system),
        )

    async def list_tables(self, pattern: Optional[str] = None) -> List[TableInfo]:
        matcher = None
        if pattern:
            try:
                matcher = re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise SchemaValidationError("pattern", pattern, f"invalid pattern: {e}")

        adapter = self.connection_manager.get_current_connection()

        async def load() -> List[TableInfo]:
            tables = await adapter.get_tables()
            if matcher is None:
                return tables
            return [table for table in tables if matcher.search(table.name)]

        return await self._cached(self._key("tables", pattern or None), load)

    async def get_table_info(self, table_name: str) -> TableInfo:
        if not table_name or not table_name.strip():
            raise SchemaValidationError("table", table_name or "", "table name is required")

        adapter = self.connection_manager.get_current_connection()
        name = table_name.strip()
        return await self._cached(self._key("table", name), lambda: adapter.get_table_info(name))

    async def get_schema_statistics(self, include_system: bool = False) -> SchemaStatistics:
        async def load() -> SchemaStatistics:
            schema = await self.get_schema(include_system=include_system, include_details=True)
            return build_statistics(schema)

        return await self._cached(self._key("statistics", include_system), load)

    def clear_cache(self) -> int:
        return self.cache.clear()

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def _on_schema_changed(self, event: SchemaChangedEvent) -> None:
        logger.info(f"Schema changed ({event.get_summary()}), invalidating cached metadata")
        self.cache.clear()


def build_statistics(schema: SchemaInfo) -> SchemaStatistics:
    tables = [table for table in schema.tables if table.type != TableType.VIEW]
    total_columns = sum(len(table.columns) for table in tables)
    largest = max(tables, key=lambda table: len(table.columns), default=None)

    return SchemaStatistics(
        database=schema.name,
        total_tables=len(tables),
        total_views=len(schema.views),
        total_procedures=len(schema.procedures),
        total_functions=len(schema.functions),
        total_columns=total_columns,
        total_indexes=sum(len(table.indexes) for table in tables),
        total_foreign_keys=sum(len(table.foreign_keys) for table in tables),
        average_columns_per_table=round(total_columns / len(tables), 2) if tables else 0.0,
        largest_table=(
            {"name": largest.qualified_name, "column_count": len(largest.columns)} if largest else None
        ),
    )
