from typing import Any, Dict, List, Optional, Union

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from sqlgateway.database.models import (
    ColumnInfo,
    DatabaseConfig,
    DatabaseType,
    QueryOptions,
    QueryResult,
    SchemaInfo,
    TableInfo,
    TableType,
)
from sqlgateway.exceptions import DatabaseConnectionError, SchemaValidationError


def sqlite_engine_factory(url, **kwargs):
    return create_async_engine("sqlite+aiosqlite://")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Response = Union[QueryResult, Exception]


class FakeAdapter:
    def __init__(self, db_type: DatabaseType = DatabaseType.MSSQL, config: Optional[DatabaseConfig] = None):
        self.db_type = db_type
        self.config = config
        self.connected = False
        self.fail_connect = False
        self.fail_disconnect = False
        self.healthy = True
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.executed: List[tuple] = []
        self.responses: Dict[str, Response] = {}
        self.transaction_log: List[str] = []
        self.tables: List[TableInfo] = []
        self.calls: Dict[str, int] = {"get_tables": 0, "get_table_info": 0, "get_schema": 0}
        self.pool_status = {"total": 2, "active": 1, "idle": 1, "max": 10}

    @property
    def is_connected(self) -> bool:
        return self.connected

    def get_type(self) -> DatabaseType:
        return self.db_type

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise DatabaseConnectionError("connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.fail_disconnect:
            raise DatabaseConnectionError("disconnect failed")
        self.connected = False

    async def execute_query(self, query: str, options: Optional[QueryOptions] = None) -> QueryResult:
        parameters = options.parameters if options else None
        self.executed.append((query, parameters))
        response = self.responses.get(query)
        if isinstance(response, Exception):
            raise response
        if response is not None:
            return response
        return QueryResult(success=True, rows=[{"test": 1}], rows_affected=1, execution_time=1.0)

    async def begin_transaction(self) -> "FakeTransaction":
        self.transaction_log.append("begin")
        return FakeTransaction(self)

    async def test_connection(self) -> bool:
        return self.connected and self.healthy

    def get_pool_status(self) -> Dict[str, int]:
        return dict(self.pool_status)

    async def get_tables(self, include_system: bool = False) -> List[TableInfo]:
        self.calls["get_tables"] += 1
        return [TableInfo(name=table.name, schema=table.schema, type=table.type) for table in self.tables]

    async def get_table_info(self, table_name: str) -> TableInfo:
        self.calls["get_table_info"] += 1
        for table in self.tables:
            if table_name in (table.name, table.qualified_name):
                return table
        raise SchemaValidationError("table", table_name, "not found")

    async def get_schema(self, include_details: bool = True, include_system: bool = False) -> SchemaInfo:
        self.calls["get_schema"] += 1
        return SchemaInfo(
            name=self.config.database if self.config else "testdb",
            tables=list(self.tables),
            views=[table for table in self.tables if table.type == TableType.VIEW],
        )


class FakeTransaction:
    def __init__(self, adapter: FakeAdapter):
        self.adapter = adapter

    async def execute_query(self, query: str, options: Optional[QueryOptions] = None) -> QueryResult:
        return await self.adapter.execute_query(query, options)

    async def commit(self) -> None:
        self.adapter.transaction_log.append("commit")

    async def rollback(self) -> None:
        self.adapter.transaction_log.append("rollback")


class FakeAdapterFactory:
    def __init__(self):
        self.created: List[FakeAdapter] = []
        self.fail_connect = False
        self.tables: List[TableInfo] = []

    def __call__(self, db_type: DatabaseType, config: DatabaseConfig) -> FakeAdapter:
        adapter = FakeAdapter(db_type, config)
        adapter.fail_connect = self.fail_connect
        adapter.tables = list(self.tables)
        self.created.append(adapter)
        return adapter


def make_table(name: str, schema: str = "dbo", columns: int = 2, table_type: TableType = TableType.TABLE,
               **kwargs: Any) -> TableInfo:
    return TableInfo(
        name=name,
        schema=schema,
        type=table_type,
        columns=[
            ColumnInfo(name=f"col{i}", data_type="int", ordinal_position=i + 1)
            for i in range(columns)
        ],
        **kwargs,
    )


@pytest.fixture
def db_config():
    return DatabaseConfig(host="localhost", database="testdb", username="sa", password="secret")


@pytest.fixture
def adapter_factory():
    return FakeAdapterFactory()


@pytest.fixture
def clock():
    return FakeClock()
