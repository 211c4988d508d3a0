import asyncio
import dataclasses
import itertools
import logging
import re
import ssl
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction, create_async_engine

from sqlgateway.database.models import (
    CheckConstraintInfo,
    ColumnInfo,
    DatabaseConfig,
    DatabaseType,
    ForeignKeyInfo,
    IndexInfo,
    Parameters,
    QueryMetadata,
    QueryOptions,
    QueryResult,
    ReferentialAction,
    SchemaInfo,
    TableInfo,
    TableType,
)
from sqlgateway.exceptions import DatabaseConnectionError, QueryExecutionError, SchemaValidationError

logger = logging.getLogger(__name__)

EngineFactory = Callable[..., AsyncEngine]

# single- or double-quoted literal, doubled quotes inside are kept
_QUOTED_SEGMENT = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")")
_QMARK = re.compile(r"\?")


class DatabaseAdapter(ABC):
    db_type: DatabaseType
    drivername: str
    display_name: str
    positional_prefix = "p"
    system_schemas: Tuple[str, ...] = ()
    default_schema: Optional[str] = None

    def __init__(self, config: DatabaseConfig, engine_factory: Optional[EngineFactory] = None):
        self.config = config
        self._engine_factory = engine_factory or create_async_engine
        self._engine: Optional[AsyncEngine] = None
        self._open_transactions: Set["AdapterTransaction"] = set()

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def in_transaction(self) -> bool:
        return bool(self._open_transactions)

    def get_type(self) -> DatabaseType:
        return self.db_type

    def get_connection_url(self) -> URL:
        return URL.create(
            drivername=self.drivername,
            username=self.config.username,
            password=self.config.password or None,
            host=self.config.host,
            port=self.config.resolve_port(self.db_type),
            database=self.config.database,
            query=self._url_query(),
        )

    def _url_query(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def _connect_args(self) -> Dict[str, Any]:
        pass

    def _engine_options(self) -> Dict[str, Any]:
        options = {
            "pool_size": self.config.pool_max,
            "max_overflow": 0,
            "pool_timeout": self.config.connect_timeout,
            "pool_pre_ping": True,
            "connect_args": self._connect_args(),
        }
        if self.config.pool_idle_timeout_ms > 0:
            options["pool_recycle"] = max(1, int(self.config.pool_idle_timeout))
        return options

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.config.trust_server_certificate:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def connect(self) -> None:
        if self._engine is not None:
            return

        engine = None
        try:
            engine = self._engine_factory(self.get_connection_url(), **self._engine_options())
            await asyncio.wait_for(self._verify(engine), timeout=self.config.connect_timeout)
        except Exception as e:
            if engine is not None:
                try:
                    await engine.dispose()
                except Exception as dispose_error:
                    logger.warning(f"Failed to dispose engine after connect error: {dispose_error}")
            raise DatabaseConnectionError(
                f"{self.display_name} connection failed: {_describe(e)}"
            ) from e

        self._engine = engine
        logger.info(
            f"Connected to {self.display_name} at {self.config.host}:"
            f"{self.config.resolve_port(self.db_type)}/{self.config.database}"
        )

    async def _verify(self, engine: AsyncEngine) -> None:
        # the pool has no floor of its own: open pool_min connections now and
        # hand them back so they stay idle in it
        connections: List[AsyncConnection] = []
        try:
            for _ in range(max(1, self.config.pool_min)):
                connections.append(await engine.connect())
            await connections[0].execute(text("SELECT 1"))
        finally:
            for conn in connections:
                await conn.close()

    async def disconnect(self) -> None:
        if self._engine is None:
            return

        for transaction in list(self._open_transactions):
            try:
                await transaction.rollback()
            except Exception as e:
                logger.warning(f"Rollback during disconnect failed: {e}")

        engine, self._engine = self._engine, None
        try:
            await engine.dispose()
        except Exception as e:
            raise DatabaseConnectionError(
                f"{self.display_name} disconnection failed: {_describe(e)}"
            ) from e
        logger.info(f"Disconnected from {self.display_name} {self.config.database}")

    def _ensure_connected(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseConnectionError("Not connected to database.")
        return self._engine

    async def execute_query(self, query: str, options: Optional[QueryOptions] = None) -> QueryResult:
        return await self._execute(query, options)

    async def _execute(self, query: str, options: Optional[QueryOptions] = None,
                       conn: Optional[AsyncConnection] = None) -> QueryResult:
        self._ensure_connected()
        options = options or QueryOptions()
        statement, params = self.bind_parameters(query, options.parameters)
        timeout_ms = options.timeout_ms or self.config.request_timeout_ms

        started_at = datetime.now()
        start = time.perf_counter()
        rows: List[Dict[str, Any]] = []
        rows_affected = 0
        error = None

        try:
            rows, rows_affected = await asyncio.wait_for(
                self._run(statement, params, conn), timeout=timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            error = f"Query timeout: exceeded {timeout_ms} ms"
        except (SQLAlchemyError, OSError) as e:
            error = _describe(e)

        execution_time = round((time.perf_counter() - start) * 1000, 3)
        metadata = QueryMetadata(
            query=query,
            parameters=options.parameters,
            started_at=started_at,
            finished_at=datetime.now(),
            db_type=self.db_type.value,
        )

        if error is not None:
            logger.debug(f"{self.display_name} query failed after {execution_time} ms: {error}")
            return QueryResult(
                success=False,
                rows_affected=0,
                execution_time=execution_time,
                error=error,
                metadata=metadata,
            )

        return QueryResult(
            success=True,
            rows=rows,
            rows_affected=rows_affected,
            execution_time=execution_time,
            metadata=metadata,
        )

    async def _run(self, statement: str, params: Dict[str, Any],
                   conn: Optional[AsyncConnection] = None) -> Tuple[List[Dict[str, Any]], int]:
        if conn is not None:
            return await self._execute_on(conn, statement, params)

        async with self._ensure_connected().begin() as conn:
            return await self._execute_on(conn, statement, params)

    async def _execute_on(self, conn: AsyncConnection, statement: str,
                          params: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], int]:
        result = await conn.execute(text(statement), params)
        if result.returns_rows:
            rows = [dict(row) for row in result.mappings().all()]
            return rows, len(rows)
        return [], max(result.rowcount or 0, 0)

    def bind_parameters(self, query: str, parameters: Parameters) -> Tuple[str, Dict[str, Any]]:
        if isinstance(parameters, (str, bytes)):
            raise TypeError("parameters must be a sequence or a mapping")

        positional = parameters is not None and not isinstance(parameters, Mapping)
        counter = itertools.count()
        rendered = []

        for index, part in enumerate(_QUOTED_SEGMENT.split(query)):
            if index % 2:
                # colons inside literals are not bind markers
                rendered.append(part.replace(":", "\\:"))
            elif positional:
                rendered.append(self._rewrite_placeholders(part, counter))
            else:
                rendered.append(part)

        if positional:
            params = {f"{self.positional_prefix}{i}": value for i, value in enumerate(parameters)}
        else:
            params = dict(parameters or {})
        return "".join(rendered), params

    def _rewrite_placeholders(self, segment: str, counter: Iterator[int]) -> str:
        return _QMARK.sub(lambda m: f":{self.positional_prefix}{next(counter)}", segment)

    async def begin_transaction(self) -> "AdapterTransaction":
        """Pin a pooled connection and open a transaction on it.

        Only statements sent through the returned handle run on the pinned
        connection; ``execute_query`` on the adapter keeps using the pool.
        """
        engine = self._ensure_connected()
        conn = await engine.connect()
        try:
            transaction = await conn.begin()
        except Exception:
            await conn.close()
            raise

        handle = AdapterTransaction(self, conn, transaction)
        self._open_transactions.add(handle)
        return handle

    async def commit_transaction(self, transaction: "AdapterTransaction") -> None:
        await transaction.commit()

    async def rollback_transaction(self, transaction: "AdapterTransaction") -> None:
        await transaction.rollback()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["AdapterTransaction"]:
        handle = await self.begin_transaction()
        try:
            yield handle
        except BaseException:
            if handle.is_active:
                await handle.rollback()
            raise
        if handle.is_active:
            await handle.commit()

    async def test_connection(self) -> bool:
        if self._engine is None:
            return False
        try:
            result = await self.execute_query("SELECT 1 AS test")
        except Exception as e:
            logger.warning(f"{self.display_name} liveness probe failed: {e}")
            return False
        return result.success and bool(result.rows) and result.rows[0].get("test") == 1

    def get_pool_status(self) -> Dict[str, int]:
        if self._engine is None:
            return {"total": 0, "active": 0, "idle": 0, "max": self.config.pool_max}

        pool = self._engine.pool
        active = pool.checkedout() if hasattr(pool, "checkedout") else 0
        idle = pool.checkedin() if hasattr(pool, "checkedin") else 0
        return {"total": active + idle, "active": active, "idle": idle, "max": self.config.pool_max}

    def split_table_name(self, table_name: str) -> Tuple[Optional[str], str]:
        if "." in table_name:
            schema, table = table_name.split(".", 1)
            return _unquote(schema), _unquote(table)
        return self.default_schema, _unquote(table_name)

    async def _fetch(self, query: str, params: Dict[str, Any], object_type: str,
                     object_name: str) -> List[Dict[str, Any]]:
        result = await self.execute_query(query, QueryOptions(parameters=params))
        if not result.success:
            raise SchemaValidationError(object_type, object_name, f"inaccessible: {result.error}")
        return result.rows

    @abstractmethod
    def _tables_query(self, include_system: bool) -> str:
        pass

    def _table_type(self, row: Mapping[str, Any]) -> TableType:
        if row.get("table_schema") in self.system_schemas or row.get("is_system"):
            return TableType.SYSTEM_TABLE
        if str(row.get("table_type", "")).upper() == "VIEW":
            return TableType.VIEW
        return TableType.TABLE

    async def get_tables(self, include_system: bool = False) -> List[TableInfo]:
        rows = await self._fetch(self._tables_query(include_system), {}, "database", self.config.database)
        return [
            TableInfo(name=row["name"], schema=row.get("table_schema"), type=self._table_type(row))
            for row in rows
        ]

    @abstractmethod
    async def get_table_info(self, table_name: str) -> TableInfo:
        pass

    def _is_identity(self, row: Mapping[str, Any]) -> bool:
        return bool(row.get("is_identity"))

    def _build_columns(self, rows: List[Dict[str, Any]], primary_keys: List[str]) -> List[ColumnInfo]:
        keys = set(primary_keys)
        return [
            ColumnInfo(
                name=row["name"],
                data_type=row["data_type"],
                ordinal_position=int(row["ordinal_position"]),
                is_nullable=str(row.get("is_nullable", "")).upper() == "YES",
                is_identity=self._is_identity(row),
                is_primary_key=row["name"] in keys,
                max_length=_optional_int(row.get("max_length")),
                precision=_optional_int(row.get("precision")),
                scale=_optional_int(row.get("scale")),
                default_value=_optional_str(row.get("default_value")),
                comment=_optional_str(row.get("comment")),
            )
            for row in rows
        ]

    def _build_foreign_keys(self, rows: List[Dict[str, Any]]) -> List[ForeignKeyInfo]:
        return [
            ForeignKeyInfo(
                name=row.get("constraint_name") or row["column_name"],
                column=row["column_name"],
                referenced_table=row.get("referenced_table"),
                referenced_column=row.get("referenced_column"),
                on_delete=ReferentialAction.parse(row.get("delete_rule")),
                on_update=ReferentialAction.parse(row.get("update_rule")),
            )
            for row in rows
        ]

    def _build_indexes(self, rows: List[Dict[str, Any]]) -> List[IndexInfo]:
        indexes: Dict[str, IndexInfo] = {}
        for row in rows:
            index = indexes.get(row["name"])
            if index is None:
                index = IndexInfo(
                    name=row["name"],
                    is_unique=_truthy(row.get("is_unique")),
                    is_primary=_truthy(row.get("is_primary")),
                    index_type=_optional_str(row.get("index_type")),
                )
                indexes[row["name"]] = index
            if row.get("column_name") and row["column_name"] not in index.columns:
                index.columns.append(row["column_name"])
        return list(indexes.values())

    def _build_check_constraints(self, rows: List[Dict[str, Any]]) -> List[CheckConstraintInfo]:
        return [CheckConstraintInfo(name=row["name"], definition=str(row["definition"])) for row in rows]

    async def _table_statistics(self, schema: Optional[str], table: str) -> Tuple[Optional[int], Optional[float]]:
        return None, None

    def _routines_query(self) -> Optional[str]:
        return None

    async def get_routines(self) -> Tuple[List[str], List[str]]:
        query = self._routines_query()
        if query is None:
            return [], []

        result = await self.execute_query(query)
        if not result.success:
            logger.warning(f"Could not list routines for {self.config.database}: {result.error}")
            return [], []

        functions = [row["name"] for row in result.rows if str(row["routine_type"]).upper() == "FUNCTION"]
        procedures = [row["name"] for row in result.rows if str(row["routine_type"]).upper() == "PROCEDURE"]
        return functions, procedures

    async def get_schema(self, include_details: bool = True, include_system: bool = False) -> SchemaInfo:
        tables = await self.get_tables(include_system=include_system)

        if include_details:
            detailed = []
            for table in tables:
                try:
                    info = await self.get_table_info(table.qualified_name)
                    table = dataclasses.replace(
                        table,
                        columns=info.columns,
                        primary_keys=info.primary_keys,
                        foreign_keys=info.foreign_keys,
                        indexes=info.indexes,
                        check_constraints=info.check_constraints,
                        row_count=info.row_count,
                        size_kb=info.size_kb,
                    )
                except Exception as e:
                    logger.error(f"Error fetching details for table {table.qualified_name}: {e}")
                detailed.append(table)
            tables = detailed

        functions, procedures = await self.get_routines()
        return SchemaInfo(
            name=self.config.database,
            tables=tables,
            views=[table for table in tables if table.type == TableType.VIEW],
            functions=functions,
            procedures=procedures,
        )

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "disconnected"
        return f"<{self.__class__.__name__} {self.config.host}/{self.config.database} {state}>"


class AdapterTransaction:
    def __init__(self, adapter: DatabaseAdapter, conn: AsyncConnection, transaction: AsyncTransaction):
        self.adapter = adapter
        self._conn: Optional[AsyncConnection] = conn
        self._transaction: Optional[AsyncTransaction] = transaction

    @property
    def is_active(self) -> bool:
        return self._conn is not None

    async def execute_query(self, query: str, options: Optional[QueryOptions] = None) -> QueryResult:
        if self._conn is None:
            raise QueryExecutionError("transaction", "Transaction is no longer active")
        return await self.adapter._execute(query, options, self._conn)

    async def commit(self) -> None:
        conn, transaction = self._release()
        try:
            await transaction.commit()
        finally:
            await conn.close()

    async def rollback(self) -> None:
        conn, transaction = self._release()
        try:
            await transaction.rollback()
        finally:
            await conn.close()

    def _release(self) -> Tuple[AsyncConnection, AsyncTransaction]:
        if self._conn is None or self._transaction is None:
            raise QueryExecutionError("transaction", "No transaction in progress")
        conn, transaction = self._conn, self._transaction
        self._conn = None
        self._transaction = None
        self.adapter._open_transactions.discard(self)
        return conn, transaction


def _describe(error: BaseException) -> str:
    original = getattr(error, "orig", None)
    if original is not None:
        return str(original)
    return str(error) or error.__class__.__name__


def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and (name[0], name[-1]) in (("[", "]"), ('"', '"'), ("`", "`")):
        return name[1:-1]
    return name


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().upper() in ("1", "YES", "TRUE", "Y")
    return bool(value)
