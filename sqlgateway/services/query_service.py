import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from sqlgateway.database.connection_manager import ConnectionManager
from sqlgateway.database.models import Parameters, QueryOptions, QueryResult, to_serializable
from sqlgateway.events import EventBus, QueryExecutedEvent, QueryFailedEvent, SchemaChangedEvent
from sqlgateway.exceptions import GatewayError, QueryExecutionError

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 1000
QUERY_PREVIEW_LENGTH = 100

_DDL_STATEMENT = re.compile(
    r"^\s*(CREATE|ALTER|DROP)\s+(?:OR\s+(?:REPLACE|ALTER)\s+)?(?:UNIQUE\s+)?(?:(?:NON)?CLUSTERED\s+)?"
    r"(TABLE|VIEW|INDEX|PROCEDURE|PROC|FUNCTION|TRIGGER)\s+(?:IF\s+(?:NOT\s+)?EXISTS\s+)?([^\s(;]+)",
    re.IGNORECASE,
)
_QUOTE_CHARS = re.compile(r'[\[\]"`]')

Statement = Union[str, Tuple[str, Parameters], Dict[str, Any]]


@dataclass(frozen=True)
class QueryHistoryEntry:
    query_id: str
    query: str
    timestamp: datetime
    execution_time: float
    success: bool
    error: Optional[str] = None

    def preview(self) -> Dict[str, Any]:
        query = self.query
        if len(query) > QUERY_PREVIEW_LENGTH:
            query = query[:QUERY_PREVIEW_LENGTH] + "..."
        return {
            "query": query,
            "execution_time": self.execution_time,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class QueryStats:
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    success_rate: float = 0.0
    average_execution_time: float = 0.0
    slowest_query: Optional[Dict[str, Any]] = None
    fastest_query: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(self)


@dataclass
class BatchResult:
    results: List[QueryResult] = field(default_factory=list)
    total_time: float = 0.0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "total_time": self.total_time,
            "results": [result.to_dict() for result in self.results],
        }


class QueryExecutionService:
    def __init__(self, connection_manager: ConnectionManager, event_bus: Optional[EventBus] = None,
                 history_size: int = DEFAULT_HISTORY_SIZE):
        self.connection_manager = connection_manager
        self.event_bus = event_bus
        self._history: Deque[QueryHistoryEntry] = deque(maxlen=history_size)

    async def execute_query(self, query: str, options: Optional[QueryOptions] = None) -> QueryResult:
        _, result = await self.execute_with_id(query, options)
        return result

    async def execute_with_id(self, query: str, options: Optional[QueryOptions] = None) -> Tuple[str, QueryResult]:
        return await self._execute(query, options)

    async def _execute(self, query: str, options: Optional[QueryOptions] = None,
                       runner: Any = None) -> Tuple[str, QueryResult]:
        query_id = uuid4().hex
        timestamp = datetime.now()
        start = time.perf_counter()

        try:
            if runner is None:
                runner = self.connection_manager.get_current_connection()
            result = await runner.execute_query(query, options)
        except GatewayError as e:
            await self._record_failure(query_id, query, timestamp, start, str(e))
            raise
        except Exception as e:
            await self._record_failure(query_id, query, timestamp, start, str(e))
            raise QueryExecutionError(query_id, e) from e

        self._history.append(QueryHistoryEntry(
            query_id=query_id,
            query=query,
            timestamp=timestamp,
            execution_time=result.execution_time,
            success=result.success,
            error=result.error,
        ))

        if result.success:
            logger.debug(f"Query {query_id} succeeded in {result.execution_time} ms")
            await self._publish(QueryExecutedEvent(
                query_id=query_id,
                sql=query,
                execution_time=result.execution_time,
                row_count=result.rows_affected,
            ))
            await self._detect_schema_change(query)
        else:
            logger.warning(f"Query {query_id} failed: {result.error}")
            await self._publish(QueryFailedEvent(
                query_id=query_id,
                sql=query,
                execution_time=result.execution_time,
                error_message=result.error or "unknown error",
            ))

        return query_id, result

    async def _record_failure(self, query_id: str, query: str, timestamp: datetime,
                              start: float, error: str) -> None:
        execution_time = round((time.perf_counter() - start) * 1000, 3)
        self._history.append(QueryHistoryEntry(
            query_id=query_id,
            query=query,
            timestamp=timestamp,
            execution_time=execution_time,
            success=False,
            error=error,
        ))
        logger.error(f"Query {query_id} raised: {error}")
        await self._publish(QueryFailedEvent(
            query_id=query_id,
            sql=query,
            execution_time=execution_time,
            error_message=error,
        ))

    async def _detect_schema_change(self, query: str) -> None:
        match = _DDL_STATEMENT.match(query)
        if not match:
            return
        change_type, object_type, object_name = match.groups()
        object_type = "procedure" if object_type.upper() == "PROC" else object_type.lower()
        await self._publish(SchemaChangedEvent(
            object_type=object_type,
            object_name=_QUOTE_CHARS.sub("", object_name),
            change_type=change_type.upper(),
            sql=query,
        ))

    async def execute_batch(self, queries: Sequence[str]) -> BatchResult:
        batch = BatchResult()
        start = time.perf_counter()

        for query in queries:
            try:
                result = await self.execute_query(query)
            except GatewayError as e:
                result = QueryResult(success=False, error=e.message)
            batch.results.append(result)

        batch.total_time = round((time.perf_counter() - start) * 1000, 3)
        logger.info(f"Batch finished: {batch.successful}/{batch.total} succeeded in {batch.total_time} ms")
        return batch

    async def execute_in_transaction(self, statements: Sequence[Statement]) -> List[QueryResult]:
        adapter = self.connection_manager.get_current_connection()
        try:
            transaction = await adapter.begin_transaction()
        except GatewayError:
            raise
        except Exception as e:
            raise QueryExecutionError("begin", e) from e

        results = []
        try:
            for statement in statements:
                query, parameters = _unpack(statement)
                query_id, result = await self._execute(query, QueryOptions(parameters=parameters), transaction)
                if not result.success:
                    raise QueryExecutionError(query_id, result.error or "unknown error")
                results.append(result)
        except Exception as e:
            logger.error(f"Transaction failed after {len(results)} statement(s), rolling back: {e}")
            try:
                await transaction.rollback()
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            raise

        try:
            await transaction.commit()
        except GatewayError:
            raise
        except Exception as e:
            raise QueryExecutionError("commit", e) from e

        logger.info(f"Transaction committed ({len(results)} statement(s))")
        return results

    def get_query_history(self, limit: Optional[int] = None) -> List[QueryHistoryEntry]:
        entries = list(reversed(self._history))
        return entries[:limit] if limit is not None else entries

    def get_query_stats(self) -> QueryStats:
        total = len(self._history)
        if total == 0:
            return QueryStats()

        successful = sum(1 for entry in self._history if entry.success)
        slowest = fastest = None
        total_time = 0.0

        for entry in self._history:
            total_time += entry.execution_time
            if slowest is None or entry.execution_time > slowest.execution_time:
                slowest = entry
            if fastest is None or entry.execution_time < fastest.execution_time:
                fastest = entry

        return QueryStats(
            total_queries=total,
            successful_queries=successful,
            failed_queries=total - successful,
            success_rate=round(successful / total * 100, 2),
            average_execution_time=round(total_time / total, 3),
            slowest_query=slowest.preview(),
            fastest_query=fastest.preview(),
        )

    def clear_history(self) -> int:
        count = len(self._history)
        self._history.clear()
        logger.info(f"Query history cleared ({count} entries)")
        return count

    async def _publish(self, event) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event)


def _unpack(statement: Statement) -> Tuple[str, Parameters]:
    if isinstance(statement, str):
        return statement, None
    if isinstance(statement, dict):
        return statement["query"], statement.get("parameters")
    query, parameters = statement
    return query, parameters
