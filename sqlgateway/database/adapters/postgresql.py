import logging
import re
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from sqlgateway.database.adapters.base import DatabaseAdapter
from sqlgateway.database.models import DatabaseType, IndexInfo, QueryOptions, TableInfo
from sqlgateway.exceptions import SchemaValidationError

logger = logging.getLogger(__name__)

_DOLLAR_PLACEHOLDER = re.compile(r"\$(\d+)(::)?")
_INDEX_COLUMNS = re.compile(r"\((.*)\)")

TABLES_QUERY = """
    SELECT
        table_name AS name,
        table_schema AS table_schema,
        table_type AS table_type
    FROM information_schema.tables
    WHERE table_type IN ('BASE TABLE', 'VIEW')
      {schema_filter}
    ORDER BY table_schema, table_name
"""

COLUMNS_QUERY = """
    SELECT
        column_name AS name,
        data_type AS data_type,
        character_maximum_length AS max_length,
        numeric_precision AS precision,
        numeric_scale AS scale,
        is_nullable AS is_nullable,
        column_default AS default_value,
        ordinal_position AS ordinal_position,
        is_identity AS is_identity
    FROM information_schema.columns
    WHERE table_schema = :schema AND table_name = :table_name
    ORDER BY ordinal_position
"""

PRIMARY_KEYS_QUERY = """
    SELECT kcu.column_name AS name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
    WHERE tc.constraint_type = 'PRIMARY KEY'
      AND tc.table_schema = :schema
      AND tc.table_name = :table_name
    ORDER BY kcu.ordinal_position
"""

FOREIGN_KEYS_QUERY = """
    SELECT
        tc.constraint_name AS constraint_name,
        kcu.column_name AS column_name,
        ccu.table_name AS referenced_table,
        ccu.column_name AS referenced_column,
        rc.delete_rule AS delete_rule,
        rc.update_rule AS update_rule
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage ccu
      ON ccu.constraint_name = tc.constraint_name
     AND ccu.table_schema = tc.table_schema
    JOIN information_schema.referential_constraints rc
      ON rc.constraint_name = tc.constraint_name
     AND rc.constraint_schema = tc.table_schema
    WHERE tc.constraint_type = 'FOREIGN KEY'
      AND tc.table_schema = :schema
      AND tc.table_name = :table_name
"""

INDEXES_QUERY = """
    SELECT indexname AS name, indexdef AS definition
    FROM pg_indexes
    WHERE schemaname = :schema
      AND tablename = :table_name
      AND indexname NOT LIKE '%_pkey'
    ORDER BY indexname
"""

STATISTICS_QUERY = """
    SELECT
        c.reltuples::bigint AS row_count,
        pg_total_relation_size(c.oid) / 1024.0 AS size_kb
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = :schema AND c.relname = :table_name
"""

ROUTINES_QUERY = """
    SELECT routine_name AS name, routine_type AS routine_type
    FROM information_schema.routines
    WHERE routine_schema NOT IN ('pg_catalog', 'information_schema')
    ORDER BY routine_name
"""


class PostgreSQLAdapter(DatabaseAdapter):
    db_type = DatabaseType.POSTGRESQL
    drivername = "postgresql+asyncpg"
    display_name = "PostgreSQL"
    system_schemas = ("information_schema", "pg_catalog", "pg_toast")
    default_schema = "public"

    def _connect_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "timeout": self.config.connect_timeout,
            "command_timeout": self.config.request_timeout,
        }
        if self.config.encrypt:
            args["ssl"] = self._ssl_context()
        return args

    def _rewrite_placeholders(self, segment: str, counter: Iterator[int]) -> str:
        # a cast glued to the marker ($1::int) would read as a bind named "p"
        def replace(match):
            name = f":{self.positional_prefix}{int(match.group(1)) - 1}"
            return f"{name} ::" if match.group(2) else name

        return _DOLLAR_PLACEHOLDER.sub(replace, segment)

    def _tables_query(self, include_system: bool) -> str:
        if include_system:
            return TABLES_QUERY.format(schema_filter="")
        excluded = ", ".join(f"'{schema}'" for schema in self.system_schemas)
        return TABLES_QUERY.format(schema_filter=f"AND table_schema NOT IN ({excluded})")

    def _is_identity(self, row: Mapping[str, Any]) -> bool:
        if str(row.get("is_identity") or "").upper() == "YES":
            return True
        return "nextval" in str(row.get("default_value") or "")

    async def get_table_info(self, table_name: str) -> TableInfo:
        schema, table = self.split_table_name(table_name)
        params = {"schema": schema, "table_name": table}

        column_rows = await self._fetch(COLUMNS_QUERY, params, "table", table_name)
        if not column_rows:
            raise SchemaValidationError("table", table_name, "not found")

        primary_keys = [row["name"] for row in await self._fetch(PRIMARY_KEYS_QUERY, params, "table", table_name)]
        foreign_key_rows = await self._fetch(FOREIGN_KEYS_QUERY, params, "table", table_name)
        index_rows = await self._fetch(INDEXES_QUERY, params, "table", table_name)
        row_count, size_kb = await self._table_statistics(schema, table)

        return TableInfo(
            name=table,
            schema=schema,
            columns=self._build_columns(column_rows, primary_keys),
            primary_keys=primary_keys,
            foreign_keys=self._build_foreign_keys(foreign_key_rows),
            indexes=[self._parse_index(row) for row in index_rows],
            row_count=row_count,
            size_kb=size_kb,
        )

    def _parse_index(self, row: Mapping[str, Any]) -> IndexInfo:
        definition = str(row.get("definition") or "")
        match = _INDEX_COLUMNS.search(definition)
        columns = [column.strip().strip('"') for column in match.group(1).split(",")] if match else []
        index_type = None
        using = re.search(r"USING (\w+)", definition)
        if using:
            index_type = using.group(1)
        return IndexInfo(
            name=row["name"],
            columns=columns,
            is_unique="UNIQUE INDEX" in definition.upper(),
            index_type=index_type,
        )

    async def _table_statistics(self, schema: Optional[str], table: str) -> Tuple[Optional[int], Optional[float]]:
        result = await self.execute_query(
            STATISTICS_QUERY, QueryOptions(parameters={"schema": schema, "table_name": table})
        )
        if not result.success or not result.rows:
            logger.debug(f"No statistics for {schema}.{table}: {result.error}")
            return None, None
        row = result.rows[0]
        return max(int(row["row_count"] or 0), 0), float(row["size_kb"] or 0)

    def _routines_query(self) -> Optional[str]:
        return ROUTINES_QUERY
