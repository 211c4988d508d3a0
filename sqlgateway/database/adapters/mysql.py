import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlgateway.database.adapters.base import DatabaseAdapter
from sqlgateway.database.models import DatabaseType, QueryOptions, TableInfo
from sqlgateway.exceptions import SchemaValidationError

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ("mysql", "sys", "performance_schema", "information_schema")

TABLES_QUERY = """
    SELECT
        TABLE_NAME AS name,
        TABLE_SCHEMA AS table_schema,
        TABLE_TYPE AS table_type
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_TYPE IN ('BASE TABLE', 'VIEW', 'SYSTEM VIEW')
      AND {schema_filter}
    ORDER BY TABLE_SCHEMA, TABLE_NAME
"""

COLUMNS_QUERY = """
    SELECT
        COLUMN_NAME AS name,
        DATA_TYPE AS data_type,
        CHARACTER_MAXIMUM_LENGTH AS max_length,
        NUMERIC_PRECISION AS `precision`,
        NUMERIC_SCALE AS scale,
        IS_NULLABLE AS is_nullable,
        COLUMN_DEFAULT AS default_value,
        ORDINAL_POSITION AS ordinal_position,
        EXTRA AS extra,
        COLUMN_COMMENT AS comment
    FROM INFORMATION_SCHEMA.COLUMNS
    WHERE TABLE_SCHEMA = {schema}
      AND TABLE_NAME = :table_name
    ORDER BY ORDINAL_POSITION
"""

PRIMARY_KEYS_QUERY = """
    SELECT COLUMN_NAME AS name
    FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE
    WHERE TABLE_SCHEMA = {schema}
      AND TABLE_NAME = :table_name
      AND CONSTRAINT_NAME = 'PRIMARY'
    ORDER BY ORDINAL_POSITION
"""

FOREIGN_KEYS_QUERY = """
    SELECT
        k.CONSTRAINT_NAME AS constraint_name,
        k.COLUMN_NAME AS column_name,
        k.REFERENCED_TABLE_NAME AS referenced_table,
        k.REFERENCED_COLUMN_NAME AS referenced_column,
        r.DELETE_RULE AS delete_rule,
        r.UPDATE_RULE AS update_rule
    FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE k
    JOIN INFORMATION_SCHEMA.REFERENTIAL_CONSTRAINTS r
      ON r.CONSTRAINT_SCHEMA = k.CONSTRAINT_SCHEMA
     AND r.CONSTRAINT_NAME = k.CONSTRAINT_NAME
    WHERE k.TABLE_SCHEMA = {schema}
      AND k.TABLE_NAME = :table_name
      AND k.REFERENCED_TABLE_NAME IS NOT NULL
"""

INDEXES_QUERY = """
    SELECT
        INDEX_NAME AS name,
        COLUMN_NAME AS column_name,
        CASE WHEN NON_UNIQUE = 0 THEN 1 ELSE 0 END AS is_unique,
        INDEX_TYPE AS index_type
    FROM INFORMATION_SCHEMA.STATISTICS
    WHERE TABLE_SCHEMA = {schema}
      AND TABLE_NAME = :table_name
      AND INDEX_NAME != 'PRIMARY'
    ORDER BY INDEX_NAME, SEQ_IN_INDEX
"""

STATISTICS_QUERY = """
    SELECT
        TABLE_ROWS AS row_count,
        (DATA_LENGTH + INDEX_LENGTH) / 1024 AS size_kb
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_SCHEMA = {schema}
      AND TABLE_NAME = :table_name
"""

ROUTINES_QUERY = """
    SELECT ROUTINE_NAME AS name, ROUTINE_TYPE AS routine_type
    FROM INFORMATION_SCHEMA.ROUTINES
    WHERE ROUTINE_SCHEMA = DATABASE()
    ORDER BY ROUTINE_NAME
"""


class MySQLAdapter(DatabaseAdapter):
    db_type = DatabaseType.MYSQL
    drivername = "mysql+aiomysql"
    display_name = "MySQL"
    system_schemas = SYSTEM_SCHEMAS

    def _url_query(self) -> Dict[str, str]:
        return {"charset": self.config.options.get("charset", "utf8mb4")}

    def _connect_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {"connect_timeout": self.config.connect_timeout}
        if self.config.encrypt:
            args["ssl"] = self._ssl_context()
        return args

    def _tables_query(self, include_system: bool) -> str:
        if include_system:
            schemas = ", ".join(f"'{schema}'" for schema in SYSTEM_SCHEMAS)
            return TABLES_QUERY.format(schema_filter=f"(TABLE_SCHEMA = DATABASE() OR TABLE_SCHEMA IN ({schemas}))")
        return TABLES_QUERY.format(schema_filter="TABLE_SCHEMA = DATABASE()")

    def _is_identity(self, row: Mapping[str, Any]) -> bool:
        return "auto_increment" in str(row.get("extra") or "").lower()

    def _scoped(self, query: str, schema: Optional[str]) -> str:
        return query.format(schema=":schema" if schema else "DATABASE()")

    async def get_table_info(self, table_name: str) -> TableInfo:
        schema, table = self.split_table_name(table_name)
        params: Dict[str, Any] = {"table_name": table}
        if schema:
            params["schema"] = schema

        column_rows = await self._fetch(self._scoped(COLUMNS_QUERY, schema), params, "table", table_name)
        if not column_rows:
            raise SchemaValidationError("table", table_name, "not found")

        primary_key_rows = await self._fetch(self._scoped(PRIMARY_KEYS_QUERY, schema), params, "table", table_name)
        primary_keys = [row["name"] for row in primary_key_rows]
        foreign_key_rows = await self._fetch(self._scoped(FOREIGN_KEYS_QUERY, schema), params, "table", table_name)
        index_rows = await self._fetch(self._scoped(INDEXES_QUERY, schema), params, "table", table_name)
        row_count, size_kb = await self._table_statistics(schema, table)

        return TableInfo(
            name=table,
            schema=schema or self.config.database,
            columns=self._build_columns(column_rows, primary_keys),
            primary_keys=primary_keys,
            foreign_keys=self._build_foreign_keys(foreign_key_rows),
            indexes=self._build_indexes(index_rows),
            row_count=row_count,
            size_kb=size_kb,
        )

    async def _table_statistics(self, schema: Optional[str], table: str) -> Tuple[Optional[int], Optional[float]]:
        params: Dict[str, Any] = {"table_name": table}
        if schema:
            params["schema"] = schema
        result = await self.execute_query(self._scoped(STATISTICS_QUERY, schema), QueryOptions(parameters=params))
        if not result.success or not result.rows:
            logger.debug(f"No statistics for {table}: {result.error}")
            return None, None
        row = result.rows[0]
        return int(row["row_count"] or 0), float(row["size_kb"] or 0)

    def _routines_query(self) -> Optional[str]:
        return ROUTINES_QUERY
