import logging
import re
from typing import Any, Dict, Iterator, Optional, Tuple

from sqlgateway.database.adapters.base import DatabaseAdapter
from sqlgateway.database.models import DatabaseType, QueryOptions, TableInfo
from sqlgateway.exceptions import SchemaValidationError

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

_NAMED_PLACEHOLDER = re.compile(r"@param(\d+)\b|\?")

TABLES_QUERY = """
    SELECT
        t.TABLE_NAME AS name,
        t.TABLE_SCHEMA AS table_schema,
        t.TABLE_TYPE AS table_type,
        CAST(ISNULL(OBJECTPROPERTY(
            OBJECT_ID(QUOTENAME(t.TABLE_SCHEMA) + '.' + QUOTENAME(t.TABLE_NAME)), 'IsMSShipped'
        ), 0) AS INT) AS is_system
    FROM INFORMATION_SCHEMA.TABLES t
    WHERE t.TABLE_TYPE IN ('BASE TABLE', 'VIEW')
      {system_filter}
    ORDER BY t.TABLE_SCHEMA, t.TABLE_NAME
"""

COLUMNS_QUERY = """
    SELECT
        c.COLUMN_NAME AS name,
        c.DATA_TYPE AS data_type,
        c.CHARACTER_MAXIMUM_LENGTH AS max_length,
        c.NUMERIC_PRECISION AS precision,
        c.NUMERIC_SCALE AS scale,
        c.IS_NULLABLE AS is_nullable,
        c.COLUMN_DEFAULT AS default_value,
        c.ORDINAL_POSITION AS ordinal_position,
        COLUMNPROPERTY(OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)),
                       c.COLUMN_NAME, 'IsIdentity') AS is_identity,
        CAST(ep.value AS NVARCHAR(4000)) AS comment
    FROM INFORMATION_SCHEMA.COLUMNS c
    LEFT JOIN sys.extended_properties ep
      ON ep.major_id = OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME))
     AND ep.minor_id = c.ORDINAL_POSITION
     AND ep.name = 'MS_Description'
    WHERE c.TABLE_NAME = :table_name
      {schema_filter}
    ORDER BY c.ORDINAL_POSITION
"""

PRIMARY_KEYS_QUERY = """
    SELECT kcu.COLUMN_NAME AS name
    FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
    JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu
      ON tc.CONSTRAINT_NAME = kcu.CONSTRAINT_NAME
     AND tc.TABLE_SCHEMA = kcu.TABLE_SCHEMA
    WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
      AND tc.TABLE_NAME = :table_name
      {schema_filter}
    ORDER BY kcu.ORDINAL_POSITION
"""

FOREIGN_KEYS_QUERY = """
    SELECT
        fk.name AS constraint_name,
        pc.name AS column_name,
        rt.name AS referenced_table,
        rc.name AS referenced_column,
        fk.delete_referential_action_desc AS delete_rule,
        fk.update_referential_action_desc AS update_rule
    FROM sys.foreign_keys fk
    JOIN sys.foreign_key_columns fkc ON fkc.constraint_object_id = fk.object_id
    JOIN sys.columns pc ON pc.object_id = fkc.parent_object_id AND pc.column_id = fkc.parent_column_id
    JOIN sys.tables rt ON rt.object_id = fkc.referenced_object_id
    JOIN sys.columns rc ON rc.object_id = fkc.referenced_object_id AND rc.column_id = fkc.referenced_column_id
    WHERE fk.parent_object_id = OBJECT_ID(:qualified_name)
"""

CHECK_CONSTRAINTS_QUERY = """
    SELECT cc.name AS name, cc.definition AS definition
    FROM sys.check_constraints cc
    WHERE cc.parent_object_id = OBJECT_ID(:qualified_name)
"""

INDEXES_QUERY = """
    SELECT
        i.name AS name,
        i.type_desc AS index_type,
        i.is_unique AS is_unique,
        i.is_primary_key AS is_primary,
        col.name AS column_name
    FROM sys.indexes i
    JOIN sys.index_columns ic ON ic.object_id = i.object_id AND ic.index_id = i.index_id
    JOIN sys.columns col ON col.object_id = ic.object_id AND col.column_id = ic.column_id
    WHERE i.object_id = OBJECT_ID(:qualified_name)
      AND i.type > 0
    ORDER BY i.name, ic.key_ordinal
"""

STATISTICS_QUERY = """
    SELECT
        SUM(CASE WHEN p.index_id IN (0, 1) THEN p.rows ELSE 0 END) AS row_count,
        SUM(a.total_pages) * 8 AS size_kb
    FROM sys.partitions p
    JOIN sys.allocation_units a ON p.partition_id = a.container_id
    WHERE p.object_id = OBJECT_ID(:qualified_name)
"""

ROUTINES_QUERY = """
    SELECT ROUTINE_NAME AS name, ROUTINE_TYPE AS routine_type
    FROM INFORMATION_SCHEMA.ROUTINES
    WHERE ROUTINE_SCHEMA NOT IN ('sys', 'INFORMATION_SCHEMA')
    ORDER BY ROUTINE_NAME
"""


class MSSQLAdapter(DatabaseAdapter):
    db_type = DatabaseType.MSSQL
    drivername = "mssql+aioodbc"
    display_name = "MSSQL"
    positional_prefix = "param"
    system_schemas = ("sys", "INFORMATION_SCHEMA")
    default_schema = "dbo"

    def _url_query(self) -> Dict[str, str]:
        return {
            "driver": self.config.options.get("odbc_driver", DEFAULT_ODBC_DRIVER),
            "Encrypt": "yes" if self.config.encrypt else "no",
            "TrustServerCertificate": "yes" if self.config.trust_server_certificate else "no",
        }

    def _connect_args(self) -> Dict[str, Any]:
        return {"timeout": max(1, int(self.config.connect_timeout))}

    def _rewrite_placeholders(self, segment: str, counter: Iterator[int]) -> str:
        def replace(match):
            if match.group(1) is not None:
                return f":{self.positional_prefix}{match.group(1)}"
            return f":{self.positional_prefix}{next(counter)}"

        return _NAMED_PLACEHOLDER.sub(replace, segment)

    def _tables_query(self, include_system: bool) -> str:
        if include_system:
            return TABLES_QUERY.format(system_filter="")
        return TABLES_QUERY.format(
            system_filter=(
                "AND t.TABLE_SCHEMA NOT IN ('sys', 'INFORMATION_SCHEMA') "
                "AND ISNULL(OBJECTPROPERTY(OBJECT_ID(QUOTENAME(t.TABLE_SCHEMA) + '.' "
                "+ QUOTENAME(t.TABLE_NAME)), 'IsMSShipped'), 0) = 0"
            )
        )

    async def get_table_info(self, table_name: str) -> TableInfo:
        schema, table = self.split_table_name(table_name)
        scoped = {"table_name": table, "schema": schema}
        by_object = {"qualified_name": f"{schema}.{table}"}

        column_rows = await self._fetch(
            COLUMNS_QUERY.format(schema_filter=_schema_filter("c", schema)), scoped, "table", table_name
        )
        if not column_rows:
            raise SchemaValidationError("table", table_name, "not found")

        primary_key_rows = await self._fetch(
            PRIMARY_KEYS_QUERY.format(schema_filter=_schema_filter("tc", schema)), scoped, "table", table_name
        )
        primary_keys = [row["name"] for row in primary_key_rows]
        foreign_key_rows = await self._fetch(FOREIGN_KEYS_QUERY, by_object, "table", table_name)
        check_rows = await self._fetch(CHECK_CONSTRAINTS_QUERY, by_object, "table", table_name)
        index_rows = await self._fetch(INDEXES_QUERY, by_object, "table", table_name)
        row_count, size_kb = await self._table_statistics(schema, table)

        return TableInfo(
            name=table,
            schema=schema,
            columns=self._build_columns(column_rows, primary_keys),
            primary_keys=primary_keys,
            foreign_keys=self._build_foreign_keys(foreign_key_rows),
            indexes=self._build_indexes(index_rows),
            check_constraints=self._build_check_constraints(check_rows),
            row_count=row_count,
            size_kb=size_kb,
        )

    async def _table_statistics(self, schema: Optional[str], table: str) -> Tuple[Optional[int], Optional[float]]:
        qualified_name = f"{schema or self.default_schema}.{table}"
        result = await self.execute_query(
            STATISTICS_QUERY, QueryOptions(parameters={"qualified_name": qualified_name})
        )
        if not result.success or not result.rows:
            logger.debug(f"No statistics for {qualified_name}: {result.error}")
            return 0, 0.0
        row = result.rows[0]
        return int(row["row_count"] or 0), float(row["size_kb"] or 0)

    def _routines_query(self) -> Optional[str]:
        return ROUTINES_QUERY


def _schema_filter(alias: str, schema: Optional[str]) -> str:
    return f"AND {alias}.TABLE_SCHEMA = :schema" if schema else ""
