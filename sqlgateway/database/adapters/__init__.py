from typing import Dict, Optional, Type, Union

from sqlgateway.database.adapters.base import DatabaseAdapter, EngineFactory
from sqlgateway.database.adapters.mssql import MSSQLAdapter
from sqlgateway.database.adapters.mysql import MySQLAdapter
from sqlgateway.database.adapters.postgresql import PostgreSQLAdapter
from sqlgateway.database.models import DatabaseConfig, DatabaseType

ADAPTER_CLASSES: Dict[DatabaseType, Type[DatabaseAdapter]] = {
    DatabaseType.MSSQL: MSSQLAdapter,
    DatabaseType.MYSQL: MySQLAdapter,
    DatabaseType.POSTGRESQL: PostgreSQLAdapter,
}


def create_adapter(db_type: Union[str, DatabaseType], config: DatabaseConfig,
                   engine_factory: Optional[EngineFactory] = None) -> DatabaseAdapter:
    adapter_class = ADAPTER_CLASSES[DatabaseType.parse(db_type)]
    return adapter_class(config, engine_factory=engine_factory)


__all__ = [
    "ADAPTER_CLASSES",
    "DatabaseAdapter",
    "EngineFactory",
    "MSSQLAdapter",
    "MySQLAdapter",
    "PostgreSQLAdapter",
    "create_adapter",
]
