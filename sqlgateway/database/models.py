import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlgateway.exceptions import ConfigurationError, DatabaseConnectionError


class DatabaseType(Enum):
    MSSQL = "mssql"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"

    @property
    def default_port(self) -> int:
        return _DEFAULT_PORTS[self]

    @classmethod
    def parse(cls, value: Union[str, "DatabaseType", None]) -> "DatabaseType":
        if isinstance(value, cls):
            return value
        if value is None or str(value).strip() == "":
            raise ConfigurationError("Database type is required")

        normalized = str(value).strip().lower()
        normalized = _TYPE_ALIASES.get(normalized, normalized)
        for member in cls:
            if member.value == normalized:
                return member
        raise DatabaseConnectionError(f"Unsupported database type: {value}")


_DEFAULT_PORTS = {
    DatabaseType.MSSQL: 1433,
    DatabaseType.MYSQL: 3306,
    DatabaseType.POSTGRESQL: 5432,
}

_TYPE_ALIASES = {
    "sqlserver": "mssql",
    "sql_server": "mssql",
    "mariadb": "mysql",
    "postgres": "postgresql",
    "pg": "postgresql",
}


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class TableType(Enum):
    TABLE = "table"
    VIEW = "view"
    SYSTEM_TABLE = "system_table"


class ReferentialAction(Enum):
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"
    NO_ACTION = "NO ACTION"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ReferentialAction":
        if not value:
            return cls.NO_ACTION
        normalized = str(value).strip().upper().replace("_", " ")
        for member in cls:
            if member.value == normalized:
                return member
        # RESTRICT behaves like NO ACTION on every supported backend
        return cls.NO_ACTION


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    database: str
    username: str
    password: str = ""
    port: Optional[int] = None
    encrypt: bool = False
    trust_server_certificate: bool = True
    connect_timeout_ms: int = 15000
    request_timeout_ms: int = 30000
    pool_min: int = 0
    pool_max: int = 10
    pool_idle_timeout_ms: int = 30000
    options: Mapping[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        missing = [name for name in ("host", "database", "username") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing required database settings: {', '.join(missing)}")
        if self.port is not None and not 0 < int(self.port) < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}")
        if self.pool_max < 1 or self.pool_min < 0 or self.pool_min > self.pool_max:
            raise ConfigurationError(
                f"Invalid pool bounds: min={self.pool_min}, max={self.pool_max}"
            )
        if self.connect_timeout_ms <= 0 or self.request_timeout_ms <= 0:
            raise ConfigurationError("Timeouts must be positive")

    def resolve_port(self, db_type: DatabaseType) -> int:
        return int(self.port) if self.port else db_type.default_port

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000.0

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def pool_idle_timeout(self) -> float:
        return self.pool_idle_timeout_ms / 1000.0

    def to_dict(self, include_password: bool = False) -> Dict[str, Any]:
        data = to_serializable(self)
        if not include_password:
            data["password"] = "***" if self.password else ""
        return data


@dataclass
class ConnectionRecord:
    connection_id: str
    db_type: DatabaseType
    config: DatabaseConfig
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    created_at: datetime = field(default_factory=datetime.now)
    last_used: Optional[datetime] = None
    error: Optional[str] = None

    def touch(self):
        self.last_used = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.connection_id,
            "type": self.db_type.value,
            "status": self.status.value,
            "host": self.config.host,
            "database": self.config.database,
            "created_at": self.created_at.isoformat(),
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "error": self.error,
        }


Parameters = Union[Sequence[Any], Mapping[str, Any], None]


@dataclass(frozen=True)
class QueryOptions:
    parameters: Parameters = None
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class QueryMetadata:
    query: str
    parameters: Parameters
    started_at: datetime
    finished_at: datetime
    db_type: Optional[str] = None


@dataclass(frozen=True)
class QueryResult:
    success: bool
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rows_affected: int = 0
    execution_time: float = 0.0
    error: Optional[str] = None
    metadata: Optional[QueryMetadata] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(self)


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    ordinal_position: int
    is_nullable: bool = True
    is_identity: bool = False
    is_primary_key: bool = False
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    default_value: Optional[str] = None
    comment: Optional[str] = None


@dataclass
class IndexInfo:
    name: str
    columns: List[str] = field(default_factory=list)
    is_unique: bool = False
    is_primary: bool = False
    index_type: Optional[str] = None


@dataclass
class ForeignKeyInfo:
    name: str
    column: str
    referenced_table: Optional[str] = None
    referenced_column: Optional[str] = None
    on_delete: ReferentialAction = ReferentialAction.NO_ACTION
    on_update: ReferentialAction = ReferentialAction.NO_ACTION


@dataclass
class CheckConstraintInfo:
    name: str
    definition: str


@dataclass
class TableInfo:
    name: str
    schema: Optional[str] = None
    type: TableType = TableType.TABLE
    columns: List[ColumnInfo] = field(default_factory=list)
    primary_keys: List[str] = field(default_factory=list)
    foreign_keys: List[ForeignKeyInfo] = field(default_factory=list)
    indexes: List[IndexInfo] = field(default_factory=list)
    check_constraints: List[CheckConstraintInfo] = field(default_factory=list)
    row_count: Optional[int] = None
    size_kb: Optional[float] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(self)


@dataclass
class SchemaInfo:
    name: str
    tables: List[TableInfo] = field(default_factory=list)
    views: List[TableInfo] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    procedures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(self)


def to_serializable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_serializable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_serializable(v) for v in value]
    return value
