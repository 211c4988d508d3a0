import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import toml
import yaml

from sqlgateway.database.models import DatabaseConfig, DatabaseType
from sqlgateway.exceptions import (
    ConfigNotFoundError,
    ConfigParseError,
    ConfigurationError,
    ConfigValidationError,
    DatabaseConnectionError,
)
from sqlgateway.performance.models import PerformanceThresholds

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TOML = "toml"
    ENV = "env"


class ConfigLoader(ABC):
    @abstractmethod
    def load(self, source: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def supports_format(self, format: ConfigFormat) -> bool:
        pass


class JSONLoader(ConfigLoader):
    def load(self, source: str) -> Dict[str, Any]:
        try:
            with open(source, "r", encoding="utf-8") as f:
                return json.load(f) or {}
        except json.JSONDecodeError as e:
            raise ConfigParseError(f"Failed to load JSON config from {source}: {e}")

    def supports_format(self, format: ConfigFormat) -> bool:
        return format == ConfigFormat.JSON


class YAMLLoader(ConfigLoader):
    def load(self, source: str) -> Dict[str, Any]:
        try:
            with open(source, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigParseError(f"Failed to load YAML config from {source}: {e}")

    def supports_format(self, format: ConfigFormat) -> bool:
        return format == ConfigFormat.YAML


class TOMLLoader(ConfigLoader):
    def load(self, source: str) -> Dict[str, Any]:
        try:
            with open(source, "r", encoding="utf-8") as f:
                return toml.load(f)
        except toml.TomlDecodeError as e:
            raise ConfigParseError(f"Failed to load TOML config from {source}: {e}")

    def supports_format(self, format: ConfigFormat) -> bool:
        return format == ConfigFormat.TOML


# environment variable -> dotted settings path; the first variable set wins
ENVIRONMENT_MAPPING = {
    "DB_TYPE": "database.type",
    "DB_SERVER": "database.host",
    "DB_HOST": "database.host",
    "DB_PORT": "database.port",
    "DB_DATABASE": "database.database",
    "DB_NAME": "database.database",
    "DB_USER": "database.user",
    "DB_PASSWORD": "database.password",
    "DB_ENCRYPT": "database.encrypt",
    "DB_SSL": "database.encrypt",
    "DB_TRUST_SERVER_CERTIFICATE": "database.trust_server_certificate",
    "DB_CONNECTION_TIMEOUT": "database.connection_timeout",
    "DB_REQUEST_TIMEOUT": "database.request_timeout",
    "DB_POOL_MIN": "database.pool.min",
    "DB_POOL_MAX": "database.pool.max",
    "DB_POOL_IDLE_TIMEOUT": "database.pool.idle_timeout",
    "DB_ODBC_DRIVER": "database.odbc_driver",
    "METRICS_INTERVAL": "performance.metrics_interval",
    "SLOW_QUERY_THRESHOLD": "performance.slow_query_threshold",
    "MAX_METRICS_HISTORY": "performance.max_metrics_history",
    "CACHE_EXPIRATION_TIME": "cache.expiration_time",
    "QUERY_HISTORY_SIZE": "query.history_size",
    "API_HOST": "api.host",
    "API_PORT": "api.port",
    "LOG_LEVEL": "logging.level",
}


class EnvironmentLoader(ConfigLoader):
    def __init__(self, mapping: Optional[Mapping[str, str]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.mapping = ENVIRONMENT_MAPPING if mapping is None else mapping
        self.environ = os.environ if environ is None else environ

    def load(self, source: str = "") -> Dict[str, Any]:
        config: Dict[str, Any] = {}
        assigned = set()

        for key, path in self.mapping.items():
            value = self.environ.get(key)
            if value is None or value == "" or path in assigned:
                continue
            assigned.add(path)
            _set_nested_value(config, path, value)

        return config

    def supports_format(self, format: ConfigFormat) -> bool:
        return format == ConfigFormat.ENV


LOADERS: Dict[ConfigFormat, ConfigLoader] = {
    ConfigFormat.JSON: JSONLoader(),
    ConfigFormat.YAML: YAMLLoader(),
    ConfigFormat.TOML: TOMLLoader(),
}


def detect_format(file_path: Path) -> ConfigFormat:
    format_map = {
        ".json": ConfigFormat.JSON,
        ".yaml": ConfigFormat.YAML,
        ".yml": ConfigFormat.YAML,
        ".toml": ConfigFormat.TOML,
    }
    suffix = file_path.suffix.lower()
    if suffix not in format_map:
        raise ConfigParseError(f"Unsupported config file format: {file_path}")
    return format_map[suffix]


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    file_path = Path(path)
    if not file_path.is_file():
        raise ConfigNotFoundError(f"Config file not found: {file_path}")

    data = LOADERS[detect_format(file_path)].load(str(file_path))
    if not isinstance(data, dict):
        raise ConfigParseError(f"Config file {file_path} must contain a mapping at the top level")
    logger.info(f"Loaded configuration from {file_path}")
    return data


@dataclass
class ValidationRule:
    field_path: str
    validator: Callable[[Any], bool]
    error_message: str
    required: bool = False
    default_value: Any = None


@dataclass
class ConfigSchema:
    rules: List[ValidationRule] = field(default_factory=list)


class ConfigValidator:
    def __init__(self, schema: ConfigSchema):
        self.schema = schema

    def validate(self, config: Dict[str, Any]) -> Dict[str, Any]:
        validated_config = _deep_copy(config)
        errors = []

        for rule in self.schema.rules:
            value = _get_nested_value(config, rule.field_path)

            if value is None or value == "":
                if rule.default_value is not None:
                    _set_nested_value(validated_config, rule.field_path, rule.default_value)
                elif rule.required:
                    errors.append(ConfigValidationError(rule.field_path, "Required field is missing"))
                continue

            try:
                valid = rule.validator(value)
            except (TypeError, ValueError):
                valid = False
            if not valid:
                errors.append(ConfigValidationError(rule.field_path, rule.error_message))

        if errors:
            raise ConfigurationError(f"Validation failed: {'; '.join(error.message for error in errors)}")

        return validated_config


def _is_int(value: Any) -> bool:
    int(str(value))
    return True


def _is_positive_int(value: Any) -> bool:
    return int(str(value)) > 0


def _is_port(value: Any) -> bool:
    return 0 < int(str(value)) < 65536


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool) or str(value).lower() in ("true", "false", "1", "0", "yes", "no")


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


SETTINGS_SCHEMA = ConfigSchema(rules=[
    ValidationRule("database.port", _is_port, "must be a port number between 1 and 65535"),
    ValidationRule("database.encrypt", _is_bool, "must be true or false"),
    ValidationRule("database.trust_server_certificate", _is_bool, "must be true or false"),
    ValidationRule("database.connection_timeout", _is_positive_int, "must be a positive number of milliseconds"),
    ValidationRule("database.request_timeout", _is_positive_int, "must be a positive number of milliseconds"),
    ValidationRule("database.pool.min", _is_int, "must be an integer"),
    ValidationRule("database.pool.max", _is_positive_int, "must be a positive integer"),
    ValidationRule("database.pool.idle_timeout", _is_positive_int, "must be a positive number of milliseconds"),
    ValidationRule("performance.metrics_interval", _is_positive_int, "must be a positive number of milliseconds"),
    ValidationRule("performance.slow_query_threshold", _is_positive_int, "must be a positive number of milliseconds"),
    ValidationRule("performance.max_metrics_history", _is_positive_int, "must be a positive integer"),
    ValidationRule("cache.expiration_time", _is_positive_int, "must be a positive number of milliseconds"),
    ValidationRule("query.history_size", _is_positive_int, "must be a positive integer"),
    ValidationRule("api.port", _is_port, "must be a port number between 1 and 65535"),
    ValidationRule("logging.level", lambda value: str(value).upper() in LOG_LEVELS,
                   "must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL"),
])

# settings path -> names reported when it is missing
REQUIRED_SETTINGS = {
    "database.user": "DB_USER",
    "database.host": "DB_SERVER or DB_HOST",
    "database.database": "DB_DATABASE or DB_NAME",
}


@dataclass
class GatewaySettings:
    db_type: DatabaseType
    database: DatabaseConfig
    thresholds: PerformanceThresholds = field(default_factory=PerformanceThresholds)
    metrics_interval_ms: int = 5000
    max_metrics_history: int = 1000
    cache_ttl: float = 300.0
    query_history_size: int = 1000
    api_host: str = "127.0.0.1"
    api_port: int = 5000
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "db_type": self.db_type.value,
            "database": self.database.to_dict(),
            "metrics_interval_ms": self.metrics_interval_ms,
            "max_metrics_history": self.max_metrics_history,
            "cache_ttl": self.cache_ttl,
            "query_history_size": self.query_history_size,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "log_level": self.log_level,
        }


def load_settings(path: Optional[Union[str, Path]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> GatewaySettings:
    config: Dict[str, Any] = load_config_file(path) if path else {}
    _deep_merge(config, EnvironmentLoader(environ=environ).load())

    missing = [name for setting, name in REQUIRED_SETTINGS.items()
               if _get_nested_value(config, setting) in (None, "")]
    if missing:
        raise ConfigurationError(f"Required settings are not set: {', '.join(missing)}")

    config = ConfigValidator(SETTINGS_SCHEMA).validate(config)
    return build_settings(config)


def build_settings(config: Dict[str, Any]) -> GatewaySettings:
    def get(path: str, default: Any = None) -> Any:
        value = _get_nested_value(config, path)
        return default if value is None or value == "" else value

    try:
        db_type = DatabaseType.parse(get("database.type", DatabaseType.MSSQL.value))
    except DatabaseConnectionError as e:
        raise ConfigurationError(e.message)
    options = {}
    if get("database.odbc_driver"):
        options["odbc_driver"] = str(get("database.odbc_driver"))

    database = DatabaseConfig(
        host=str(get("database.host")),
        database=str(get("database.database")),
        username=str(get("database.user")),
        password=str(get("database.password", "")),
        port=int(get("database.port")) if get("database.port") is not None else None,
        encrypt=_to_bool(get("database.encrypt", False)),
        trust_server_certificate=_to_bool(get("database.trust_server_certificate", True)),
        connect_timeout_ms=int(get("database.connection_timeout", 15000)),
        request_timeout_ms=int(get("database.request_timeout", 30000)),
        pool_min=int(get("database.pool.min", 0)),
        pool_max=int(get("database.pool.max", 10)),
        pool_idle_timeout_ms=int(get("database.pool.idle_timeout", 30000)),
        options=options,
    )
    database.validate()

    slow_query_ms = float(get("performance.slow_query_threshold", 1000))
    thresholds = PerformanceThresholds(
        slow_query_ms=slow_query_ms,
        critical_query_ms=max(float(get("performance.critical_query_threshold", 5000)), slow_query_ms),
        max_connections=int(get("performance.max_connections", 100)),
        max_error_rate=float(get("performance.max_error_rate", 5.0)),
    )

    return GatewaySettings(
        db_type=db_type,
        database=database,
        thresholds=thresholds,
        metrics_interval_ms=int(get("performance.metrics_interval", 5000)),
        max_metrics_history=int(get("performance.max_metrics_history", 1000)),
        cache_ttl=int(get("cache.expiration_time", 300000)) / 1000,
        query_history_size=int(get("query.history_size", 1000)),
        api_host=str(get("api.host", "127.0.0.1")),
        api_port=int(get("api.port", 5000)),
        log_level=str(get("logging.level", "INFO")).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "yes")


def _get_nested_value(config: Dict[str, Any], path: str) -> Any:
    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def _set_nested_value(config: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    current = config
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def _deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> None:
    for key, value in update.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _deep_copy(config: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _deep_copy(value) if isinstance(value, dict) else value for key, value in config.items()}
