"""
Connection configuration variants, one per datasource type.

A config is a closed tagged union: the tag is the owning datasource's type and
`CONFIG_CLASSES` maps it to the variant. `validate_fields()` must run before
`get_connection_string()` is trusted; it fills in type-specific defaults.
"""

from enum import Enum
from typing import Any, Dict, List, Type
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from backend.app.core.exceptions import ConfigurationError, UnsupportedDataSourceError


class DataSourceType(str, Enum):
    POSTGRESQL = "postgresql"
    CLICKHOUSE = "clickhouse"
    SQLITE = "sqlite"
    OPENSEARCH = "opensearch"


class ConnectionConfig(BaseModel):
    def validate_fields(self) -> None:
        raise NotImplementedError

    def get_connection_string(self) -> str:
        raise NotImplementedError


class PostgreSQLConfig(ConnectionConfig):
    host: str = ""
    port: int = 0
    database: str = ""
    username: str = ""
    password: str = ""
    ssl_mode: str = ""

    def validate_fields(self) -> None:
        if not self.host:
            raise ConfigurationError("host is required")
        if self.port <= 0:
            self.port = 5432
        if not self.ssl_mode:
            self.ssl_mode = "prefer"

    def get_connection_string(self) -> str:
        pairs = [
            ("host", self.host),
            ("port", str(self.port)),
            ("user", self.username),
            ("password", self.password),
            ("dbname", self.database),
            ("sslmode", self.ssl_mode),
        ]
        return " ".join(f"{key}={_libpq_quote(value)}" for key, value in pairs)


def _libpq_quote(value: str) -> str:
    # Empty values and values with spaces must be quoted in a libpq DSN
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class ClickHouseConfig(ConnectionConfig):
    host: str = ""
    port: int = 0
    database: str = ""
    username: str = ""
    password: str = ""
    secure: bool = False

    def validate_fields(self) -> None:
        if not self.host:
            raise ConfigurationError("host is required")
        if self.port <= 0:
            self.port = 9000

    def get_connection_string(self) -> str:
        protocol = "tls" if self.secure else "tcp"
        return (
            f"{protocol}://{self.host}:{self.port}/{self.database}"
            f"?username={quote(self.username)}&password={quote(self.password)}"
        )


class SQLiteConfig(ConnectionConfig):
    path: str = ""

    def validate_fields(self) -> None:
        if not self.path:
            raise ConfigurationError("path is required")

    def get_connection_string(self) -> str:
        return self.path


class OpenSearchConfig(ConnectionConfig):
    urls: List[str] = []
    username: str = ""
    password: str = ""
    api_key: str = ""
    verify_certs: bool = True

    def validate_fields(self) -> None:
        if not self.urls or not any(self.urls):
            raise ConfigurationError("at least one URL is required")

    def get_connection_string(self) -> str:
        # The remaining URLs are only used by the client for failover
        return self.urls[0]


CONFIG_CLASSES: Dict[DataSourceType, Type[ConnectionConfig]] = {
    DataSourceType.POSTGRESQL: PostgreSQLConfig,
    DataSourceType.CLICKHOUSE: ClickHouseConfig,
    DataSourceType.SQLITE: SQLiteConfig,
    DataSourceType.OPENSEARCH: OpenSearchConfig,
}


def build_config(config_class: Type[ConnectionConfig], raw: Dict[str, Any]) -> ConnectionConfig:
    if not isinstance(raw, dict):
        raise ConfigurationError("config must be a JSON object")
    try:
        return config_class.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"invalid {config_class.__name__}: {problems}") from e


def parse_connection_config(ds_type: str, raw: Dict[str, Any]) -> ConnectionConfig:
    """Build the config variant for `ds_type` from a raw JSON object."""
    try:
        config_class = CONFIG_CLASSES[DataSourceType(ds_type)]
    except ValueError:
        raise UnsupportedDataSourceError(f"unsupported data source type: {ds_type}")
    return build_config(config_class, raw)
