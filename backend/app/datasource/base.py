"""
Plugin and connection contracts shared by every datasource type.

A Plugin turns a ConnectionConfig into a live Connection. Connections are
opened per operation and closed by the caller on the same code path; nothing
here pools, caches or retries.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from pydantic import BaseModel, ConfigDict

from backend.app.core.exceptions import ConfigurationError, ConnectionFailedError
from backend.app.models.connection_config import ConnectionConfig, DataSourceType, build_config
from backend.app.models.datasource import ConnectionTestResult, utcnow

logger = logging.getLogger(__name__)

QueryParams = Optional[Union[Sequence[Any], Dict[str, Any]]]


class ColumnInfo(BaseModel):
    name: str
    type: str
    nullable: bool


class QueryStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_time_ms: float
    rows_returned: int
    rows_affected: int = 0
    bytes_read: int = 0


class QueryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    columns: List[ColumnInfo]
    rows: List[List[Any]]
    stats: QueryStats

    def limited(self, limit: Optional[int]) -> "QueryResult":
        """Copy holding at most `limit` rows."""
        if limit is None or limit < 0 or len(self.rows) <= limit:
            return self
        stats = self.stats.model_copy(update={"rows_returned": limit})
        return QueryResult(columns=self.columns, rows=self.rows[:limit], stats=stats)


class TableInfo(BaseModel):
    name: str
    type: str  # table, view, engine name, index
    columns: List[ColumnInfo] = []
    row_count: Optional[int] = None
    size_bytes: Optional[int] = None
    description: str = ""


class DatabaseInfo(BaseModel):
    name: str
    tables: List[TableInfo] = []
    description: str = ""


class SchemaInfo(BaseModel):
    databases: List[DatabaseInfo] = []


class ConnectionMetrics(BaseModel):
    open_connections: int = 0
    idle_connections: int = 0
    active_queries: int = 0
    total_queries: int = 0
    average_latency_ms: float = 0.0
    last_activity: Optional[datetime] = None


def to_transport_value(value: Any) -> Any:
    """Binary column values are sent to clients as text."""
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


class Connection(ABC):
    """An open handle on one datasource, owning exactly one driver client."""

    def __init__(self):
        self._total_queries = 0
        self._total_latency_ms = 0.0
        self._active_queries = 0
        self._last_activity: Optional[datetime] = None

    @abstractmethod
    def query(self, query: str, params: QueryParams = None) -> QueryResult:
        raise NotImplementedError

    @abstractmethod
    def get_schema(self) -> SchemaInfo:
        raise NotImplementedError

    @abstractmethod
    def get_tables(self, database: str = "") -> List[TableInfo]:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def ping(self) -> None:
        """Raise if the datasource is not reachable."""
        raise NotImplementedError

    @abstractmethod
    def get_metrics(self) -> ConnectionMetrics:
        raise NotImplementedError

    def _start_query(self) -> float:
        self._active_queries += 1
        return time.perf_counter()

    def _finish_query(self, started: float) -> float:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._active_queries -= 1
        self._total_queries += 1
        self._total_latency_ms += elapsed_ms
        self._last_activity = utcnow()
        return elapsed_ms

    def _metrics(self, open_connections: int, idle_connections: int) -> ConnectionMetrics:
        average = self._total_latency_ms / self._total_queries if self._total_queries else 0.0
        return ConnectionMetrics(
            open_connections=open_connections,
            idle_connections=idle_connections,
            active_queries=self._active_queries,
            total_queries=self._total_queries,
            average_latency_ms=average,
            last_activity=self._last_activity,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Plugin(ABC):
    """Adapter between one datasource type and its driver."""

    data_source_type: DataSourceType
    display_name: str
    config_class: Type[ConnectionConfig]

    # Pool bounds, applied where the driver exposes them
    pool_size = 5
    max_overflow = 20
    pool_recycle = 3600

    def get_type(self) -> DataSourceType:
        return self.data_source_type

    def get_name(self) -> str:
        return self.display_name

    def parse_config(self, raw: Dict[str, Any]) -> ConnectionConfig:
        return build_config(self.config_class, raw)

    def validate_config(self, config: Any) -> None:
        if not isinstance(config, self.config_class):
            raise ConfigurationError(f"config must be {self.config_class.__name__}")
        config.validate_fields()

    def connect(self, config: ConnectionConfig, timeout: Optional[float] = None) -> Connection:
        """Open a connection and ping it once; a failed ping closes it again."""
        if not isinstance(config, self.config_class):
            raise ConfigurationError(f"invalid config type for {self.display_name}")
        try:
            config.validate_fields()
        except ConfigurationError as e:
            raise ConfigurationError(f"invalid {self.display_name} config: {e}") from e

        try:
            conn = self._open(config, timeout)
        except Exception as e:
            raise ConnectionFailedError(f"failed to open {self.display_name} connection: {e}") from e

        try:
            conn.ping()
        except Exception as e:
            logger.warning(f"{self.display_name} ping failed, closing connection: {e}")
            try:
                conn.close()
            except Exception as close_err:
                logger.warning(f"Error closing {self.display_name} connection: {close_err}")
            raise ConnectionFailedError(f"failed to ping {self.display_name}: {e}") from e

        return conn

    @abstractmethod
    def _open(self, config: ConnectionConfig, timeout: Optional[float]) -> Connection:
        """Build the driver client without verifying it."""
        raise NotImplementedError

    def test_connection(
        self, config: ConnectionConfig, timeout: Optional[float] = None
    ) -> ConnectionTestResult:
        """
        Time a full connect + ping cycle.

        Failures are reported in the result instead of raised, and the
        connection is always closed before returning.
        """
        start = time.perf_counter()
        try:
            conn = self.connect(config, timeout)
        except Exception as e:
            logger.info(f"{self.display_name} connection test failed: {e}")
            return ConnectionTestResult(is_connected=False, message=str(e))

        try:
            conn.ping()
        except Exception as e:
            return ConnectionTestResult(is_connected=False, message=f"ping failed: {e}")
        finally:
            try:
                conn.close()
            except Exception as e:
                logger.warning(f"Error closing {self.display_name} connection: {e}")

        latency_ms = (time.perf_counter() - start) * 1000
        return ConnectionTestResult(
            is_connected=True,
            message="Connection successful",
            latency_ms=latency_ms,
        )
