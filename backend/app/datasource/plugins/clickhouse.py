import logging
from typing import List, Optional

from clickhouse_driver import Client
from clickhouse_driver.errors import Error as ClickHouseError

from backend.app.core.exceptions import QueryExecutionError
from backend.app.datasource.base import (
    ColumnInfo,
    Connection,
    ConnectionMetrics,
    DatabaseInfo,
    Plugin,
    QueryParams,
    QueryResult,
    QueryStats,
    SchemaInfo,
    TableInfo,
    to_transport_value,
)
from backend.app.models.connection_config import ClickHouseConfig, DataSourceType

logger = logging.getLogger(__name__)

DRIVER_ERRORS = (ClickHouseError, EOFError, OSError)


def _is_nullable(ch_type: str) -> bool:
    return ch_type.startswith("Nullable(")


def _is_insert(query: str) -> bool:
    return query.lstrip().upper().startswith("INSERT")


class ClickHouseConnection(Connection):
    def __init__(self, client: Client, config: ClickHouseConfig):
        super().__init__()
        self.client: Optional[Client] = client
        self.config = config

    def _client(self) -> Client:
        if self.client is None:
            raise QueryExecutionError("connection is closed")
        return self.client

    def query(self, query: str, params: QueryParams = None) -> QueryResult:
        """
        Run a query and read the whole result.

        Parameters use the driver's %(name)s placeholders, so `params` must be
        a mapping (or a list of rows for INSERT ... VALUES statements).
        """
        # The driver streams any list or tuple as INSERT data blocks
        if isinstance(params, (list, tuple)) and not _is_insert(query):
            raise QueryExecutionError(
                "ClickHouse takes named %(name)s parameters; row lists are only accepted for INSERT"
            )

        client = self._client()
        started = self._start_query()
        try:
            data, columns_with_types = client.execute(query, params, with_column_types=True)
        except DRIVER_ERRORS as e:
            raise QueryExecutionError(f"query execution failed: {e}") from e
        finally:
            elapsed_ms = self._finish_query(started)

        columns = [
            ColumnInfo(name=name, type=ch_type, nullable=_is_nullable(ch_type))
            for name, ch_type in columns_with_types
        ]
        rows = [[to_transport_value(v) for v in row] for row in data]

        rows_affected = 0
        bytes_read = 0
        progress = getattr(client.last_query, "progress", None)
        if progress is not None:
            rows_affected = progress.written_rows or 0
            bytes_read = progress.bytes or 0

        return QueryResult(
            columns=columns,
            rows=rows,
            stats=QueryStats(
                execution_time_ms=elapsed_ms,
                rows_returned=len(rows),
                rows_affected=rows_affected,
                bytes_read=bytes_read,
            ),
        )

    def get_schema(self) -> SchemaInfo:
        result = self.query("SELECT name FROM system.databases ORDER BY name")

        databases = []
        for row in result.rows:
            db_name = row[0]
            try:
                tables = self.get_tables(db_name)
            except QueryExecutionError as e:
                logger.warning(f"Failed to list tables of database {db_name}: {e}")
                tables = []
            databases.append(DatabaseInfo(name=db_name, tables=tables))

        return SchemaInfo(databases=databases)

    def get_tables(self, database: str = "") -> List[TableInfo]:
        database = database or self.config.database or "default"
        result = self.query(
            """
            SELECT name, engine, total_rows, total_bytes
            FROM system.tables
            WHERE database = %(database)s
            ORDER BY name
            """,
            {"database": database},
        )

        tables = []
        for name, engine, total_rows, total_bytes in result.rows:
            try:
                columns = self._get_table_columns(database, name)
            except QueryExecutionError as e:
                logger.warning(f"Failed to get columns of {database}.{name}: {e}")
                columns = []

            tables.append(TableInfo(
                name=name,
                type=engine,
                columns=columns,
                # Views and some engines report NULL totals
                row_count=int(total_rows) if total_rows is not None else None,
                size_bytes=int(total_bytes) if total_bytes is not None else None,
            ))

        return tables

    def _get_table_columns(self, database: str, table: str) -> List[ColumnInfo]:
        result = self.query(
            """
            SELECT name, type
            FROM system.columns
            WHERE database = %(database)s AND table = %(table)s
            ORDER BY position
            """,
            {"database": database, "table": table},
        )
        return [
            ColumnInfo(name=name, type=ch_type, nullable=_is_nullable(ch_type))
            for name, ch_type in result.rows
        ]

    def ping(self) -> None:
        self._client().execute("SELECT 1")

    def close(self) -> None:
        if self.client is not None:
            self.client.disconnect()
            self.client = None

    def get_metrics(self) -> ConnectionMetrics:
        # The native client holds a single socket and exposes no pool stats
        open_connections = 1 if self.client is not None else 0
        return self._metrics(open_connections, 0)


class ClickHousePlugin(Plugin):
    data_source_type = DataSourceType.CLICKHOUSE
    display_name = "ClickHouse Plugin"
    config_class = ClickHouseConfig

    def _open(self, config: ClickHouseConfig, timeout: Optional[float]) -> ClickHouseConnection:
        kwargs = {}
        if timeout:
            kwargs["connect_timeout"] = timeout
            kwargs["send_receive_timeout"] = timeout

        client = Client(
            host=config.host,
            port=config.port,
            database=config.database or "default",
            user=config.username or "default",
            password=config.password,
            secure=config.secure,
            **kwargs,
        )
        return ClickHouseConnection(client, config)
