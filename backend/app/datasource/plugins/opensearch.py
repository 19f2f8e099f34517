import logging
from typing import Any, Dict, List, Optional

from opensearchpy import OpenSearch
from opensearchpy.exceptions import OpenSearchException

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
from backend.app.models.connection_config import DataSourceType, OpenSearchConfig

logger = logging.getLogger(__name__)

SQL_ENDPOINT = "/_plugins/_sql"
DEFAULT_TIMEOUT = 10


def _sql_parameter(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"type": "null", "value": None}
    if isinstance(value, bool):
        return {"type": "boolean", "value": value}
    if isinstance(value, int):
        return {"type": "long", "value": value}
    if isinstance(value, float):
        return {"type": "double", "value": value}
    return {"type": "string", "value": str(value)}


def flatten_mapping(properties: Dict[str, Any], prefix: str = "") -> List[ColumnInfo]:
    """Turn an index mapping's properties into dotted-path columns."""
    columns = []
    for name, field in properties.items():
        path = f"{prefix}{name}"
        if "properties" in field:
            if field.get("type") == "nested":
                columns.append(ColumnInfo(name=path, type="nested", nullable=True))
            columns.extend(flatten_mapping(field["properties"], prefix=f"{path}."))
        else:
            # Every field of a document may be missing
            columns.append(ColumnInfo(name=path, type=field.get("type", "object"), nullable=True))
    return columns


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class OpenSearchConnection(Connection):
    def __init__(self, client: OpenSearch, config: OpenSearchConfig):
        super().__init__()
        self.client: Optional[OpenSearch] = client
        self.config = config
        self.cluster_name = ""

    def _client(self) -> OpenSearch:
        if self.client is None:
            raise QueryExecutionError("connection is closed")
        return self.client

    def query(self, query: str, params: QueryParams = None) -> QueryResult:
        """Run a SQL statement through the cluster's SQL plugin."""
        body: Dict[str, Any] = {"query": query}
        if params:
            if isinstance(params, dict):
                raise QueryExecutionError("OpenSearch SQL only takes positional parameters")
            body["parameters"] = [_sql_parameter(v) for v in params]

        client = self._client()
        started = self._start_query()
        try:
            response = client.transport.perform_request(
                "POST", SQL_ENDPOINT, params={"format": "jdbc"}, body=body
            )
        except OpenSearchException as e:
            raise QueryExecutionError(f"query execution failed: {e}") from e
        finally:
            elapsed_ms = self._finish_query(started)

        columns = [
            ColumnInfo(name=col.get("alias") or col["name"], type=col.get("type", ""), nullable=True)
            for col in response.get("schema", [])
        ]
        rows = [[to_transport_value(v) for v in row] for row in response.get("datarows", [])]

        return QueryResult(
            columns=columns,
            rows=rows,
            stats=QueryStats(execution_time_ms=elapsed_ms, rows_returned=len(rows)),
        )

    def get_schema(self) -> SchemaInfo:
        # A cluster has no databases; its indices are listed under the cluster name
        try:
            tables = self.get_tables()
        except QueryExecutionError as e:
            logger.warning(f"Failed to list indices of cluster {self.cluster_name}: {e}")
            tables = []
        return SchemaInfo(databases=[DatabaseInfo(name=self.cluster_name or "default", tables=tables)])

    def get_tables(self, database: str = "") -> List[TableInfo]:
        pattern = "*" if database in ("", self.cluster_name, "default") else database
        client = self._client()
        try:
            indices = client.cat.indices(index=pattern, format="json", bytes="b")
        except OpenSearchException as e:
            raise QueryExecutionError(f"failed to get indices: {e}") from e

        tables = []
        for entry in sorted(indices, key=lambda item: item.get("index", "")):
            name = entry.get("index", "")
            if not name or name.startswith("."):
                continue
            try:
                columns = self._get_index_columns(name)
            except OpenSearchException as e:
                logger.warning(f"Failed to get mapping of index {name}: {e}")
                columns = []
            tables.append(TableInfo(
                name=name,
                type="index",
                columns=columns,
                row_count=_to_int(entry.get("docs.count")),
                size_bytes=_to_int(entry.get("store.size")),
                description=f"health: {entry.get('health', 'unknown')}",
            ))

        return tables

    def _get_index_columns(self, index: str) -> List[ColumnInfo]:
        response = self._client().indices.get_mapping(index=index)
        mappings = response.get(index, {}).get("mappings", {})
        return flatten_mapping(mappings.get("properties", {}))

    def ping(self) -> None:
        info = self._client().info()
        self.cluster_name = info.get("cluster_name", "")

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def get_metrics(self) -> ConnectionMetrics:
        # The HTTP client pools per node internally and does not report it
        open_connections = 1 if self.client is not None else 0
        return self._metrics(open_connections, 0)


class OpenSearchPlugin(Plugin):
    data_source_type = DataSourceType.OPENSEARCH
    display_name = "OpenSearch Plugin"
    config_class = OpenSearchConfig

    def _open(self, config: OpenSearchConfig, timeout: Optional[float]) -> OpenSearchConnection:
        kwargs: Dict[str, Any] = {}
        if config.username:
            kwargs["http_auth"] = (config.username, config.password)
        if config.api_key:
            kwargs["headers"] = {"Authorization": f"ApiKey {config.api_key}"}

        urls = [url for url in config.urls if url]
        client = OpenSearch(
            hosts=urls,
            verify_certs=config.verify_certs,
            timeout=timeout or DEFAULT_TIMEOUT,
            # Extra URLs are only tried as failover after a connection error
            max_retries=len(urls) - 1,
            retry_on_status=(),
            **kwargs,
        )
        return OpenSearchConnection(client, config)
