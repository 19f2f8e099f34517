import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from backend.app.core.exceptions import ConfigurationError, DataVoyagerError, UnsupportedDataSourceError
from backend.app.datasource.base import Connection, Plugin, QueryParams, QueryResult, SchemaInfo, TableInfo
from backend.app.datasource.plugins.clickhouse import ClickHousePlugin
from backend.app.datasource.plugins.opensearch import OpenSearchPlugin
from backend.app.datasource.plugins.postgresql import PostgreSQLPlugin
from backend.app.datasource.plugins.sqlite import SQLitePlugin
from backend.app.datasource.registry import Registry
from backend.app.models.connection_config import ConnectionConfig
from backend.app.models.datasource import ConnectionTestResult, DataSource
from backend.app.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

BUILTIN_PLUGINS = (PostgreSQLPlugin, ClickHousePlugin, SQLitePlugin, OpenSearchPlugin)


class DataSourceService:
    """
    Bridges stored datasource records and the plugin registry.

    Every operation that touches an external datasource opens its own
    connection and closes it before returning.
    """

    def __init__(self, store: MetadataStore, registry: Registry, connect_timeout: Optional[float] = None):
        self.store = store
        self.registry = registry
        self.connect_timeout = connect_timeout

    def initialize_plugins(self):
        for plugin_class in BUILTIN_PLUGINS:
            plugin = plugin_class()
            self.registry.register(plugin)
            logger.info(f"Registered plugin {plugin.get_name()} for type {plugin.get_type().value}")

    def health_check(self):
        self.store.health_check()

    def get_plugin(self, ds_type: str) -> Plugin:
        plugin = self.registry.get(ds_type)
        if plugin is None:
            raise UnsupportedDataSourceError(f"unsupported data source type: {ds_type}")
        return plugin

    def normalize_config(self, ds_type: str, raw: Dict[str, Any]) -> ConnectionConfig:
        """Parse and validate a raw config, filling in type defaults."""
        plugin = self.get_plugin(ds_type)
        config = plugin.parse_config(raw)
        plugin.validate_config(config)
        return config

    def load_config(self, datasource: DataSource) -> ConnectionConfig:
        try:
            raw = datasource.config_dict()
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"stored config of {datasource.name} is not valid JSON: {e}") from e
        return self.normalize_config(datasource.type, raw)

    def test_datasource(self, datasource: DataSource) -> ConnectionTestResult:
        try:
            config = self.load_config(datasource)
        except DataVoyagerError as e:
            return ConnectionTestResult(is_connected=False, message=str(e))

        result = self.get_plugin(datasource.type).test_connection(config, self.connect_timeout)
        logger.info(
            f"Tested datasource {datasource.name}: connected={result.is_connected} "
            f"latency={result.latency_ms:.1f}ms"
        )
        return result

    @contextmanager
    def open_connection(self, datasource: DataSource) -> Iterator[Connection]:
        config = self.load_config(datasource)
        conn = self.get_plugin(datasource.type).connect(config, self.connect_timeout)
        try:
            yield conn
        finally:
            conn.close()

    def get_schema(self, datasource: DataSource) -> SchemaInfo:
        with self.open_connection(datasource) as conn:
            return conn.get_schema()

    def get_tables(self, datasource: DataSource, database: str = "") -> List[TableInfo]:
        with self.open_connection(datasource) as conn:
            return conn.get_tables(database)

    def query(
        self,
        datasource: DataSource,
        query: str,
        params: QueryParams = None,
        limit: Optional[int] = None,
    ) -> QueryResult:
        with self.open_connection(datasource) as conn:
            result = conn.query(query, params)
        logger.debug(
            f"Query on {datasource.name} returned {result.stats.rows_returned} rows "
            f"in {result.stats.execution_time_ms:.1f}ms"
        )
        return result.limited(limit)
