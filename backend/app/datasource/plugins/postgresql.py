import logging
from typing import Any, List, Optional

import psycopg2
from psycopg2 import extensions
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.exceptions import QueryExecutionError
from backend.app.datasource.base import ColumnInfo, DatabaseInfo, Plugin, SchemaInfo, TableInfo
from backend.app.datasource.sql import PooledSQLConnection
from backend.app.models.connection_config import DataSourceType, PostgreSQLConfig

logger = logging.getLogger(__name__)

SCHEMAS_QUERY = """
    SELECT schema_name
    FROM information_schema.schemata
    WHERE schema_name NOT IN ('information_schema', 'pg_catalog', 'pg_toast')
    ORDER BY schema_name
"""

TABLES_QUERY = """
    SELECT
        t.table_name,
        t.table_type,
        pg_total_relation_size(c.oid) AS size_bytes,
        c.reltuples::bigint AS estimated_rows
    FROM information_schema.tables t
    LEFT JOIN pg_namespace n ON n.nspname = t.table_schema
    LEFT JOIN pg_class c ON c.relname = t.table_name AND c.relnamespace = n.oid
    WHERE t.table_schema = %s
    ORDER BY t.table_name
"""

COLUMNS_QUERY = """
    SELECT
        column_name,
        data_type,
        is_nullable
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""


class PostgreSQLConnection(PooledSQLConnection):
    driver_errors = (psycopg2.Error, SQLAlchemyError)

    def __init__(self, engine, config: PostgreSQLConfig):
        super().__init__(engine)
        self.config = config

    def _type_name(self, type_code: Any) -> str:
        # type_code is the column's pg_type OID
        caster = extensions.string_types.get(type_code)
        if caster is not None:
            return caster.name
        return str(type_code)

    def get_schema(self) -> SchemaInfo:
        result = self.query(SCHEMAS_QUERY)

        databases = []
        for row in result.rows:
            schema_name = row[0]
            try:
                tables = self.get_tables(schema_name)
            except QueryExecutionError as e:
                logger.warning(f"Failed to list tables of schema {schema_name}: {e}")
                tables = []
            databases.append(DatabaseInfo(name=schema_name, tables=tables))

        return SchemaInfo(databases=databases)

    def get_tables(self, database: str = "") -> List[TableInfo]:
        schema_name = database or "public"
        result = self.query(TABLES_QUERY, (schema_name,))

        tables = []
        for name, table_type, size, estimated_rows in result.rows:
            try:
                columns = self._get_table_columns(schema_name, name)
            except QueryExecutionError as e:
                logger.warning(f"Failed to get columns of {schema_name}.{name}: {e}")
                columns = []

            tables.append(TableInfo(
                name=name,
                type=table_type,
                columns=columns,
                # reltuples is -1 for never-analyzed tables
                row_count=estimated_rows if estimated_rows and estimated_rows > 0 else None,
                size_bytes=size if size and size > 0 else None,
            ))

        return tables

    def _get_table_columns(self, schema_name: str, table_name: str) -> List[ColumnInfo]:
        result = self.query(COLUMNS_QUERY, (schema_name, table_name))
        return [
            ColumnInfo(name=name, type=data_type, nullable=is_nullable == "YES")
            for name, data_type, is_nullable in result.rows
        ]


class PostgreSQLPlugin(Plugin):
    data_source_type = DataSourceType.POSTGRESQL
    display_name = "PostgreSQL Plugin"
    config_class = PostgreSQLConfig

    def _open(self, config: PostgreSQLConfig, timeout: Optional[float]) -> PostgreSQLConnection:
        dsn = config.get_connection_string()
        connect_kwargs = {}
        if timeout:
            # libpq only accepts whole seconds
            connect_kwargs["connect_timeout"] = max(1, int(timeout))

        engine = create_engine(
            "postgresql+psycopg2://",
            creator=lambda: psycopg2.connect(dsn, **connect_kwargs),
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_recycle=self.pool_recycle,
        )
        return PostgreSQLConnection(engine, config)
