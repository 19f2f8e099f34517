import logging
import os
import sqlite3
from typing import List, Optional
from urllib.parse import quote

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool

from backend.app.core.exceptions import ConnectionFailedError, QueryExecutionError
from backend.app.datasource.base import ColumnInfo, DatabaseInfo, Plugin, SchemaInfo, TableInfo
from backend.app.datasource.sql import PooledSQLConnection
from backend.app.models.connection_config import DataSourceType, SQLiteConfig

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class SQLiteConnection(PooledSQLConnection):
    driver_errors = (sqlite3.Error, SQLAlchemyError)

    def __init__(self, engine, config: SQLiteConfig):
        super().__init__(engine)
        self.config = config

    def get_schema(self) -> SchemaInfo:
        # PRAGMA database_list: (seq, name, file)
        result = self.query("PRAGMA database_list")

        databases = []
        for row in result.rows:
            db_name = row[1]
            try:
                tables = self.get_tables(db_name)
            except QueryExecutionError as e:
                logger.warning(f"Failed to list tables of database {db_name}: {e}")
                tables = []
            databases.append(DatabaseInfo(name=db_name, tables=tables, description=row[2] or ""))

        return SchemaInfo(databases=databases)

    def get_tables(self, database: str = "") -> List[TableInfo]:
        database = database or "main"
        master = "sqlite_temp_master" if database == "temp" else "sqlite_master"
        result = self.query(
            f"SELECT name, type FROM {_quote_ident(database)}.{master} "
            "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' "
            "ORDER BY name"
        )

        tables = []
        for name, table_type in result.rows:
            try:
                columns = self._get_table_columns(database, name)
            except QueryExecutionError as e:
                logger.warning(f"Failed to get columns of {database}.{name}: {e}")
                columns = []
            tables.append(TableInfo(name=name, type=table_type, columns=columns))

        return tables

    def _get_table_columns(self, database: str, table: str) -> List[ColumnInfo]:
        # PRAGMA table_info: (cid, name, type, notnull, dflt_value, pk)
        result = self.query(f"PRAGMA {_quote_ident(database)}.table_info({_quote_ident(table)})")
        return [
            ColumnInfo(name=row[1], type=row[2] or "", nullable=not row[3])
            for row in result.rows
        ]


class SQLitePlugin(Plugin):
    data_source_type = DataSourceType.SQLITE
    display_name = "SQLite Plugin"
    config_class = SQLiteConfig

    def _open(self, config: SQLiteConfig, timeout: Optional[float]) -> SQLiteConnection:
        path = config.get_connection_string()
        busy_timeout = timeout if timeout else 5.0

        if path == MEMORY_PATH:
            engine = create_engine(
                "sqlite://",
                creator=lambda: sqlite3.connect(MEMORY_PATH, timeout=busy_timeout, check_same_thread=False),
                poolclass=StaticPool,
            )
            return SQLiteConnection(engine, config)

        # Opening a missing file would silently create an empty database
        if not os.path.isfile(path):
            raise ConnectionFailedError(f"database file does not exist: {path}")

        uri = f"file:{quote(os.path.abspath(path))}?mode=rw"
        engine = create_engine(
            "sqlite://",
            creator=lambda: sqlite3.connect(uri, uri=True, timeout=busy_timeout, check_same_thread=False),
            poolclass=QueuePool,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_recycle=self.pool_recycle,
        )
        return SQLiteConnection(engine, config)
