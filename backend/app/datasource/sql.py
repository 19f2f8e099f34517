import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.exceptions import QueryExecutionError
from backend.app.datasource.base import (
    ColumnInfo,
    Connection,
    ConnectionMetrics,
    QueryParams,
    QueryResult,
    QueryStats,
    to_transport_value,
)

logger = logging.getLogger(__name__)


class PooledSQLConnection(Connection):
    """
    Connection over a SQLAlchemy engine whose pool hands out DB-API connections.

    Statements are run on raw driver cursors so the driver's own paramstyle
    applies. Subclasses supply the catalog queries.
    """

    driver_errors: Tuple[type, ...] = (SQLAlchemyError,)

    def __init__(self, engine: Engine):
        super().__init__()
        self.engine: Optional[Engine] = engine

    def query(self, query: str, params: QueryParams = None) -> QueryResult:
        started = self._start_query()
        try:
            columns, rows, affected = self._execute(query, params)
        except self.driver_errors as e:
            raise QueryExecutionError(f"query execution failed: {e}") from e
        finally:
            elapsed_ms = self._finish_query(started)

        return QueryResult(
            columns=columns,
            rows=rows,
            stats=QueryStats(
                execution_time_ms=elapsed_ms,
                rows_returned=len(rows),
                rows_affected=affected,
            ),
        )

    def _execute(self, query: str, params: QueryParams) -> Tuple[List[ColumnInfo], List[List[Any]], int]:
        dbapi_conn = self._engine().raw_connection()
        try:
            cursor = dbapi_conn.cursor()
            try:
                if params:
                    cursor.execute(query, params)
                else:
                    cursor.execute(query)

                columns: List[ColumnInfo] = []
                rows: List[List[Any]] = []
                affected = 0
                if cursor.description is None:
                    affected = max(cursor.rowcount, 0)
                else:
                    columns = [self._column_info(desc) for desc in cursor.description]
                    rows = [[to_transport_value(v) for v in row] for row in cursor.fetchall()]
                dbapi_conn.commit()
            finally:
                cursor.close()
        except Exception:
            dbapi_conn.rollback()
            raise
        finally:
            # Returns the DB-API connection to the pool
            dbapi_conn.close()
        return columns, rows, affected

    def _column_info(self, desc) -> ColumnInfo:
        # DB-API 2.0 description: (name, type_code, display_size, internal_size,
        # precision, scale, null_ok). Drivers report null_ok as None when unknown.
        return ColumnInfo(
            name=desc[0],
            type=self._type_name(desc[1]),
            nullable=desc[6] is not False,
        )

    def _type_name(self, type_code: Any) -> str:
        return "" if type_code is None else str(type_code)

    def _engine(self) -> Engine:
        if self.engine is None:
            raise QueryExecutionError("connection is closed")
        return self.engine

    def ping(self) -> None:
        dbapi_conn = self._engine().raw_connection()
        try:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("SELECT 1")
                cursor.fetchall()
            finally:
                cursor.close()
        finally:
            dbapi_conn.close()

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def get_metrics(self) -> ConnectionMetrics:
        if self.engine is None:
            return self._metrics(0, 0)
        pool = self.engine.pool
        checked_out = pool.checkedout() if hasattr(pool, "checkedout") else 0
        idle = pool.checkedin() if hasattr(pool, "checkedin") else 0
        return self._metrics(checked_out + idle, idle)
