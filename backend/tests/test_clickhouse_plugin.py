import unittest
from unittest.mock import MagicMock, patch

from clickhouse_driver.errors import ServerException

from backend.app.core.exceptions import ConfigurationError, ConnectionFailedError, QueryExecutionError
from backend.app.datasource.plugins.clickhouse import ClickHouseConnection, ClickHousePlugin
from backend.app.models.connection_config import ClickHouseConfig, PostgreSQLConfig, SQLiteConfig


def make_client():
    client = MagicMock()
    client.last_query = None
    return client


class TestClickHouseConnection(unittest.TestCase):
    def setUp(self):
        self.client = make_client()
        self.conn = ClickHouseConnection(self.client, ClickHouseConfig(host="ch", database="logs"))

    def test_query_columns_and_stats(self):
        self.client.execute.return_value = (
            [(1, "a", None), (2, "b", b"x")],
            [("id", "UInt64"), ("name", "String"), ("extra", "Nullable(String)")],
        )
        self.client.last_query = MagicMock()
        self.client.last_query.progress.written_rows = 0
        self.client.last_query.progress.bytes = 512

        result = self.conn.query("SELECT id, name, extra FROM t WHERE id > %(min)s", {"min": 0})

        self.client.execute.assert_called_once_with(
            "SELECT id, name, extra FROM t WHERE id > %(min)s", {"min": 0}, with_column_types=True
        )
        self.assertEqual([c.nullable for c in result.columns], [False, False, True])
        self.assertEqual(result.rows, [[1, "a", None], [2, "b", "x"]])
        self.assertEqual(result.stats.rows_returned, 2)
        self.assertEqual(result.stats.bytes_read, 512)

    def test_row_list_params_rejected_outside_insert(self):
        with self.assertRaises(QueryExecutionError) as ctx:
            self.conn.query("SELECT id FROM t WHERE id > %(id)s", [1])
        self.assertIn("INSERT", str(ctx.exception))
        self.client.execute.assert_not_called()
        self.assertEqual(self.conn.get_metrics().total_queries, 0)

    def test_row_list_params_sent_for_insert(self):
        self.client.execute.return_value = ([], [])
        rows = [(1, "a"), (2, "b")]

        self.conn.query("  insert INTO t (id, name) VALUES", rows)

        self.client.execute.assert_called_once_with(
            "  insert INTO t (id, name) VALUES", rows, with_column_types=True
        )

    def test_driver_errors_are_wrapped(self):
        self.client.execute.side_effect = ServerException("Table logs.nope doesn't exist", code=60)
        with self.assertRaises(QueryExecutionError):
            self.conn.query("SELECT * FROM nope")
        self.assertEqual(self.conn.get_metrics().active_queries, 0)

    def test_schema_survives_failing_database(self):
        def execute(query, params=None, with_column_types=False):
            if "system.databases" in query:
                return [("default",), ("secret",)], [("name", "String")]
            if "system.tables" in query:
                if params["database"] == "secret":
                    raise ServerException("Not enough privileges", code=497)
                return [("events", "MergeTree", 10, 2048), ("v", "View", None, None)], [
                    ("name", "String"), ("engine", "String"),
                    ("total_rows", "Nullable(UInt64)"), ("total_bytes", "Nullable(UInt64)"),
                ]
            if "system.columns" in query:
                return [("ts", "DateTime"), ("user", "Nullable(String)")], [("name", "String"), ("type", "String")]
            raise AssertionError(query)

        self.client.execute.side_effect = execute
        with self.assertLogs("backend.app.datasource.plugins.clickhouse", level="WARNING"):
            schema = self.conn.get_schema()

        default, secret = schema.databases
        self.assertEqual(secret.tables, [])
        events, view = default.tables
        self.assertEqual(events.type, "MergeTree")
        self.assertEqual(events.row_count, 10)
        self.assertEqual([c.nullable for c in events.columns], [False, True])
        self.assertIsNone(view.row_count)
        self.assertIsNone(view.size_bytes)

    def test_close_is_idempotent(self):
        self.conn.close()
        self.conn.close()
        self.client.disconnect.assert_called_once()
        self.assertEqual(self.conn.get_metrics().open_connections, 0)


class TestClickHousePlugin(unittest.TestCase):
    def setUp(self):
        self.plugin = ClickHousePlugin()

    def test_validate_config_rejects_other_variants(self):
        with self.assertRaises(ConfigurationError):
            self.plugin.validate_config(PostgreSQLConfig(host="db"))
        with self.assertRaises(ConfigurationError) as ctx:
            self.plugin.connect(SQLiteConfig(path="/tmp/a.db"))
        self.assertIn("invalid config type", str(ctx.exception))

    @patch("backend.app.datasource.plugins.clickhouse.Client")
    def test_connect_passes_defaults_and_timeout(self, client_class):
        client_class.return_value = make_client()
        self.plugin.connect(ClickHouseConfig(host="ch"), timeout=3)
        client_class.assert_called_once_with(
            host="ch",
            port=9000,
            database="default",
            user="default",
            password="",
            secure=False,
            connect_timeout=3,
            send_receive_timeout=3,
        )

    @patch("backend.app.datasource.plugins.clickhouse.Client")
    def test_failed_ping_disconnects(self, client_class):
        client = make_client()
        client.execute.side_effect = EOFError("Unexpected EOF while reading bytes")
        client_class.return_value = client

        with self.assertRaises(ConnectionFailedError):
            self.plugin.connect(ClickHouseConfig(host="ch"))
        client.disconnect.assert_called_once()

    @patch("backend.app.datasource.plugins.clickhouse.Client")
    def test_test_connection(self, client_class):
        client = make_client()
        client_class.return_value = client

        result = self.plugin.test_connection(ClickHouseConfig(host="ch"))
        self.assertTrue(result.is_connected)
        self.assertEqual(result.message, "Connection successful")
        client.disconnect.assert_called_once()


if __name__ == "__main__":
    unittest.main()
