import json
import os
import sqlite3
import tempfile
import unittest
from unittest.mock import MagicMock

from backend.app.core.exceptions import ConnectionFailedError, UnsupportedDataSourceError
from backend.app.datasource.registry import Registry
from backend.app.models.connection_config import DataSourceType, PostgreSQLConfig
from backend.app.models.datasource import DataSource
from backend.app.services.datasource_service import DataSourceService
from backend.app.services.metadata_store import create_metadata_store


class TestDataSourceService(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "numbers.db")
        conn = sqlite3.connect(self.db_path)
        conn.execute("CREATE TABLE numbers (n INTEGER NOT NULL)")
        conn.executemany("INSERT INTO numbers VALUES (?)", [(i,) for i in range(10)])
        conn.commit()
        conn.close()

        self.store = create_metadata_store("sqlite", ":memory:")
        self.service = DataSourceService(self.store, Registry(), connect_timeout=2)
        self.service.initialize_plugins()
        self.datasource = self.store.create_datasource(DataSource(
            name="numbers", type="sqlite", config=json.dumps({"path": self.db_path}),
        ))

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_initialize_registers_every_builtin_type(self):
        self.assertEqual(set(self.service.registry.get_supported_types()), set(DataSourceType))

    def test_get_plugin_unknown_type(self):
        with self.assertRaises(UnsupportedDataSourceError):
            self.service.get_plugin("mysql")

    def test_load_config_fills_defaults(self):
        datasource = DataSource(name="pg", type="postgresql", config='{"host": "db"}')
        config = self.service.load_config(datasource)
        self.assertIsInstance(config, PostgreSQLConfig)
        self.assertEqual(config.port, 5432)

    def test_test_datasource(self):
        result = self.service.test_datasource(self.datasource)
        self.assertTrue(result.is_connected)

    def test_test_datasource_with_broken_config(self):
        broken = DataSource(name="broken", type="sqlite", config="{not json")
        result = self.service.test_datasource(broken)
        self.assertFalse(result.is_connected)
        self.assertIn("not valid JSON", result.message)

        unknown = DataSource(name="unknown", type="mysql", config="{}")
        self.assertFalse(self.service.test_datasource(unknown).is_connected)

    def test_query_applies_limit(self):
        result = self.service.query(self.datasource, "SELECT n FROM numbers ORDER BY n", limit=3)
        self.assertEqual(result.rows, [[0], [1], [2]])
        self.assertEqual(result.stats.rows_returned, 3)

        full = self.service.query(self.datasource, "SELECT n FROM numbers WHERE n > ?", [7])
        self.assertEqual(full.rows, [[8], [9]])

    def test_schema_and_tables(self):
        schema = self.service.get_schema(self.datasource)
        self.assertIn("main", [db.name for db in schema.databases])
        tables = self.service.get_tables(self.datasource, "main")
        self.assertEqual([t.name for t in tables], ["numbers"])

    def test_open_connection_closes_on_error(self):
        conn = MagicMock()
        plugin = MagicMock()
        plugin.parse_config.return_value = MagicMock()
        plugin.connect.return_value = conn
        self.service.registry.get = MagicMock(return_value=plugin)

        with self.assertRaises(RuntimeError):
            with self.service.open_connection(self.datasource):
                raise RuntimeError("boom")
        conn.close.assert_called_once()
        plugin.connect.assert_called_once_with(plugin.parse_config.return_value, 2)

    def test_unreachable_datasource(self):
        gone = DataSource(name="gone", type="sqlite", config=json.dumps({"path": self.db_path + ".missing"}))
        with self.assertRaises(ConnectionFailedError):
            self.service.get_schema(gone)

    def test_health_check(self):
        self.service.health_check()


if __name__ == "__main__":
    unittest.main()
