import time
import unittest

from backend.app.core.exceptions import ConfigurationError, DuplicateDataSourceError
from backend.app.models.datasource import DataSource
from backend.app.services.metadata_store import DataSourceFilter, create_metadata_store


class TestMetadataStore(unittest.TestCase):
    def setUp(self):
        self.store = create_metadata_store("sqlite", ":memory:", migrate_on_start=True)
        self.pg = self.store.create_datasource(DataSource(
            name="warehouse", type="postgresql", config='{"host": "db"}',
            tags=["prod", "eu"], created_by="alice",
        ))
        self.ch = self.store.create_datasource(DataSource(
            name="events", type="clickhouse", config='{"host": "ch"}', tags=["prod"], created_by="bob",
        ))
        self.lite = self.store.create_datasource(DataSource(
            name="scratch", type="sqlite", config='{"path": "/tmp/x.db"}', is_active=False, created_by="alice",
        ))

    def tearDown(self):
        self.store.close()

    def test_create_assigns_ids(self):
        self.assertIsNotNone(self.pg.id)
        self.assertNotEqual(self.pg.id, self.ch.id)
        self.assertEqual(self.store.get_datasource(self.pg.id).config_dict(), {"host": "db"})

    def test_duplicate_name(self):
        with self.assertRaises(DuplicateDataSourceError):
            self.store.create_datasource(DataSource(name="warehouse", type="sqlite", config="{}"))

    def test_get_by_name(self):
        self.assertEqual(self.store.get_datasource_by_name("events").id, self.ch.id)
        self.assertIsNone(self.store.get_datasource_by_name("nope"))
        self.assertIsNone(self.store.get_datasource(9999))

    def test_filters(self):
        def names(**kwargs):
            return [ds.name for ds in self.store.list_datasources(DataSourceFilter(**kwargs))]

        self.assertEqual(names(), ["warehouse", "events", "scratch"])
        self.assertEqual(names(type="clickhouse"), ["events"])
        self.assertEqual(names(is_active=False), ["scratch"])
        self.assertEqual(names(created_by="alice"), ["warehouse", "scratch"])
        self.assertEqual(names(tags=["prod"]), ["warehouse", "events"])
        self.assertEqual(names(tags=["prod", "eu"]), ["warehouse"])
        self.assertEqual(self.store.count_datasources(DataSourceFilter(tags=["prod"])), 2)

    def test_pagination(self):
        page = self.store.list_datasources(skip=1, limit=1)
        self.assertEqual([ds.name for ds in page], ["events"])

    def test_partial_update(self):
        before = self.store.get_datasource(self.ch.id)
        time.sleep(0.01)
        updated = self.store.update_datasource(self.ch.id, {"description": "click stream"})

        self.assertEqual(updated.description, "click stream")
        self.assertEqual(updated.name, "events")
        self.assertEqual(updated.tags, ["prod"])
        self.assertGreater(updated.updated_at, before.updated_at)
        self.assertEqual(updated.created_at, before.created_at)

    def test_new_records_carry_aware_timestamps(self):
        fresh = DataSource(name="fresh", type="sqlite", config="{}")
        self.assertIsNotNone(fresh.created_at.tzinfo)
        self.assertIsNotNone(fresh.updated_at.tzinfo)

        stored = self.store.create_datasource(fresh)
        updated = self.store.update_datasource(stored.id, {"tags": ["new"]})
        self.assertEqual(updated.tags, ["new"])

    def test_null_in_required_column_is_not_a_duplicate(self):
        with self.assertRaises(ConfigurationError) as ctx:
            self.store.update_datasource(self.ch.id, {"is_active": None})
        self.assertNotIsInstance(ctx.exception, DuplicateDataSourceError)
        self.assertTrue(self.store.get_datasource(self.ch.id).is_active)

    def test_update_missing_and_rename_conflict(self):
        self.assertIsNone(self.store.update_datasource(9999, {"description": "x"}))
        with self.assertRaises(DuplicateDataSourceError):
            self.store.update_datasource(self.ch.id, {"name": "warehouse"})

    def test_delete(self):
        self.assertTrue(self.store.delete_datasource(self.lite.id))
        self.assertFalse(self.store.delete_datasource(self.lite.id))
        self.assertIsNone(self.store.get_datasource(self.lite.id))

    def test_stats(self):
        stats = self.store.get_datasource_stats()
        self.assertEqual(stats.total, 3)
        self.assertEqual(stats.active, 2)
        self.assertEqual(stats.count_by_type, {"postgresql": 1, "clickhouse": 1, "sqlite": 1})

    def test_health_check(self):
        self.store.health_check()

    def test_unsupported_store_type(self):
        with self.assertRaises(ConfigurationError):
            create_metadata_store("mongodb", "mongodb://localhost")


if __name__ == "__main__":
    unittest.main()
