"""
Integration tests for MonthFinance.core.database
(using unittest, not pytest).
"""
import sqlite3
from unittest.mock import patch

from MonthFinance.core.database import SCHEMA_VERSION, DatabaseAPI, Key, Table
from MonthFinance.settings import lib
from MonthFinance.status import status
from tests.base import BaseTestCase


class DatabaseAPITests(BaseTestCase):
    def test_default_path_comes_from_settings(self):
        self.assertEqual(DatabaseAPI().db_path, lib.settings.db_path)
        self.assertTrue(lib.settings.db_path.exists())

    def test_schema_version(self):
        self.assertEqual(self.db.schema_version(), SCHEMA_VERSION)

    def test_save_load_remove(self):
        self.assertIsNone(self.db.load(Key.Cursor))

        self.db.save(Key.Cursor, '2025-03-14T12:00:00+00:00')
        self.db.save(Key.Outbox, [{'op_id': '1'}])
        self.assertEqual(self.db.load(Key.Cursor), '2025-03-14T12:00:00+00:00')
        self.assertEqual(self.db.keys(), ['cursor', 'outbox'])

        self.db.save(Key.Cursor, 'replaced')
        self.assertEqual(self.db.load(Key.Cursor), 'replaced')

        self.db.remove(Key.Cursor)
        self.assertIsNone(self.db.load(Key.Cursor))
        self.assertEqual(self.db.keys(), ['outbox'])

    def test_values_survive_reopen(self):
        self.db.save(Key.State, {'version': 1, 'months': {}})
        reopened = DatabaseAPI(self.db.db_path)
        self.assertEqual(reopened.load(Key.State), {'version': 1, 'months': {}})

    def test_corrupt_value_loads_as_none(self):
        conn = self.db.connection()
        with conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {Table.Store.value} (key, value, saved_at) VALUES (?, ?, ?)",
                (Key.State.value, '{not json', None)
            )
        conn.close()
        self.assertIsNone(self.db.load(Key.State))

    def test_unserialisable_value_raises(self):
        with self.assertRaises(status.PersistenceException):
            self.db.save(Key.State, {'value': object()})

    def test_sqlite_errors_become_persistence_errors(self):
        with patch.object(DatabaseAPI, 'connection', side_effect=sqlite3.OperationalError('locked')):
            with self.assertRaises(status.PersistenceException):
                self.db.save(Key.Cursor, 'x')
            with self.assertRaises(status.PersistenceException):
                self.db.load(Key.Cursor)

    def test_invalid_kv_table_is_recreated(self):
        conn = self.db.connection()
        with conn:
            conn.execute(f"DROP TABLE {Table.Store.value}")
            conn.execute(f"CREATE TABLE {Table.Store.value} (bogus TEXT)")
        conn.close()

        db = DatabaseAPI(self.db.db_path)
        db.save(Key.Cursor, 'x')
        self.assertEqual(db.load(Key.Cursor), 'x')

    def test_delete(self):
        self.db.delete()
        self.assertFalse(self.db.db_path.exists())
        self.db.delete()
