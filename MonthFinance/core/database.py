"""
Local SQLite persistence for the engine state.

This module provides a small key-value store on top of SQLite. The record store
snapshot, the outbox log and the sync cursor are saved under independent keys.
Each :meth:`DatabaseAPI.save` call runs in its own transaction, so a single key
is never partially written. The schema, particularly the metadata table, is
verified on start and recreated when invalid.
"""

import enum
import json
import logging
import pathlib
import sqlite3
import time
from typing import Any, Dict, List, Optional

from .model import now_str
from ..status import status

SCHEMA_VERSION = 1

META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'schema_version': 'INTEGER',
    'created_at': 'TEXT',
}

KV_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT NOT NULL',
    'saved_at': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Store = 'kvstore'


class Key(enum.StrEnum):
    """Keys of the persisted engine state."""
    State = 'state'
    Outbox = 'outbox'
    Cursor = 'cursor'


class DatabaseAPI:
    """Durable key-value persistence backed by a SQLite file.

    Args:
        db_path: Path of the database file. Defaults to the configured ``db_path``.
    """

    def __init__(self, db_path: Optional[pathlib.Path] = None) -> None:
        if db_path is None:
            from ..settings import lib
            db_path = lib.settings.db_path
        self.db_path = pathlib.Path(db_path)
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the state database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @staticmethod
    def _columns_in_conn(conn: sqlite3.Connection, table_name: str) -> set:
        cursor = conn.execute(f"PRAGMA table_info({table_name})")
        return {row[1] for row in cursor.fetchall()}

    def _initialize_schema_if_needed(self) -> None:
        """
        Ensures the database file and schema are valid.

        A missing or malformed metadata table recreates the metadata table only.
        A malformed key-value table is recreated, dropping its contents.

        Raises:
            status.PersistenceException: If the schema cannot be created.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()

            meta_valid = (
                    self._table_exists_in_conn(conn, Table.Meta.value)
                    and set(META_SCHEMA).issubset(self._columns_in_conn(conn, Table.Meta.value))
            )
            if not meta_valid:
                logging.info(f"Creating metadata table '{Table.Meta.value}'.")
                conn.execute(f"DROP TABLE IF EXISTS {Table.Meta.value}")
                meta_cols_sql = ", ".join(f'"{name}" {typedef}' for name, typedef in META_SCHEMA.items())
                conn.execute(f"CREATE TABLE {Table.Meta.value} ({meta_cols_sql})")
                conn.execute(
                    f"INSERT INTO {Table.Meta.value} (meta_id, schema_version, created_at) VALUES (1, ?, ?)",
                    (SCHEMA_VERSION, now_str())
                )

            kv_exists = self._table_exists_in_conn(conn, Table.Store.value)
            if kv_exists and not set(KV_SCHEMA).issubset(self._columns_in_conn(conn, Table.Store.value)):
                logging.warning(f"Table '{Table.Store.value}' schema is invalid and will be recreated.")
                conn.execute(f"DROP TABLE IF EXISTS {Table.Store.value}")
                kv_exists = False
            if not kv_exists:
                kv_cols_sql = ", ".join(f'"{name}" {typedef}' for name, typedef in KV_SCHEMA.items())
                conn.execute(f"CREATE TABLE {Table.Store.value} ({kv_cols_sql})")
                logging.debug(f"Created table '{Table.Store.value}'.")

            conn.commit()
        except sqlite3.Error as e:
            logging.error(f"SQLite error during schema initialization: {e}", exc_info=True)
            raise status.PersistenceException(f'Could not initialize {self.db_path}: {e}') from e
        finally:
            if conn:
                conn.close()

    def load(self, key: str) -> Optional[Any]:
        """Load the value saved under ``key``.

        Args:
            key: The state key.

        Returns:
            The decoded value, or None if nothing valid is stored under the key.

        Raises:
            status.PersistenceException: If the database cannot be read.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(
                f"SELECT value FROM {Table.Store.value} WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            logging.error(f'Error loading "{key}" from DB: {e}', exc_info=True)
            raise status.PersistenceException(f'Could not load "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

        if not row:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logging.warning(f'Stored value for "{key}" is not valid JSON and will be ignored: {e}')
            return None

    def save(self, key: str, value: Any) -> None:
        """Atomically replace the value saved under ``key``.

        Args:
            key: The state key.
            value: A JSON serialisable value.

        Raises:
            status.PersistenceException: If the value cannot be serialised or written.
        """
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise status.PersistenceException(f'Could not serialise "{key}": {e}') from e

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {Table.Store.value} (key, value, saved_at) VALUES (?, ?, ?)",
                    (key, payload, now_str())
                )
            logging.debug(f'Saved "{key}" ({len(payload)} bytes).')
        except sqlite3.Error as e:
            logging.error(f'Failed to save "{key}": {e}', exc_info=True)
            raise status.PersistenceException(f'Could not save "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def remove(self, key: str) -> None:
        """Remove the value saved under ``key``, if any."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(f"DELETE FROM {Table.Store.value} WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise status.PersistenceException(f'Could not remove "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def keys(self) -> List[str]:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            return [row[0] for row in conn.execute(f"SELECT key FROM {Table.Store.value} ORDER BY key")]
        except sqlite3.Error as e:
            raise status.PersistenceException(f'Could not list keys: {e}') from e
        finally:
            if conn:
                conn.close()

    def schema_version(self) -> Optional[int]:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(f"SELECT schema_version FROM {Table.Meta.value} WHERE meta_id=1").fetchone()
            return row[0] if row else None
        finally:
            if conn:
                conn.close()

    def delete(self) -> None:
        """Delete the database file, retrying on failure.

        Raises:
            status.PersistenceException: If unable to remove the database file after retries.
        """
        if not self.db_path.exists():
            logging.debug('No state database found to delete.')
            return

        max_attempts = 5
        attempt = 0
        wait_seconds = 1.0

        while attempt < max_attempts:
            attempt += 1
            try:
                self.db_path.unlink()
                logging.info(f'State database removed: {self.db_path}')
                return
            except OSError as ex:
                logging.error(f'Error removing state DB (attempt {attempt}/{max_attempts}): {ex}')
                if attempt < max_attempts:
                    logging.debug(f'Retrying in {wait_seconds} seconds...')
                    time.sleep(wait_seconds)
                    wait_seconds *= 1.5
                else:
                    raise status.PersistenceException(
                        f'Failed to remove state DB {self.db_path} after {max_attempts} attempts: {ex}'
                    ) from ex
