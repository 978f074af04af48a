"""
Key-value storage backends.

The cache and the spend ledger persist through the Storage protocol so their
logic stays independent of where snapshots live.
"""

import sqlite3
from datetime import datetime
from typing import Dict, Optional, Protocol

from pipeline_guard.core.errors import StorageError
from .db import DEFAULT_DB_PATH, get_connection


class Storage(Protocol):
    """Durable string key-value store."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def list(self, prefix: str = "") -> Dict[str, str]:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStorage:
    """In-process storage, used in tests and when no database is configured."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def list(self, prefix: str = "") -> Dict[str, str]:
        return {k: v for k, v in self._data.items() if k.startswith(prefix)}

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_store table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteStorage:
    """Storage backed by a single SQLite table.

    Each operation opens its own connection, so an instance can be shared
    by every service in the process. All sqlite3 errors are re-raised as
    StorageError.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, create: bool = True):
        """Initialize the storage with a database path.

        Args:
            db_path: Path to SQLite database file
            create: Create the schema when it does not exist yet
        """
        self.db_path = db_path
        if create:
            try:
                initialize_schema(db_path)
            except sqlite3.Error as e:
                raise StorageError(f"Could not initialize {db_path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
                return row[0] if row else None
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"get {key!r} failed: {e}") from e

    def set(self, key: str, value: str) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, datetime.now().isoformat()),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"set {key!r} failed: {e}") from e

    def list(self, prefix: str = "") -> Dict[str, str]:
        # LIKE would treat "_" and "%" in keys as wildcards
        try:
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT key, value FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                ).fetchall()
                return {row[0]: row[1] for row in rows}
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"list {prefix!r} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"delete {key!r} failed: {e}") from e
