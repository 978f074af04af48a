"""
Database connection management.

Provides SQLite connections for durable cache and ledger snapshots.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "pipeline_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with WAL journaling where the filesystem allows it
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
