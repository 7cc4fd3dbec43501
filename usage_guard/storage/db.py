"""
Database connection management.

Provides SQLite connections for the usage ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "usage_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, busy_timeout: float = 10.0) -> sqlite3.Connection:
    """Create and return a SQLite connection configured for concurrent writers.

    Transactions are controlled explicitly by the caller (autocommit mode),
    WAL lets readers proceed alongside a writer, and the busy timeout bounds
    how long a writer waits for the database lock.

    Args:
        db_path: Path to SQLite database file
        busy_timeout: Seconds to wait for a locked database

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=busy_timeout, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
