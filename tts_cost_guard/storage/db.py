"""
Database connection management.

Provides SQLite connections for flags, config and the usage ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".tts-cost-guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Connections run in autocommit mode so callers open transactions explicitly
    (``BEGIN`` / ``BEGIN IMMEDIATE``) where a read-then-write must be atomic.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=10.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
