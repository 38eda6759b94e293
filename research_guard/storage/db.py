"""
Database connection management.

Provides the SQLite connection backing the local usage ledger.
"""

import sqlite3
from pathlib import Path


DEFAULT_DB_PATH = "research_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection for the usage ledger.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled and a
        busy timeout so concurrent writers wait instead of failing
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=10)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
