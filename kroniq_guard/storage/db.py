"""
Database connection management.

Provides SQLite connections for the canonical profile store.
"""

import sqlite3
from pathlib import Path


# Seconds a writer waits for a competing transaction before failing.
BUSY_TIMEOUT = 10.0


def get_connection(db_path: str = "kroniq_guard.db") -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    Transactions are managed explicitly (isolation_level=None) so callers
    can open BEGIN IMMEDIATE blocks for atomic read-modify-write.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with row access by column name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
