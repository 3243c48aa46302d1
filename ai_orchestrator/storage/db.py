"""
Database connection management.

Provides the SQLite connection backing the usage ledger and session store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_orchestrator.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Parent directories are created so a fresh path can be used directly.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
