"""Database initialization and connection management.

Runs migrations on first boot, provides connection factory.
"""

import pathlib
import sqlite3


_MIGRATION_DIR = pathlib.Path(__file__).resolve().parent.parent.parent / "db" / "migrations"


def init_db(db_path: str) -> None:
    """Initialize the database by running the initial schema.

    Every statement in the schema is ``IF NOT EXISTS`` / ``OR IGNORE`` so
    running it against an existing database is a no-op.

    Args:
        db_path: Path to the SQLite database file.
    """
    conn = sqlite3.connect(db_path)
    try:
        migration_file = _MIGRATION_DIR / "001_initial_schema.sql"
        conn.executescript(migration_file.read_text(encoding="utf-8"))
    finally:
        conn.close()


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with row-factory enabled.

    ``isolation_level=None`` leaves transaction control to the caller, so
    multi-statement writes open ``BEGIN IMMEDIATE`` explicitly.  The busy
    timeout lets a second writer wait for the first instead of failing.

    Callers are responsible for closing the connection.
    """
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn
