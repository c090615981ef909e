"""
Database connection abstraction for the price index.

Provides a single get_connection() function that returns either:
  - A Turso (libsql) cloud connection when TURSO_DATABASE_URL is set
  - A local SQLite connection as fallback

This allows the same SQL code to work both locally and against the
shared hosted database the lending platform reads from.

Key concepts:
    - Environment variables control which database backend is used
    - The connection object supports the same API (execute, fetchall, etc.)
    - transaction() groups writes so they either ALL land or ALL roll back
    - Rows come back as plain dicts so callers don't depend on a row factory
"""

import logging
import os
import sqlite3
from contextlib import contextmanager

from config import DB_PATH, STORAGE_DIR, TURSO_DATABASE_URL, TURSO_AUTH_TOKEN

logger = logging.getLogger(__name__)


def get_connection():
    """
    Get a database connection — cloud (Turso) or local (SQLite).

    If TURSO_DATABASE_URL and TURSO_AUTH_TOKEN are configured in config.py
    (via environment variables), connects to a hosted Turso database.
    Otherwise, falls back to the local SQLite file.

    Returns
    -------
    connection
        A database connection object supporting standard DB-API 2.0 methods.
    """
    if TURSO_DATABASE_URL and TURSO_AUTH_TOKEN:
        try:
            import libsql
            # libsql needs a local file for caching + sync_url for the cloud DB
            os.makedirs(STORAGE_DIR, exist_ok=True)
            local_replica = os.path.join(STORAGE_DIR, "local.db")
            conn = libsql.connect(
                local_replica,
                sync_url=TURSO_DATABASE_URL,
                auth_token=TURSO_AUTH_TOKEN,
            )
            conn.sync()
            return conn
        except ImportError:
            logger.warning("libsql not installed — using local SQLite at %s", DB_PATH)
        except Exception:
            logger.error("Turso connection failed — using local SQLite at %s",
                         DB_PATH, exc_info=True)

    # Local SQLite fallback
    os.makedirs(os.path.dirname(DB_PATH) or ".", exist_ok=True)
    return sqlite3.connect(DB_PATH)


def is_cloud() -> bool:
    """Check if we're configured to use Turso cloud database."""
    return bool(TURSO_DATABASE_URL and TURSO_AUTH_TOKEN)


@contextmanager
def transaction(conn):
    """
    Run the enclosed statements as one transaction.

        with transaction(conn):
            conn.execute("UPDATE ...")
            conn.execute("INSERT ...")

    Any exception rolls everything back and is re-raised.
    """
    conn.execute("BEGIN")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


@contextmanager
def savepoint(conn, name: str):
    """
    Nested, individually revertible step inside an open transaction.

    On error only this step's writes are undone; the outer transaction
    stays open and the exception is re-raised.
    """
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
        conn.execute(f"RELEASE SAVEPOINT {name}")
    except Exception:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise


def fetch_all(conn, sql: str, params: tuple = ()) -> list[dict]:
    """Run a SELECT and return every row as a dict keyed by column name."""
    cursor = conn.execute(sql, params)
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def fetch_one(conn, sql: str, params: tuple = ()) -> dict | None:
    """Run a SELECT and return the first row as a dict, or None."""
    cursor = conn.execute(sql, params)
    row = cursor.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cursor.description]
    return dict(zip(columns, row))
