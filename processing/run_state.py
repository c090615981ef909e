"""
Cross-process run lock kept in the shared database.

Scheduled runs are separate processes (cron starts ``main.py run``), so
an in-memory lock can't tell one run that another is still going.  The
lock is a row in ``run_state`` instead: whoever inserts it holds it, and
every process (or host, on Turso) sees the same row.

Key concepts:
    - INSERT OR IGNORE on the primary key is the atomic "try acquire"
    - The holder is ``hostname:pid`` so only the owner releases its lock
    - A lock older than RUN_LOCK_TTL_MINUTES is treated as abandoned
      (the process was killed before it could release)
"""

import logging
import os
import socket
from datetime import datetime, timedelta, timezone

from config import RUN_LOCK_TTL_MINUTES
from processing.database import get_connection, transaction, fetch_one

logger = logging.getLogger(__name__)

SCHEDULED_RUN = "scheduled_run"

_STAMP = "%Y-%m-%d %H:%M:%S"


def _holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _cutoff(ttl_minutes: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=ttl_minutes)).strftime(_STAMP)


def acquire(name: str = SCHEDULED_RUN, ttl_minutes: int = RUN_LOCK_TTL_MINUTES) -> bool:
    """Take the lock without waiting.  False when a live holder has it."""
    now = datetime.now(timezone.utc).strftime(_STAMP)
    with get_connection() as conn:
        with transaction(conn):
            stale = conn.execute(
                "DELETE FROM run_state WHERE name = ? AND acquired_at < ?",
                (name, _cutoff(ttl_minutes)),
            )
            if stale.rowcount:
                logger.warning("Cleared abandoned %s lock (older than %d min)",
                               name, ttl_minutes)
            cursor = conn.execute(
                "INSERT OR IGNORE INTO run_state (name, holder, acquired_at) VALUES (?, ?, ?)",
                (name, _holder(), now),
            )
            acquired = cursor.rowcount == 1

    if acquired:
        logger.debug("%s lock acquired by %s", name, _holder())
    return acquired


def release(name: str = SCHEDULED_RUN):
    """Drop the lock if this process holds it."""
    with get_connection() as conn:
        with transaction(conn):
            conn.execute(
                "DELETE FROM run_state WHERE name = ? AND holder = ?",
                (name, _holder()),
            )


def holder(name: str = SCHEDULED_RUN, ttl_minutes: int = RUN_LOCK_TTL_MINUTES) -> dict | None:
    """The live lock row (holder, acquired_at), or None when nobody holds it."""
    with get_connection() as conn:
        return fetch_one(
            conn,
            "SELECT holder, acquired_at FROM run_state WHERE name = ? AND acquired_at >= ?",
            (name, _cutoff(ttl_minutes)),
        )


def is_running(name: str = SCHEDULED_RUN) -> bool:
    """True while some process holds a live lock for ``name``."""
    return holder(name) is not None
