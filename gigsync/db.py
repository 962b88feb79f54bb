"""
Database and clock helpers for the GigSync server.

Provides:
- sqlite connection factory (path from DB_PATH)
- Schema initialisation for the record store, derived index and settings
- UTC timestamp helpers shared by every module
"""

import os
import sqlite3
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from gigsync.models import ALL_SERVER_TABLES, INDEXES

logger = logging.getLogger("gigsync.db")

Clock = Callable[[], datetime]


# ─────────────────────────── DATABASE HELPERS ───────────────────────────

def get_db_path():
    """Get database path from environment."""
    return os.getenv("DB_PATH", "/data/gigsync.db")


def db():
    """Get database connection."""
    conn = sqlite3.connect(get_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(connect: Callable[[], sqlite3.Connection] = None):
    """Create the record store, index and settings tables."""
    conn = (connect or db)()
    cur = conn.cursor()

    for table_sql in ALL_SERVER_TABLES:
        cur.execute(table_sql)

    for index_sql in INDEXES:
        try:
            cur.execute(index_sql)
        except sqlite3.Error as e:
            logger.warning(f"Index creation warning: {e}")

    conn.commit()
    conn.close()
    logger.info("Record store tables initialized")


# ─────────────────────────── TIME HELPERS ───────────────────────────

def utc_now() -> datetime:
    """Naive UTC now; every stored timestamp is UTC with a trailing Z."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds") + "Z"


def now_iso(clock: Optional[Clock] = None) -> str:
    return to_iso((clock or utc_now)())


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with or without Z) to naive UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def expires_iso(dt: datetime, seconds: int) -> str:
    return to_iso(dt + timedelta(seconds=seconds))
