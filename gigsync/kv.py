"""
Authoritative key/value record store.

Every cloud record lives in exactly one slot keyed ``<recordType>:<userId>:<id>``.
Slots may carry a time-to-live; an expired slot reads as absent and is
removed lazily (or in bulk by ``purge_expired``).
"""

import json
import sqlite3
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from gigsync.db import Clock, db, to_iso, utc_now

logger = logging.getLogger("gigsync.kv")

_PREFIX_END = "\uffff"


def _epoch(dt: datetime) -> float:
    return dt.replace(tzinfo=timezone.utc).timestamp()


class RecordStore:
    """sqlite-backed KV store with per-key expiry"""

    def __init__(self, connect: Callable[[], sqlite3.Connection] = db, clock: Clock = utc_now):
        self.connect = connect
        self.clock = clock

    def _now_ts(self) -> float:
        return _epoch(self.clock())

    # ─────────────────────────── READS ───────────────────────────

    def get(self, key: str, include_expired: bool = False) -> Optional[str]:
        """Raw JSON text for a live key, or None.

        ``include_expired`` reads a slot whose TTL has passed without dropping it.
        """
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT value, expires_at FROM records WHERE key = ?", (key,)
            ).fetchone()
            if not row:
                return None
            if include_expired:
                return row["value"]
            if row["expires_at"] is not None and row["expires_at"] <= self._now_ts():
                conn.execute("DELETE FROM records WHERE key = ?", (key,))
                conn.commit()
                logger.debug(f"Expired slot removed on read: {key}")
                return None
            return row["value"]
        finally:
            conn.close()

    def get_json(self, key: str, include_expired: bool = False) -> Optional[Dict[str, Any]]:
        """Decoded value for a live key; corrupt JSON reads as absent."""
        raw = self.get(key, include_expired=include_expired)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt JSON in slot {key}: {e}")
            return None
        if not isinstance(value, dict):
            logger.warning(f"Non-object value in slot {key}, ignoring")
            return None
        return value

    def list_keys(
        self,
        prefix: str,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        include_expired: bool = False,
    ) -> List[str]:
        """Live keys under ``prefix`` in key order (``after`` for paging)."""
        sql = "SELECT key FROM records WHERE key >= ? AND key < ?"
        params: list = [prefix, prefix + _PREFIX_END]
        if not include_expired:
            sql += " AND (expires_at IS NULL OR expires_at > ?)"
            params.append(self._now_ts())
        if after is not None:
            sql += " AND key > ?"
            params.append(after)
        sql += " ORDER BY key"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        conn = self.connect()
        try:
            return [row["key"] for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def count(self, prefix: str) -> int:
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM records WHERE key >= ? AND key < ? "
                "AND (expires_at IS NULL OR expires_at > ?)",
                (prefix, prefix + _PREFIX_END, self._now_ts()),
            ).fetchone()
            return row["n"]
        finally:
            conn.close()

    def scan(self, prefix: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (key, value) for every live slot under ``prefix``.

        Slots holding unparsable JSON are skipped with a warning.
        """
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT key, value FROM records WHERE key >= ? AND key < ? "
                "AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                (prefix, prefix + _PREFIX_END, self._now_ts()),
            ).fetchall()
        finally:
            conn.close()

        for row in rows:
            try:
                value = json.loads(row["value"])
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping corrupt record {row['key']}: {e}")
                continue
            if not isinstance(value, dict):
                logger.warning(f"Skipping non-object record {row['key']}")
                continue
            yield row["key"], value

    # ─────────────────────────── WRITES ───────────────────────────

    def put(self, key: str, value: Any, ttl: Optional[int] = None):
        """Write a slot; ``ttl`` in seconds, None clears any previous expiry."""
        text = value if isinstance(value, str) else json.dumps(value)
        now = self.clock()
        expires_at = _epoch(now) + ttl if ttl else None
        conn = self.connect()
        try:
            conn.execute(
                """
                INSERT INTO records (key, value, expires_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (key, text, expires_at, to_iso(now)),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> bool:
        conn = self.connect()
        try:
            cur = conn.execute("DELETE FROM records WHERE key = ?", (key,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """Drop every slot whose TTL has passed."""
        conn = self.connect()
        try:
            cur = conn.execute(
                "DELETE FROM records WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._now_ts(),),
            )
            conn.commit()
            removed = cur.rowcount
        finally:
            conn.close()
        if removed:
            logger.info(f"Purged {removed} expired slots")
        return removed
