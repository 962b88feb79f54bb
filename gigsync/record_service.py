"""
Cloud record services: the server-side authoritative store per record type.

Provides:
- list / get / put / delete / restore / permanent_delete per (userId, id)
- In-place tombstones with a 30-day TTL and a full backup payload
- Trash listing as typed summaries
- A derived listing index that rebuilds itself from the authoritative
  slots whenever it is marked dirty or its size disagrees with the store
"""

import json
import sqlite3
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote

from gigsync.db import Clock, expires_iso, now_iso, parse_iso, to_iso, utc_now
from gigsync.errors import NotDeletedError, NotFoundError
from gigsync.kv import RecordStore
from gigsync.models import (
    RecordType, RETENTION_SECONDS, TOMBSTONE_FIELDS, CLIENT_ONLY_FIELDS,
    trash_item_from_tombstone,
)

logger = logging.getLogger("gigsync.records")


def _sort_key(record: Dict[str, Any]) -> str:
    return str(record.get("updatedAt") or record.get("createdAt") or "")


def strip_tombstone(record: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a record without deletion markers or device-only fields."""
    return {
        k: v for k, v in record.items()
        if k not in TOMBSTONE_FIELDS and k not in CLIENT_ONLY_FIELDS
    }


class RecordService:
    """Authoritative store for one record type."""

    record_type: RecordType = None

    def __init__(self, store: RecordStore, clock: Clock = None):
        self.store = store
        self.clock = clock or store.clock or utc_now

    # ─────────────────────────── KEYS ───────────────────────────

    def prefix_for(self, user_id: str) -> str:
        # user id escaped: no user's prefix may contain another's
        return f"{self.record_type.value}:{quote(str(user_id), safe='')}:"

    def key_for(self, user_id: str, record_id: str) -> str:
        return f"{self.prefix_for(user_id)}{record_id}"

    @staticmethod
    def split_key(key: str) -> Tuple[str, str]:
        """(userId, id) from a slot key."""
        _, user_part, record_id = key.split(":", 2)
        return unquote(user_part), record_id

    def _scan_user(self, user_id: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
        for key, value in self.store.scan(self.prefix_for(user_id)):
            if str(value.get("userId", user_id)) != str(user_id):
                logger.warning(f"Slot {key} belongs to {value.get('userId')}, not {user_id}; skipping")
                continue
            yield key, value

    # ─────────────────────────── DERIVED INDEX ───────────────────────────

    def _index_conn(self):
        return self.store.connect()

    def _index_upsert(self, user_id: str, record: Dict[str, Any]):
        try:
            conn = self._index_conn()
            try:
                conn.execute(
                    """
                    INSERT INTO record_index (user_id, record_type, id, value, sort_key, deleted)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, record_type, id) DO UPDATE SET
                        value = excluded.value,
                        sort_key = excluded.sort_key,
                        deleted = excluded.deleted
                    """,
                    (user_id, self.record_type.value, str(record["id"]), json.dumps(record),
                     _sort_key(record), 1 if record.get("deleted") else 0),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Index write failed for {self.record_type.value} {record.get('id')}: {e}")
            self._mark_dirty(user_id)

    def _index_remove(self, user_id: str, record_id: str):
        try:
            conn = self._index_conn()
            try:
                conn.execute(
                    "DELETE FROM record_index WHERE user_id = ? AND record_type = ? AND id = ?",
                    (user_id, self.record_type.value, record_id),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Index delete failed for {self.record_type.value} {record_id}: {e}")
            self._mark_dirty(user_id)

    def _mark_dirty(self, user_id: str):
        try:
            conn = self._index_conn()
            try:
                conn.execute(
                    """
                    INSERT INTO index_meta (user_id, record_type, dirty) VALUES (?, ?, 1)
                    ON CONFLICT(user_id, record_type) DO UPDATE SET dirty = 1
                    """,
                    (user_id, self.record_type.value),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            # Count mismatch detection still triggers a rebuild later
            logger.error(f"Could not mark {self.record_type.value} index dirty for {user_id}: {e}")

    def mark_dirty(self, user_id: str):
        """Force the next listing to rebuild the index from the store."""
        self._mark_dirty(user_id)

    def _index_state(self, user_id: str):
        conn = self._index_conn()
        try:
            meta = conn.execute(
                "SELECT dirty FROM index_meta WHERE user_id = ? AND record_type = ?",
                (user_id, self.record_type.value),
            ).fetchone()
            count = conn.execute(
                "SELECT COUNT(*) AS n FROM record_index WHERE user_id = ? AND record_type = ?",
                (user_id, self.record_type.value),
            ).fetchone()["n"]
        finally:
            conn.close()
        return bool(meta and meta["dirty"]), count

    def _index_rows(self, user_id: str) -> List[Dict[str, Any]]:
        conn = self._index_conn()
        try:
            rows = conn.execute(
                "SELECT id, value FROM record_index WHERE user_id = ? AND record_type = ? "
                "ORDER BY sort_key DESC",
                (user_id, self.record_type.value),
            ).fetchall()
        finally:
            conn.close()
        records = []
        for row in rows:
            try:
                records.append(json.loads(row["value"]))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping corrupt index row {self.record_type.value} {row['id']}: {e}")
        return records

    def rebuild_index(self, user_id: str) -> List[Dict[str, Any]]:
        """Replace the user's index rows with what the store actually holds."""
        records = [value for _, value in self._scan_user(user_id)]
        conn = self._index_conn()
        try:
            conn.execute(
                "DELETE FROM record_index WHERE user_id = ? AND record_type = ?",
                (user_id, self.record_type.value),
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO record_index (user_id, record_type, id, value, sort_key, deleted)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (user_id, self.record_type.value, str(r.get("id")), json.dumps(r),
                     _sort_key(r), 1 if r.get("deleted") else 0)
                    for r in records if r.get("id") is not None
                ],
            )
            conn.execute(
                """
                INSERT INTO index_meta (user_id, record_type, dirty, rebuilt_at) VALUES (?, ?, 0, ?)
                ON CONFLICT(user_id, record_type) DO UPDATE SET dirty = 0, rebuilt_at = excluded.rebuilt_at
                """,
                (user_id, self.record_type.value, now_iso(self.clock)),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Rebuilt {self.record_type.value} index for {user_id} ({len(records)} records)")
        records.sort(key=_sort_key, reverse=True)
        return records

    def _indexed_records(self, user_id: str) -> List[Dict[str, Any]]:
        dirty, indexed = self._index_state(user_id)
        stored = self.store.count(self.prefix_for(user_id))
        if dirty or indexed != stored:
            if not dirty:
                logger.info(
                    f"{self.record_type.value} index desync for {user_id}: "
                    f"index={indexed} store={stored}, repairing"
                )
            return self.rebuild_index(user_id)
        return self._index_rows(user_id)

    # ─────────────────────────── READS ───────────────────────────

    def list(self, user_id: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active records, or every record changed after ``since`` (tombstones included)."""
        records = self._indexed_records(user_id)
        if since is None:
            return [r for r in records if not r.get("deleted")]

        since_dt = parse_iso(since)
        if since_dt is None:
            return records
        changed = []
        for record in records:
            updated = parse_iso(record.get("updatedAt") or record.get("createdAt"))
            if updated is None or updated > since_dt:
                changed.append(record)
        return changed

    def get_raw(self, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Whatever occupies the slot: active record, tombstone or None."""
        return self.store.get_json(self.key_for(user_id, record_id))

    def get(self, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self.get_raw(user_id, record_id)
        if record is None or record.get("deleted"):
            return None
        return record

    def exists(self, user_id: str, record_id: str) -> bool:
        """True when any slot (active or tombstoned) holds this id."""
        return self.get_raw(user_id, record_id) is not None

    # ─────────────────────────── WRITES ───────────────────────────

    def put(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert an active record, clearing tombstone markers."""
        stored = strip_tombstone(record)
        stored["updatedAt"] = now_iso(self.clock)
        stored.setdefault("createdAt", stored["updatedAt"])
        user_id = str(stored["userId"])
        self.store.put(self.key_for(user_id, stored["id"]), stored)
        self._index_upsert(user_id, stored)
        return stored

    def prepare_backup(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return strip_tombstone(record)

    def delete(self, user_id: str, record_id: str, deleted_by: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Soft-delete in place. Absent ids and existing tombstones are no-ops."""
        key = self.key_for(user_id, record_id)
        existing = self.store.get_json(key)
        if existing is None:
            logger.debug(f"Delete of missing {self.record_type.value} {record_id} ignored")
            return None
        if existing.get("deleted"):
            return existing

        now = self.clock()
        deleted_at = to_iso(now)
        expires_at = expires_iso(now, RETENTION_SECONDS)
        actor = deleted_by or user_id
        tombstone = {
            "id": str(record_id),
            "userId": user_id,
            "deleted": True,
            "deletedAt": deleted_at,
            "deletedBy": actor,
            "metadata": {
                "deletedAt": deleted_at,
                "deletedBy": actor,
                "originalKey": key,
                "expiresAt": expires_at,
            },
            "backup": self.prepare_backup(existing),
            "createdAt": existing.get("createdAt") or deleted_at,
            "updatedAt": deleted_at,
        }
        self.store.put(key, tombstone, ttl=RETENTION_SECONDS)
        self._index_upsert(user_id, tombstone)
        logger.info(f"Tombstoned {self.record_type.value} {record_id} for {user_id} (expires {expires_at})")
        return tombstone

    def list_trash(self, user_id: str) -> List[Dict[str, Any]]:
        """Normalized summaries of the user's tombstones, newest first."""
        summaries = []
        for key, value in self._scan_user(user_id):
            if not value.get("deleted"):
                continue
            try:
                item = trash_item_from_tombstone(self.record_type, value)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable tombstone {key}: {e}")
                continue
            summaries.append(item.to_summary())
        summaries.sort(key=lambda s: s.get("deletedAt") or "", reverse=True)
        return summaries

    def restore(self, user_id: str, record_id: str) -> Dict[str, Any]:
        key = self.key_for(user_id, record_id)
        tombstone = self.store.get_json(key)
        if tombstone is None:
            raise NotFoundError("Item not found in trash")
        if not tombstone.get("deleted"):
            raise NotDeletedError()
        backup = tombstone.get("backup")
        if not isinstance(backup, dict):
            raise NotFoundError("Backup data not found in item")

        restored = strip_tombstone(backup)
        restored["id"] = restored.get("id") or str(record_id)
        restored["userId"] = restored.get("userId") or user_id
        restored["updatedAt"] = now_iso(self.clock)
        self.store.put(key, restored)
        self._index_upsert(user_id, restored)
        logger.info(f"Restored {self.record_type.value} {record_id} for {user_id}")
        return restored

    def permanent_delete(self, user_id: str, record_id: str) -> bool:
        removed = self.store.delete(self.key_for(user_id, record_id))
        self._index_remove(user_id, str(record_id))
        if removed:
            logger.info(f"Permanently deleted {self.record_type.value} {record_id} for {user_id}")
        return removed


class TripService(RecordService):
    record_type = RecordType.TRIP

    def prepare_backup(self, record: Dict[str, Any]) -> Dict[str, Any]:
        # Trips sit in the trash without distance; restoring the mileage log puts it back
        backup = super().prepare_backup(record)
        backup["totalMiles"] = 0
        return backup


class ExpenseService(RecordService):
    record_type = RecordType.EXPENSE


class MileageService(RecordService):
    record_type = RecordType.MILEAGE


def make_services(store: RecordStore, clock: Clock = None) -> Dict[RecordType, RecordService]:
    return {
        RecordType.TRIP: TripService(store, clock),
        RecordType.EXPENSE: ExpenseService(store, clock),
        RecordType.MILEAGE: MileageService(store, clock),
    }
