"""
Durable on-device store.

Each record namespace (trips, expenses, mileage, trash) is a table of JSON
documents with secondary indexes on user and sync timestamps. The pending
mutation queue, the dead-letter table and sync watermarks live alongside.
Deleting a missing id is a no-op; corrupt documents are skipped on scans.
"""

import os
import json
import sqlite3
import logging
from typing import Any, Dict, List, Optional

from gigsync.db import now_iso
from gigsync.models import (
    FAILED_MUTATIONS_TABLE, LOCAL_INDEXES, LOCAL_NAMESPACES, SYNC_META_TABLE,
    SYNC_QUEUE_TABLE, FailureReason, PendingMutation, QueueAction, local_namespace_table,
)

logger = logging.getLogger("gigsync.local")


def get_local_db_path():
    return os.getenv("LOCAL_DB_PATH", "/data/gigsync-local.db")


class LocalStore:
    def __init__(self, path: Optional[str] = None):
        self.path = path or get_local_db_path()
        self.init()

    def connect(self):
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def init(self):
        conn = self.connect()
        cur = conn.cursor()
        for namespace in LOCAL_NAMESPACES:
            cur.execute(local_namespace_table(namespace))
        for table_sql in (SYNC_QUEUE_TABLE, FAILED_MUTATIONS_TABLE, SYNC_META_TABLE):
            cur.execute(table_sql)
        for index_sql in LOCAL_INDEXES:
            cur.execute(index_sql)
        conn.commit()
        conn.close()

    @staticmethod
    def _check(namespace: str):
        if namespace not in LOCAL_NAMESPACES:
            raise ValueError(f"Unknown local namespace: {namespace}")

    @staticmethod
    def _decode(namespace: str, row) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(row["data"])
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping corrupt {namespace} record {row['id']}: {e}")
            return None

    # ─────────────────────────── RECORDS ───────────────────────────

    def get(self, namespace: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._check(namespace)
        conn = self.connect()
        row = conn.execute(f"SELECT id, data FROM {namespace} WHERE id = ?", (record_id,)).fetchone()
        conn.close()
        return self._decode(namespace, row) if row else None

    def get_all_by_user(self, namespace: str, user_id: str) -> List[Dict[str, Any]]:
        self._check(namespace)
        conn = self.connect()
        rows = conn.execute(
            f"SELECT id, data FROM {namespace} WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
        ).fetchall()
        conn.close()
        records = (self._decode(namespace, row) for row in rows)
        return [r for r in records if r is not None]

    def get_by_sync_status(self, namespace: str, status: str) -> List[Dict[str, Any]]:
        self._check(namespace)
        conn = self.connect()
        rows = conn.execute(
            f"SELECT id, data FROM {namespace} WHERE sync_status = ? ORDER BY updated_at",
            (status,),
        ).fetchall()
        conn.close()
        records = (self._decode(namespace, row) for row in rows)
        return [r for r in records if r is not None]

    def put(self, namespace: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self._check(namespace)
        conn = self.connect()
        conn.execute(
            f"""
            INSERT INTO {namespace} (id, user_id, sync_status, updated_at, data) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                sync_status = excluded.sync_status,
                updated_at = excluded.updated_at,
                data = excluded.data
            """,
            (
                str(record["id"]),
                record.get("userId"),
                record.get("syncStatus"),
                record.get("updatedAt") or record.get("deletedAt"),
                json.dumps(record),
            ),
        )
        conn.commit()
        conn.close()
        return record

    def delete(self, namespace: str, record_id: str):
        self._check(namespace)
        conn = self.connect()
        conn.execute(f"DELETE FROM {namespace} WHERE id = ?", (record_id,))
        conn.commit()
        conn.close()

    # ─────────────────────────── QUEUE ───────────────────────────

    @staticmethod
    def _row_to_mutation(row) -> PendingMutation:
        try:
            data = json.loads(row["data"] or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt payload on queue item {row['id']}: {e}")
            data = {}
        return PendingMutation(
            id=row["id"],
            action=QueueAction(row["action"]),
            trip_id=row["trip_id"],
            data=data,
            timestamp=row["timestamp"],
            retries=row["retries"] or 0,
            last_error=row["last_error"],
        )

    def add_queue_item(self, item: PendingMutation) -> int:
        conn = self.connect()
        cur = conn.execute(
            "INSERT INTO sync_queue (action, trip_id, data, timestamp, retries, last_error) VALUES (?, ?, ?, ?, ?, ?)",
            (item.action.value, item.trip_id, json.dumps(item.data), item.timestamp, item.retries, item.last_error),
        )
        conn.commit()
        item.id = cur.lastrowid
        conn.close()
        return item.id

    def get_queue(self) -> List[PendingMutation]:
        """Queue snapshot in enqueue order."""
        conn = self.connect()
        rows = conn.execute("SELECT * FROM sync_queue ORDER BY id").fetchall()
        conn.close()
        return [self._row_to_mutation(row) for row in rows]

    def update_queue_item(self, item: PendingMutation):
        conn = self.connect()
        conn.execute(
            "UPDATE sync_queue SET retries = ?, last_error = ?, data = ? WHERE id = ?",
            (item.retries, item.last_error, json.dumps(item.data), item.id),
        )
        conn.commit()
        conn.close()

    def delete_queue_item(self, item_id: int):
        conn = self.connect()
        conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
        conn.commit()
        conn.close()

    def queue_count(self) -> int:
        conn = self.connect()
        count = conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()["n"]
        conn.close()
        return count

    # ─────────────────────────── DEAD LETTER ───────────────────────────

    def add_failed(self, item: PendingMutation, reason: FailureReason):
        conn = self.connect()
        conn.execute(
            """
            INSERT INTO failed_mutations (queue_id, action, trip_id, data, timestamp, retries, last_error, reason, failed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (item.id, item.action.value, item.trip_id, json.dumps(item.data), item.timestamp,
             item.retries, item.last_error, reason.value, now_iso()),
        )
        conn.commit()
        conn.close()

    def get_failed(self) -> List[Dict[str, Any]]:
        conn = self.connect()
        rows = conn.execute("SELECT * FROM failed_mutations ORDER BY id").fetchall()
        conn.close()
        failed = []
        for row in rows:
            entry = dict(row)
            try:
                entry["data"] = json.loads(entry["data"] or "{}")
            except json.JSONDecodeError:
                logger.warning(f"Corrupt payload on failed mutation {row['id']}")
            failed.append(entry)
        return failed

    # ─────────────────────────── META ───────────────────────────

    def get_meta(self, key: str) -> Optional[str]:
        conn = self.connect()
        row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        conn.close()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str):
        conn = self.connect()
        conn.execute(
            "INSERT INTO sync_meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        conn.commit()
        conn.close()
