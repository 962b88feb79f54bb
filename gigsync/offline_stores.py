"""
Device-side record stores: optimistic local writes followed by a queued
mutation for the sync engine.

Deleted records move to the local trash namespace under ``<recordType>:<id>``
so a trip and a mileage log sharing an id never collide there.
"""

import uuid
import logging
from typing import Any, Dict, List, Optional

from gigsync.calculations import (
    apply_mileage_to_trip, as_number, calculate_net_profit, calculate_total_earnings,
    compute_miles, compute_reimbursement, resolve_parent_trip_id, round_to, zero_trip_mileage,
)
from gigsync.db import Clock, expires_iso, to_iso, utc_now
from gigsync.errors import ConflictError, ForbiddenError, NotFoundError
from gigsync.local_store import LocalStore
from gigsync.models import (
    RETENTION_SECONDS, TOMBSTONE_FIELDS, QueueAction, RecordType, SyncStatus,
    trash_item_from_tombstone,
)
from gigsync.sync_engine import SyncEngine

logger = logging.getLogger("gigsync.offline")

TRASH = "trash"


def trash_id_for(record_type: RecordType, record_id: str) -> str:
    return f"{record_type.value}:{record_id}"


class OfflineStores:
    def __init__(self, store: LocalStore, engine: SyncEngine, clock: Clock = utc_now,
                 mileage_rate: Optional[float] = None):
        self.store = store
        self.engine = engine
        self.clock = clock
        self.mileage_rate = mileage_rate

    def _now(self) -> str:
        return to_iso(self.clock())

    # ─────────────────────────── READS ───────────────────────────

    def list(self, record_type: RecordType, user_id: str) -> List[Dict[str, Any]]:
        return self.store.get_all_by_user(record_type.collection, user_id)

    def get(self, record_type: RecordType, record_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(record_type.collection, record_id)

    def _owned(self, record_type: RecordType, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self.store.get(record_type.collection, record_id)
        if record is not None and record.get("userId") != user_id:
            raise ForbiddenError("Unauthorized")
        return record

    # ─────────────────────────── GENERIC WRITES ───────────────────────────

    async def _save_new(self, record_type: RecordType, user_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        now = self._now()
        record["id"] = str(record.get("id") or uuid.uuid4())
        record["userId"] = user_id
        record.setdefault("createdAt", now)
        record["updatedAt"] = now
        record["lastModified"] = now
        record["syncStatus"] = SyncStatus.PENDING.value
        self.store.put(record_type.collection, record)
        await self.engine.enqueue(QueueAction.CREATE, record["id"], record, record_type.collection)
        return record

    async def _save_update(self, record_type: RecordType, record: Dict[str, Any],
                           user_initiated: bool = True, skip_enrichment: bool = False) -> Dict[str, Any]:
        now = self._now()
        record["updatedAt"] = now
        if user_initiated:
            record["lastModified"] = now
        record["syncStatus"] = SyncStatus.PENDING.value
        self.store.put(record_type.collection, record)
        payload = dict(record)
        if skip_enrichment:
            payload["skipEnrichment"] = True
        await self.engine.enqueue(QueueAction.UPDATE, record["id"], payload, record_type.collection)
        return record

    async def _move_to_trash(self, record_type: RecordType, user_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        deleted_at = to_iso(now)
        backup = {k: v for k, v in record.items() if k not in TOMBSTONE_FIELDS}
        if record_type == RecordType.TRIP:
            backup["totalMiles"] = 0
        metadata = {
            "deletedAt": deleted_at,
            "deletedBy": user_id,
            "originalKey": f"{record_type.value}:{user_id}:{record['id']}",
            "expiresAt": expires_iso(now, RETENTION_SECONDS),
        }
        entry = {
            "id": trash_id_for(record_type, record["id"]),
            "originalId": record["id"],
            "recordType": record_type.value,
            "userId": user_id,
            "deletedAt": deleted_at,
            "deletedBy": user_id,
            "metadata": metadata,
            "backup": backup,
            "updatedAt": deleted_at,
            "syncStatus": SyncStatus.PENDING.value,
        }
        self.store.put(TRASH, entry)
        self.store.delete(record_type.collection, record["id"])
        await self.engine.enqueue(QueueAction.DELETE, record["id"], {}, record_type.collection)
        logger.info(f"Moved {record_type.value} {record['id']} to trash")
        return entry

    async def _delete(self, record_type: RecordType, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._owned(record_type, user_id, record_id)
        if record is None:
            logger.debug(f"Delete of missing local {record_type.value} {record_id} ignored")
            return None
        return await self._move_to_trash(record_type, user_id, record)

    # ─────────────────────────── TRIPS ───────────────────────────

    @staticmethod
    def _trip_totals(trip: Dict[str, Any]):
        if trip.get("stops"):
            trip["totalEarnings"] = calculate_total_earnings(trip["stops"])
        trip["netProfit"] = calculate_net_profit(trip)

    async def create_trip(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        trip = dict(data)
        trip.setdefault("totalMiles", 0)
        trip.setdefault("stops", [])
        self._trip_totals(trip)
        return await self._save_new(RecordType.TRIP, user_id, trip)

    async def update_trip(self, user_id: str, trip_id: str, changes: Dict[str, Any],
                          user_initiated: bool = True) -> Dict[str, Any]:
        existing = self._owned(RecordType.TRIP, user_id, trip_id)
        if existing is None:
            raise NotFoundError("Trip not found")
        trip = {**existing, **changes, "id": trip_id}
        self._trip_totals(trip)
        return await self._save_update(RecordType.TRIP, trip, user_initiated=user_initiated)

    async def delete_trip(self, user_id: str, trip_id: str) -> Optional[Dict[str, Any]]:
        # The trip's mileage log is left in place
        return await self._delete(RecordType.TRIP, user_id, trip_id)

    # ─────────────────────────── MILEAGE ───────────────────────────

    def _local_trip_slot(self, trip_id: str) -> bool:
        return (
            self.store.get("trips", trip_id) is not None
            or self.store.get(TRASH, trash_id_for(RecordType.TRIP, trip_id)) is not None
        )

    def _derive_mileage(self, record: Dict[str, Any], changes: Dict[str, Any]):
        start = as_number(record.get("startOdometer"))
        end = as_number(record.get("endOdometer"))
        if "miles" in changes and as_number(changes["miles"]) is not None:
            record["miles"] = round_to(as_number(changes["miles"]), 2)
        elif start is not None and end is not None:
            record["miles"] = compute_miles(start, end)
        else:
            record["miles"] = round_to(as_number(record.get("miles")) or 0.0, 2)

        if "reimbursement" in changes and as_number(changes["reimbursement"]) is not None:
            record["reimbursement"] = round_to(as_number(changes["reimbursement"]), 2)
            return
        rate = as_number(record.get("mileageRate"))
        if rate is None:
            rate = self.mileage_rate
        if rate is not None:
            record["reimbursement"] = compute_reimbursement(record["miles"], rate)

    def _mirror_trip_distance(self, mileage: Dict[str, Any]):
        trip_id = resolve_parent_trip_id(mileage, self._local_trip_slot)
        trip = self.store.get("trips", trip_id) if trip_id else None
        if trip is None:
            return
        self.store.put("trips", apply_mileage_to_trip(trip, mileage["miles"]))

    async def create_mileage(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(data)
        record["id"] = str(data.get("id") or data.get("tripId") or uuid.uuid4())
        self._derive_mileage(record, data)
        saved = await self._save_new(RecordType.MILEAGE, user_id, record)
        self._mirror_trip_distance(saved)
        return saved

    async def update_mileage(self, user_id: str, mileage_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        existing = self._owned(RecordType.MILEAGE, user_id, mileage_id)
        if existing is None:
            raise NotFoundError("Mileage log not found")
        record = {**existing, **changes, "id": mileage_id}
        self._derive_mileage(record, changes)
        saved = await self._save_update(RecordType.MILEAGE, record)
        self._mirror_trip_distance(saved)
        return saved

    async def delete_mileage(self, user_id: str, mileage_id: str) -> Optional[Dict[str, Any]]:
        record = self._owned(RecordType.MILEAGE, user_id, mileage_id)
        if record is None:
            return None
        trip_id = resolve_parent_trip_id(record, self._local_trip_slot)
        entry = await self._move_to_trash(RecordType.MILEAGE, user_id, record)

        trip = self.store.get("trips", trip_id) if trip_id else None
        if trip is not None:
            await self._save_update(RecordType.TRIP, zero_trip_mileage(trip),
                                    user_initiated=False, skip_enrichment=True)
            logger.info(f"Zeroed local trip {trip_id} after deleting mileage {mileage_id}")
        return entry

    # ─────────────────────────── EXPENSES ───────────────────────────

    async def create_expense(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._save_new(RecordType.EXPENSE, user_id, dict(data))

    async def update_expense(self, user_id: str, expense_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        existing = self._owned(RecordType.EXPENSE, user_id, expense_id)
        if existing is None:
            raise NotFoundError("Expense not found")
        return await self._save_update(RecordType.EXPENSE, {**existing, **changes, "id": expense_id})

    async def delete_expense(self, user_id: str, expense_id: str) -> Optional[Dict[str, Any]]:
        return await self._delete(RecordType.EXPENSE, user_id, expense_id)

    # ─────────────────────────── TRASH ───────────────────────────

    def list_trash(self, user_id: str, record_type: Optional[RecordType] = None) -> List[Dict[str, Any]]:
        summaries = []
        for entry in self.store.get_all_by_user(TRASH, user_id):
            try:
                entry_type = RecordType(entry.get("recordType"))
                if record_type and entry_type != record_type:
                    continue
                summary = trash_item_from_tombstone(entry_type, entry).to_summary()
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable trash entry {entry.get('id')}: {e}")
                continue
            summary["originalId"] = entry.get("originalId")
            summaries.append(summary)
        summaries.sort(key=lambda s: s.get("deletedAt") or "", reverse=True)
        return summaries

    def _trash_entry(self, user_id: str, trash_id: str) -> Dict[str, Any]:
        entry = self.store.get(TRASH, trash_id)
        if entry is None:
            raise NotFoundError("Item not found in trash")
        if entry.get("userId") != user_id:
            raise ForbiddenError("Unauthorized")
        return entry

    async def restore(self, user_id: str, trash_id: str) -> Dict[str, Any]:
        entry = self._trash_entry(user_id, trash_id)
        record_type = RecordType(entry["recordType"])
        record = {k: v for k, v in (entry.get("backup") or {}).items() if k not in TOMBSTONE_FIELDS}
        record.setdefault("id", entry.get("originalId"))

        trip = None
        if record_type == RecordType.MILEAGE:
            trip_id = resolve_parent_trip_id(record, self._local_trip_slot)
            if trip_id:
                trip = self.store.get("trips", trip_id)
                if trip is None:
                    logger.warning(f"Restore of mileage {record['id']} refused: trip {trip_id} is not active")
                    raise ConflictError("Parent trip is deleted. Restore the trip first.")

        record["updatedAt"] = self._now()
        record["syncStatus"] = SyncStatus.PENDING.value
        self.store.put(record_type.collection, record)
        self.store.delete(TRASH, trash_id)
        if trip is not None:
            self.store.put("trips", apply_mileage_to_trip(trip, as_number(record.get("miles")) or 0.0))

        await self.engine.enqueue(QueueAction.RESTORE, record["id"], {"recordType": record_type.value},
                                  record_type.collection)
        logger.info(f"Restored {record_type.value} {record['id']} from trash")
        return record

    async def permanent_delete(self, user_id: str, trash_id: str):
        entry = self._trash_entry(user_id, trash_id)
        record_type = RecordType(entry["recordType"])
        self.store.delete(TRASH, trash_id)
        await self.engine.enqueue(QueueAction.PERMANENT_DELETE, entry["originalId"],
                                  {"recordType": record_type.value}, record_type.collection)

    async def empty_trash(self, user_id: str) -> int:
        entries = self.store.get_all_by_user(TRASH, user_id)
        for entry in entries:
            await self.permanent_delete(user_id, entry["id"])
        return len(entries)
