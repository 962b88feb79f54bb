"""
Lifecycle rules that span trips, expenses and mileage logs.

Every HTTP handler goes through this layer; the record services beneath it
know nothing about other record types. Rules enforced here:

- Deleting a mileage log zeroes the parent trip's totalMiles / fuelCost
  (the trip itself stays active and is flagged pending).
- Deleting or restoring a trip never touches its mileage log.
- Restoring a mileage log requires an active parent trip, and puts the
  mileage back on that trip.
- Creating or updating a mileage log against a missing or deleted trip is
  a conflict. Calling MileageService directly bypasses this guard.
- Trip-linked fuel / maintenance / supplies expenses roll up into the
  trip's cost fields.
"""

import uuid
import logging
from typing import Any, Dict, List, Optional, Tuple

from gigsync.calculations import (
    apply_expense_rollup, apply_mileage_to_trip, as_number, calculate_fuel_cost,
    calculate_net_profit, calculate_total_earnings, compute_miles,
    compute_reimbursement, expense_trip_id, resolve_parent_trip_id, rollup_kind,
    round_to, zero_trip_mileage,
)
from gigsync.db import now_iso
from gigsync.errors import ConflictError, NotDeletedError, NotFoundError, ValidationError
from gigsync.models import Expense, MileageLog, RecordType, SyncStatus, Trip
from gigsync.record_service import RecordService
from gigsync.settings import SettingsService

logger = logging.getLogger("gigsync.lifecycle")

# Restore attempts without an explicit type probe the types in this order
RESTORE_PROBE_ORDER = (RecordType.TRIP, RecordType.EXPENSE, RecordType.MILEAGE)


def _require_non_negative(record: Dict[str, Any], *fields: str):
    for name in fields:
        if name not in record or record[name] in (None, ""):
            continue
        value = as_number(record[name])
        if value is None:
            raise ValidationError(f"{name} must be a number")
        if value < 0:
            raise ValidationError(f"{name} cannot be negative")


class LifecycleRules:
    def __init__(self, services: Dict[RecordType, RecordService], settings: SettingsService, clock=None):
        self.services = services
        self.trips = services[RecordType.TRIP]
        self.expenses = services[RecordType.EXPENSE]
        self.mileage = services[RecordType.MILEAGE]
        self.settings = settings
        self.clock = clock or self.trips.clock

    def service_for(self, record_type: RecordType) -> RecordService:
        return self.services[record_type]

    def _now(self) -> str:
        return now_iso(self.clock)

    # ─────────────────────────── PARENT TRIP ───────────────────────────

    def parent_trip_id(self, user_id: str, record: Dict[str, Any]) -> Optional[str]:
        return resolve_parent_trip_id(record, lambda trip_id: self.trips.exists(user_id, trip_id))

    def _require_active_parent(self, user_id: str, record: Dict[str, Any], verb: str) -> Optional[Dict[str, Any]]:
        """Return the active parent trip, None for standalone logs, or raise ConflictError."""
        trip_id = self.parent_trip_id(user_id, record)
        if not trip_id:
            return None
        trip = self.trips.get_raw(user_id, trip_id)
        if trip is None:
            logger.warning(f"Refusing to {verb} mileage {record.get('id')}: trip {trip_id} not found")
            raise ConflictError(f"Parent trip not found. Cannot {verb} mileage log.")
        if trip.get("deleted"):
            logger.warning(f"Refusing to {verb} mileage {record.get('id')}: trip {trip_id} is deleted")
            raise ConflictError(f"Parent trip is deleted. Cannot {verb} mileage log.")
        return trip

    # ─────────────────────────── TRIPS ───────────────────────────

    def _build_trip(self, user_id: str, merged: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        _require_non_negative(merged, "totalMiles", "mpg", "gasPrice", "maintenanceCost", "suppliesCost")
        trip = Trip.from_dict(merged).to_dict()
        trip["userId"] = user_id

        if changes.get("stops"):
            trip["totalEarnings"] = calculate_total_earnings(trip["stops"])
        distance_inputs = {"totalMiles", "mpg", "gasPrice"} & set(changes)
        if "fuelCost" not in changes and distance_inputs and as_number(trip.get("mpg")):
            trip["fuelCost"] = calculate_fuel_cost(trip["totalMiles"], trip.get("mpg"), trip.get("gasPrice"))
        trip["netProfit"] = calculate_net_profit(trip)
        return trip

    def create_trip(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = self._now()
        merged = dict(payload)
        merged["id"] = str(payload.get("id") or uuid.uuid4())
        existing = self.trips.get(user_id, merged["id"])
        merged["createdAt"] = (existing or {}).get("createdAt") or payload.get("createdAt") or now
        merged["lastModified"] = payload.get("lastModified") or now
        trip = self._build_trip(user_id, merged, payload)
        saved = self.trips.put(trip)
        logger.info(f"Trip {saved['id']} saved for {user_id}")
        return saved

    def update_trip(self, user_id: str, trip_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.trips.get(user_id, trip_id)
        if existing is None:
            raise NotFoundError("Trip not found")
        merged = {**existing, **payload, "id": trip_id, "createdAt": existing.get("createdAt")}
        merged["lastModified"] = payload.get("lastModified") or self._now()
        trip = self._build_trip(user_id, merged, payload)
        return self.trips.put(trip)

    def delete_trip(self, user_id: str, trip_id: str) -> Optional[Dict[str, Any]]:
        # Mileage logs linked to this trip stay active
        return self.trips.delete(user_id, trip_id, deleted_by=user_id)

    def restore_trip(self, user_id: str, trip_id: str) -> Dict[str, Any]:
        return self.trips.restore(user_id, trip_id)

    # ─────────────────────────── MILEAGE ───────────────────────────

    def _derive_mileage(self, user_id: str, record: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        _require_non_negative(record, "startOdometer", "endOdometer", "miles", "mileageRate", "reimbursement")
        derived = dict(record)
        start = as_number(derived.get("startOdometer"))
        end = as_number(derived.get("endOdometer"))

        explicit_miles = as_number(changes.get("miles")) if "miles" in changes else None
        if explicit_miles is not None:
            miles = round_to(explicit_miles, 2)
        elif start is not None and end is not None:
            miles = compute_miles(start, end)
        else:
            miles = round_to(as_number(derived.get("miles")) or 0.0, 2)
        derived["miles"] = miles

        explicit_reimbursement = as_number(changes.get("reimbursement")) if "reimbursement" in changes else None
        if explicit_reimbursement is not None:
            derived["reimbursement"] = round_to(explicit_reimbursement, 2)
        else:
            rate = as_number(derived.get("mileageRate"))
            if rate is None:
                rate = self.settings.mileage_rate(user_id)
            if rate is not None:
                derived["reimbursement"] = compute_reimbursement(miles, rate)
        return derived

    def _sync_trip_distance(self, user_id: str, mileage: Dict[str, Any]):
        trip_id = self.parent_trip_id(user_id, mileage)
        if not trip_id:
            return
        trip = self.trips.get(user_id, trip_id)
        miles = as_number(mileage.get("miles"))
        if trip is None or miles is None:
            return
        if as_number(trip.get("totalMiles")) == miles:
            return
        self.trips.put(apply_mileage_to_trip(trip, miles))
        logger.info(f"Trip {trip_id} distance set to {miles} from mileage {mileage['id']}")

    def create_mileage(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = self._now()
        record = dict(payload)
        record["id"] = str(payload.get("id") or payload.get("tripId") or uuid.uuid4())
        record["userId"] = user_id
        record["createdAt"] = payload.get("createdAt") or now
        record["lastModified"] = payload.get("lastModified") or now

        self._require_active_parent(user_id, record, "create")
        record = self._derive_mileage(user_id, record, payload)
        saved = self.mileage.put(MileageLog.from_dict(record).to_dict())
        self._sync_trip_distance(user_id, saved)
        logger.info(f"Mileage {saved['id']} saved for {user_id}: {saved['miles']} mi")
        return saved

    def update_mileage(self, user_id: str, mileage_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.mileage.get(user_id, mileage_id)
        if existing is None:
            raise NotFoundError("Mileage log not found")
        merged = {**existing, **payload, "id": mileage_id, "userId": user_id,
                  "createdAt": existing.get("createdAt")}
        merged["lastModified"] = payload.get("lastModified") or self._now()

        self._require_active_parent(user_id, merged, "update")
        record = self._derive_mileage(user_id, merged, payload)
        saved = self.mileage.put(MileageLog.from_dict(record).to_dict())
        self._sync_trip_distance(user_id, saved)
        return saved

    def delete_mileage(self, user_id: str, mileage_id: str) -> Optional[Dict[str, Any]]:
        existing = self.mileage.get_raw(user_id, mileage_id)
        if existing is None or existing.get("deleted"):
            return existing

        trip_id = self.parent_trip_id(user_id, existing)
        tombstone = self.mileage.delete(user_id, mileage_id, deleted_by=user_id)

        if trip_id:
            trip = self.trips.get(user_id, trip_id)
            if trip is not None:
                updated = zero_trip_mileage(trip)
                updated["syncStatus"] = SyncStatus.PENDING.value
                self.trips.put(updated)
                logger.info(f"Zeroed mileage on trip {trip_id} after deleting mileage {mileage_id}")
        return tombstone

    def restore_mileage(self, user_id: str, mileage_id: str) -> Dict[str, Any]:
        tombstone = self.mileage.get_raw(user_id, mileage_id)
        if tombstone is None:
            raise NotFoundError("Item not found in trash")
        if not tombstone.get("deleted"):
            raise NotDeletedError()

        backup = dict(tombstone.get("backup") or {})
        backup.setdefault("id", mileage_id)
        trip_id = self.parent_trip_id(user_id, backup)
        if trip_id:
            trip = self.trips.get_raw(user_id, trip_id)
            if trip is None or trip.get("deleted"):
                logger.warning(f"Restore of mileage {mileage_id} refused: parent trip {trip_id} is not active")
                reason = "deleted" if trip is not None else "not found"
                raise ConflictError(f"Parent trip is {reason}. Restore the trip first.")

        restored = self.mileage.restore(user_id, mileage_id)
        trip = self.trips.get(user_id, trip_id) if trip_id else None
        if trip is not None:
            miles = as_number(restored.get("miles")) or 0.0
            self.trips.put(apply_mileage_to_trip(trip, miles))
            logger.info(f"Trip {trip_id} distance restored to {miles} from mileage {mileage_id}")
        return restored

    # ─────────────────────────── EXPENSES ───────────────────────────

    def _rollup(self, user_id: str, *expenses: Dict[str, Any]):
        """Recompute cost fields on every trip touched by ``expenses``."""
        touched: Dict[str, set] = {}
        for expense in expenses:
            trip_id = expense_trip_id(expense)
            kind = rollup_kind(expense.get("category"))
            if trip_id and kind:
                touched.setdefault(trip_id, set()).add(kind)

        for trip_id, kinds in touched.items():
            trip = self.trips.get(user_id, trip_id)
            if trip is None:
                continue
            linked = [e for e in self.expenses.list(user_id) if expense_trip_id(e) == trip_id]
            updated = apply_expense_rollup(trip, linked, kinds)
            if updated != trip:
                self.trips.put(updated)
                logger.info(f"Rolled up {sorted(kinds)} expenses into trip {trip_id}")

    def _build_expense(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if as_number(record.get("amount")) is None:
            raise ValidationError("amount must be a number")
        _require_non_negative(record, "amount")
        return Expense.from_dict(record).to_dict()

    def create_expense(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = self._now()
        record = dict(payload)
        record["id"] = str(payload.get("id") or uuid.uuid4())
        record["userId"] = user_id
        record["createdAt"] = payload.get("createdAt") or now
        record["lastModified"] = payload.get("lastModified") or now
        saved = self.expenses.put(self._build_expense(record))
        self._rollup(user_id, saved)
        return saved

    def update_expense(self, user_id: str, expense_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.expenses.get(user_id, expense_id)
        if existing is None:
            raise NotFoundError("Expense not found")
        merged = {**existing, **payload, "id": expense_id, "userId": user_id,
                  "createdAt": existing.get("createdAt")}
        merged["lastModified"] = payload.get("lastModified") or self._now()
        saved = self.expenses.put(self._build_expense(merged))
        self._rollup(user_id, existing, saved)
        return saved

    def delete_expense(self, user_id: str, expense_id: str) -> Optional[Dict[str, Any]]:
        existing = self.expenses.get_raw(user_id, expense_id)
        if existing is None or existing.get("deleted"):
            return existing
        tombstone = self.expenses.delete(user_id, expense_id, deleted_by=user_id)
        self._rollup(user_id, existing)
        return tombstone

    def restore_expense(self, user_id: str, expense_id: str) -> Dict[str, Any]:
        restored = self.expenses.restore(user_id, expense_id)
        self._rollup(user_id, restored)
        return restored

    # ─────────────────────────── DISPATCH ───────────────────────────

    def create(self, record_type: RecordType, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        handler = {
            RecordType.TRIP: self.create_trip,
            RecordType.EXPENSE: self.create_expense,
            RecordType.MILEAGE: self.create_mileage,
        }[record_type]
        return handler(user_id, payload)

    def update(self, record_type: RecordType, user_id: str, record_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        handler = {
            RecordType.TRIP: self.update_trip,
            RecordType.EXPENSE: self.update_expense,
            RecordType.MILEAGE: self.update_mileage,
        }[record_type]
        return handler(user_id, record_id, payload)

    def delete(self, record_type: RecordType, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        handler = {
            RecordType.TRIP: self.delete_trip,
            RecordType.EXPENSE: self.delete_expense,
            RecordType.MILEAGE: self.delete_mileage,
        }[record_type]
        return handler(user_id, record_id)

    def _restore_typed(self, record_type: RecordType, user_id: str, record_id: str) -> Dict[str, Any]:
        handler = {
            RecordType.TRIP: self.restore_trip,
            RecordType.EXPENSE: self.restore_expense,
            RecordType.MILEAGE: self.restore_mileage,
        }[record_type]
        return handler(user_id, record_id)

    # ─────────────────────────── TRASH ───────────────────────────

    def list_trash(self, user_id: str, record_type: Optional[RecordType] = None) -> List[Dict[str, Any]]:
        types = [record_type] if record_type else list(RESTORE_PROBE_ORDER)
        items = []
        for rt in types:
            items.extend(self.service_for(rt).list_trash(user_id))
        items.sort(key=lambda s: s.get("deletedAt") or "", reverse=True)
        return items

    def _tombstoned_types(self, user_id: str, record_id: str) -> List[RecordType]:
        found = []
        for rt in RESTORE_PROBE_ORDER:
            raw = self.service_for(rt).get_raw(user_id, record_id)
            if raw is not None and raw.get("deleted"):
                found.append(rt)
        return found

    def restore(self, user_id: str, record_id: str, record_type: Optional[RecordType] = None) -> Tuple[RecordType, Dict[str, Any]]:
        if record_type is None:
            candidates = self._tombstoned_types(user_id, record_id)
            if not candidates:
                raise NotFoundError("Item not found in trash")
            record_type = candidates[0]
        return record_type, self._restore_typed(record_type, user_id, record_id)

    def permanent_delete(self, user_id: str, record_id: str, record_type: Optional[RecordType] = None) -> int:
        """Remove tombstones immediately; active records are left alone."""
        if record_type is None:
            types = self._tombstoned_types(user_id, record_id)
        else:
            raw = self.service_for(record_type).get_raw(user_id, record_id)
            types = [record_type] if raw is not None and raw.get("deleted") else []
        removed = 0
        for rt in types:
            if self.service_for(rt).permanent_delete(user_id, record_id):
                removed += 1
        return removed

    def empty_trash(self, user_id: str) -> int:
        removed = 0
        for rt in RESTORE_PROBE_ORDER:
            service = self.service_for(rt)
            for item in service.list_trash(user_id):
                if service.permanent_delete(user_id, item["id"]):
                    removed += 1
        logger.info(f"Emptied trash for {user_id}: {removed} items")
        return removed
