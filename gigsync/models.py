"""
Data models and schema definitions for GigSync.

This module defines:
- Record types shared by the cloud store and the device store (Trip, Expense, MileageLog)
- Trash items as a tagged union keyed by record type
- Pending mutation queue items
- SQL schemas for the server record store and the on-device store
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Union, ClassVar
from enum import Enum


RETENTION_SECONDS = 30 * 24 * 60 * 60  # tombstone TTL (2,592,000 s)
MAX_SYNC_RETRIES = 5


# ─────────────────────────── ENUMS ───────────────────────────

class RecordType(str, Enum):
    """Entity types handled by the sync engine and the record services"""
    TRIP = "trip"
    EXPENSE = "expense"
    MILEAGE = "mileage"

    @property
    def collection(self) -> str:
        """URL / local namespace name for this record type"""
        return _COLLECTIONS[self]

    @classmethod
    def from_collection(cls, collection: str) -> "RecordType":
        for record_type, name in _COLLECTIONS.items():
            if name == collection or record_type.value == collection:
                return record_type
        raise ValueError(f"Unknown collection: {collection}")


_COLLECTIONS = {
    RecordType.TRIP: "trips",
    RecordType.EXPENSE: "expenses",
    RecordType.MILEAGE: "mileage",
}


class SyncStatus(str, Enum):
    """Per-record sync state on the device"""
    SYNCED = "synced"
    PENDING = "pending"
    SYNCING = "syncing"
    ERROR = "error"


class QueueAction(str, Enum):
    """Mutation kinds carried by the pending queue"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"
    PERMANENT_DELETE = "permanentDelete"


class FailureReason(str, Enum):
    """Why an item landed in the dead-letter table"""
    FATAL = "fatal"
    RETRIES_EXHAUSTED = "retries-exhausted"


# Fields that only make sense on the device and are never stored server-side
CLIENT_ONLY_FIELDS = ("store", "skipEnrichment", "lastSyncedAt")

# Markers stripped from a record when it is (re)activated
TOMBSTONE_FIELDS = ("deleted", "deletedAt", "deletedBy", "metadata", "backup")


# ─────────────────────────── RECORD DATA CLASSES ───────────────────────────

def _num(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _opt_num(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Stop:
    """One delivery / pickup stop on a trip route"""
    id: str
    address: str = ""
    order: int = 0
    earnings: float = 0.0
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Stop":
        return cls(
            id=str(data.get("id") or f"stop-{index}"),
            address=data.get("address") or "",
            order=int(data.get("order", index) or 0),
            earnings=_num(data.get("earnings")),
            notes=data.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'address': self.address,
            'order': self.order,
            'earnings': self.earnings,
        }
        if self.notes is not None:
            result['notes'] = self.notes
        return result


@dataclass
class Trip:
    """A driving shift: route, stops, earnings and costs"""
    id: str
    user_id: str
    created_at: str
    updated_at: str

    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_address: Optional[str] = None
    end_address: Optional[str] = None
    stops: List[Stop] = field(default_factory=list)

    total_miles: float = 0.0
    mpg: Optional[float] = None
    gas_price: Optional[float] = None
    fuel_cost: float = 0.0
    maintenance_cost: float = 0.0
    supplies_cost: float = 0.0
    total_earnings: float = 0.0
    net_profit: float = 0.0
    estimated_time: Optional[int] = None
    notes: Optional[str] = None

    last_modified: Optional[str] = None
    sync_status: Optional[str] = None

    # Anything the client sent that is not modelled above (custom fields)
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN: ClassVar[tuple] = (
        "id", "userId", "createdAt", "updatedAt", "date", "startTime", "endTime",
        "startAddress", "endAddress", "stops", "totalMiles", "mpg", "gasPrice",
        "fuelCost", "maintenanceCost", "suppliesCost", "totalEarnings", "netProfit",
        "estimatedTime", "notes", "lastModified", "syncStatus",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trip":
        stops = [Stop.from_dict(s, i) for i, s in enumerate(data.get("stops") or []) if isinstance(s, dict)]
        estimated = data.get("estimatedTime")
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("userId") or ""),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            date=data.get("date"),
            start_time=data.get("startTime"),
            end_time=data.get("endTime"),
            start_address=data.get("startAddress"),
            end_address=data.get("endAddress"),
            stops=stops,
            total_miles=_num(data.get("totalMiles")),
            mpg=_opt_num(data.get("mpg")),
            gas_price=_opt_num(data.get("gasPrice")),
            fuel_cost=_num(data.get("fuelCost")),
            maintenance_cost=_num(data.get("maintenanceCost")),
            supplies_cost=_num(data.get("suppliesCost")),
            total_earnings=_num(data.get("totalEarnings")),
            net_profit=_num(data.get("netProfit")),
            estimated_time=int(estimated) if isinstance(estimated, (int, float)) else None,
            notes=data.get("notes"),
            last_modified=data.get("lastModified"),
            sync_status=data.get("syncStatus"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN and k not in TOMBSTONE_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update({
            'id': self.id,
            'userId': self.user_id,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'stops': [s.to_dict() for s in self.stops],
            'totalMiles': self.total_miles,
            'fuelCost': self.fuel_cost,
            'maintenanceCost': self.maintenance_cost,
            'suppliesCost': self.supplies_cost,
            'totalEarnings': self.total_earnings,
            'netProfit': self.net_profit,
        })
        optional = {
            'date': self.date,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'startAddress': self.start_address,
            'endAddress': self.end_address,
            'mpg': self.mpg,
            'gasPrice': self.gas_price,
            'estimatedTime': self.estimated_time,
            'notes': self.notes,
            'lastModified': self.last_modified,
            'syncStatus': self.sync_status,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


@dataclass
class MileageLog:
    """Odometer reading pair, optionally linked to a trip"""
    id: str
    user_id: str
    created_at: str
    updated_at: str

    trip_id: Optional[str] = None
    date: Optional[str] = None
    start_odometer: Optional[float] = None
    end_odometer: Optional[float] = None
    miles: float = 0.0
    mileage_rate: Optional[float] = None
    reimbursement: Optional[float] = None
    vehicle: Optional[str] = None
    notes: Optional[str] = None

    last_modified: Optional[str] = None
    sync_status: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN: ClassVar[tuple] = (
        "id", "userId", "createdAt", "updatedAt", "tripId", "date", "startOdometer",
        "endOdometer", "miles", "mileageRate", "reimbursement", "vehicle", "notes",
        "lastModified", "syncStatus",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MileageLog":
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("userId") or ""),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            trip_id=data.get("tripId") or None,
            date=data.get("date"),
            start_odometer=_opt_num(data.get("startOdometer")),
            end_odometer=_opt_num(data.get("endOdometer")),
            miles=_num(data.get("miles")),
            mileage_rate=_opt_num(data.get("mileageRate")),
            reimbursement=_opt_num(data.get("reimbursement")),
            vehicle=data.get("vehicle"),
            notes=data.get("notes"),
            last_modified=data.get("lastModified"),
            sync_status=data.get("syncStatus"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN and k not in TOMBSTONE_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update({
            'id': self.id,
            'userId': self.user_id,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'miles': self.miles,
        })
        optional = {
            'tripId': self.trip_id,
            'date': self.date,
            'startOdometer': self.start_odometer,
            'endOdometer': self.end_odometer,
            'mileageRate': self.mileage_rate,
            'reimbursement': self.reimbursement,
            'vehicle': self.vehicle,
            'notes': self.notes,
            'lastModified': self.last_modified,
            'syncStatus': self.sync_status,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


@dataclass
class Expense:
    """A single cost entry, optionally linked to a trip"""
    id: str
    user_id: str
    created_at: str
    updated_at: str

    date: Optional[str] = None
    category: str = "other"
    amount: float = 0.0
    description: Optional[str] = None
    tax_deductible: Optional[bool] = None
    trip_id: Optional[str] = None

    last_modified: Optional[str] = None
    sync_status: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN: ClassVar[tuple] = (
        "id", "userId", "createdAt", "updatedAt", "date", "category", "amount",
        "description", "taxDeductible", "tripId", "lastModified", "syncStatus",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expense":
        tax = data.get("taxDeductible")
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("userId") or ""),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            date=data.get("date"),
            category=str(data.get("category") or "other"),
            amount=_num(data.get("amount")),
            description=data.get("description"),
            tax_deductible=bool(tax) if tax is not None else None,
            trip_id=data.get("tripId") or None,
            last_modified=data.get("lastModified"),
            sync_status=data.get("syncStatus"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN and k not in TOMBSTONE_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update({
            'id': self.id,
            'userId': self.user_id,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'category': self.category,
            'amount': self.amount,
        })
        optional = {
            'date': self.date,
            'description': self.description,
            'taxDeductible': self.tax_deductible,
            'tripId': self.trip_id,
            'lastModified': self.last_modified,
            'syncStatus': self.sync_status,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


RECORD_CLASSES = {
    RecordType.TRIP: Trip,
    RecordType.EXPENSE: Expense,
    RecordType.MILEAGE: MileageLog,
}


# ─────────────────────────── TRASH (TAGGED UNION) ───────────────────────────

@dataclass
class TrashMetadata:
    """Deletion bookkeeping attached to every tombstone"""
    deleted_at: str
    deleted_by: str
    original_key: str
    expires_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback: Dict[str, Any]) -> "TrashMetadata":
        return cls(
            deleted_at=data.get("deletedAt") or fallback.get("deletedAt") or "",
            deleted_by=data.get("deletedBy") or fallback.get("deletedBy") or "",
            original_key=data.get("originalKey") or "",
            expires_at=data.get("expiresAt") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deletedAt': self.deleted_at,
            'deletedBy': self.deleted_by,
            'originalKey': self.original_key,
            'expiresAt': self.expires_at,
        }


@dataclass
class _TrashItemBase:
    id: str
    user_id: str
    metadata: TrashMetadata

    record_type: ClassVar[RecordType]

    def _summary(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'recordType': self.record_type.value,
            'deletedAt': self.metadata.deleted_at,
            'deletedBy': self.metadata.deleted_by,
            'expiresAt': self.metadata.expires_at,
            'metadata': self.metadata.to_dict(),
        }


@dataclass
class TripTrashItem(_TrashItemBase):
    backup: Trip = None
    record_type: ClassVar[RecordType] = RecordType.TRIP

    def to_summary(self) -> Dict[str, Any]:
        result = self._summary()
        result.update({
            'date': self.backup.date,
            'startAddress': self.backup.start_address,
            'endAddress': self.backup.end_address,
            'stopCount': len(self.backup.stops),
            'totalMiles': self.backup.total_miles,
            'totalEarnings': self.backup.total_earnings,
        })
        return result


@dataclass
class ExpenseTrashItem(_TrashItemBase):
    backup: Expense = None
    record_type: ClassVar[RecordType] = RecordType.EXPENSE

    def to_summary(self) -> Dict[str, Any]:
        result = self._summary()
        result.update({
            'date': self.backup.date,
            'category': self.backup.category,
            'amount': self.backup.amount,
            'description': self.backup.description,
        })
        return result


@dataclass
class MileageTrashItem(_TrashItemBase):
    backup: MileageLog = None
    record_type: ClassVar[RecordType] = RecordType.MILEAGE

    def to_summary(self) -> Dict[str, Any]:
        result = self._summary()
        result.update({
            'date': self.backup.date,
            'miles': self.backup.miles,
            'vehicle': self.backup.vehicle,
            'tripId': self.backup.trip_id,
        })
        return result


TrashItem = Union[TripTrashItem, ExpenseTrashItem, MileageTrashItem]

_TRASH_CLASSES = {
    RecordType.TRIP: TripTrashItem,
    RecordType.EXPENSE: ExpenseTrashItem,
    RecordType.MILEAGE: MileageTrashItem,
}


def trash_item_from_tombstone(record_type: RecordType, tombstone: Dict[str, Any]) -> TrashItem:
    """Build the typed trash variant for a stored tombstone.

    Raises KeyError/TypeError when the tombstone has no usable backup.
    """
    backup_data = tombstone["backup"]
    if not isinstance(backup_data, dict):
        raise TypeError("tombstone backup is not an object")
    backup_data = dict(backup_data)
    backup_data.setdefault("id", tombstone["id"])
    backup = RECORD_CLASSES[record_type].from_dict(backup_data)
    trash_cls = _TRASH_CLASSES[record_type]
    return trash_cls(
        id=str(tombstone["id"]),
        user_id=str(tombstone.get("userId") or backup.user_id),
        metadata=TrashMetadata.from_dict(tombstone.get("metadata") or {}, tombstone),
        backup=backup,
    )


# ─────────────────────────── SYNC QUEUE ───────────────────────────

@dataclass
class PendingMutation:
    """A single queued mutation waiting to be sent to the cloud"""
    action: QueueAction
    trip_id: str              # target record id (name kept for queue compatibility)
    data: Dict[str, Any]
    timestamp: int            # enqueue time, epoch milliseconds
    retries: int = 0
    last_error: Optional[str] = None
    id: Optional[int] = None  # assigned by the local store

    @property
    def collection(self) -> str:
        return self.data.get("store") or RecordType.TRIP.collection

    @property
    def record_type(self) -> RecordType:
        return RecordType.from_collection(self.collection)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'action': self.action.value if isinstance(self.action, QueueAction) else self.action,
            'tripId': self.trip_id,
            'data': self.data,
            'timestamp': self.timestamp,
            'retries': self.retries,
            'lastError': self.last_error,
        }


@dataclass
class PurgeSummary:
    """Outcome of one expired-trash purge run"""
    checked: int = 0
    deleted: int = 0
    errors: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'deleted': self.deleted,
            'errors': self.errors,
        }


# ─────────────────────────── SERVER SCHEMA ───────────────────────────

RECORDS_TABLE = """
CREATE TABLE IF NOT EXISTS records (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL,              -- epoch seconds; NULL = never expires
    updated_at TEXT NOT NULL
);
"""

RECORD_INDEX_TABLE = """
CREATE TABLE IF NOT EXISTS record_index (
    user_id TEXT NOT NULL,
    record_type TEXT NOT NULL,
    id TEXT NOT NULL,
    value TEXT NOT NULL,
    sort_key TEXT,
    deleted INTEGER DEFAULT 0,
    PRIMARY KEY(user_id, record_type, id)
);
"""

INDEX_META_TABLE = """
CREATE TABLE IF NOT EXISTS index_meta (
    user_id TEXT NOT NULL,
    record_type TEXT NOT NULL,
    dirty INTEGER DEFAULT 0,
    rebuilt_at TEXT,
    PRIMARY KEY(user_id, record_type)
);
"""

USER_SETTINGS_TABLE = """
CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    settings TEXT DEFAULT '{}',
    updated_at TEXT
);
"""

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_records_expires ON records(expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_record_index_sort ON record_index(user_id, record_type, sort_key);",
]

ALL_SERVER_TABLES = [
    RECORDS_TABLE,
    RECORD_INDEX_TABLE,
    INDEX_META_TABLE,
    USER_SETTINGS_TABLE,
]


# ─────────────────────────── DEVICE SCHEMA ───────────────────────────

LOCAL_NAMESPACES = ("trips", "expenses", "mileage", "trash")


def local_namespace_table(namespace: str) -> str:
    """One document table per namespace, indexed by user and sync timestamps"""
    return f"""
CREATE TABLE IF NOT EXISTS {namespace} (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    sync_status TEXT,
    updated_at TEXT,
    data TEXT NOT NULL
);
"""


SYNC_QUEUE_TABLE = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    trip_id TEXT NOT NULL,
    data TEXT DEFAULT '{}',
    timestamp INTEGER NOT NULL,
    retries INTEGER DEFAULT 0,
    last_error TEXT
);
"""

FAILED_MUTATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS failed_mutations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_id INTEGER,
    action TEXT NOT NULL,
    trip_id TEXT NOT NULL,
    data TEXT DEFAULT '{}',
    timestamp INTEGER,
    retries INTEGER DEFAULT 0,
    last_error TEXT,
    reason TEXT NOT NULL,
    failed_at TEXT NOT NULL
);
"""

SYNC_META_TABLE = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

LOCAL_INDEXES = [
    f"CREATE INDEX IF NOT EXISTS idx_{ns}_user ON {ns}(user_id);" for ns in LOCAL_NAMESPACES
] + [
    f"CREATE INDEX IF NOT EXISTS idx_{ns}_sync ON {ns}(sync_status, updated_at);" for ns in LOCAL_NAMESPACES
]
