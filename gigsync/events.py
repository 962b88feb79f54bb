"""
Observable sync status and a typed pub/sub bus for sync events.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Type

from gigsync.models import PendingMutation, RecordType

logger = logging.getLogger("gigsync.events")


# ─────────────────────────── SYNC STATUS ───────────────────────────

@dataclass(frozen=True)
class SyncState:
    online: bool = False
    syncing: bool = False
    pending_count: int = 0
    last_sync_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        """Single-word summary: offline / syncing / error:<message> / synced"""
        if not self.online:
            return "offline"
        if self.syncing:
            return "syncing"
        if self.error:
            return f"error:{self.error}"
        return "synced"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'online': self.online,
            'syncing': self.syncing,
            'pendingCount': self.pending_count,
            'lastSyncAt': self.last_sync_at,
            'error': self.error,
        }


StateListener = Callable[[SyncState], None]


class SyncStatusStore:
    """Holds the current SyncState and notifies subscribers on every change."""

    def __init__(self):
        self._state = SyncState()
        self._listeners: List[StateListener] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> SyncState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
        listener(self._state)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _update(self, **changes):
        with self._lock:
            self._state = replace(self._state, **changes)
            listeners = list(self._listeners)
            state = self._state
        for listener in listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}")

    def set_online(self, online: bool):
        self._update(online=online)

    def set_syncing(self):
        self._update(syncing=True)

    def set_synced(self, at: str):
        self._update(syncing=False, error=None, last_sync_at=at)

    def set_error(self, message: str):
        self._update(syncing=False, error=message)

    def set_idle(self):
        self._update(syncing=False)

    def update_pending_count(self, count: int):
        self._update(pending_count=count)


# ─────────────────────────── EVENT BUS ───────────────────────────

@dataclass(frozen=True)
class RecordEnriched:
    """A local record was patched by background enrichment"""
    record_type: RecordType
    record_id: str
    record: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordSynced:
    record_type: RecordType
    record_id: str
    action: str


@dataclass(frozen=True)
class MutationDropped:
    """A queue item left the queue without succeeding"""
    item: PendingMutation
    reason: str


Handler = Callable[[Any], None]


class EventBus:
    """In-process bus keyed by event class."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._subscribers[event_type].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._subscribers[event_type]:
                    self._subscribers[event_type].remove(handler)
        return unsubscribe

    def publish(self, event: Any):
        with self._lock:
            handlers = list(self._subscribers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"EventBus handler failed for {type(event).__name__}: {e}")
