"""
Expired trash purge.

Removes every tombstone whose ``metadata.expiresAt`` has passed, whether or
not its store-level TTL has already hidden it from reads, and clears its
index rows, in bounded batches.
"""

import os
import threading
import logging
from typing import Dict, Optional

from gigsync.db import Clock, parse_iso, utc_now
from gigsync.models import PurgeSummary, RecordType
from gigsync.record_service import RecordService

logger = logging.getLogger("gigsync.purge")

TRASH_PURGE_INTERVAL = int(os.getenv("TRASH_PURGE_INTERVAL", "3600"))
DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_DELETES = 500


def purge_expired_trash(
    services: Dict[RecordType, RecordService],
    clock: Optional[Clock] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_deletes: int = DEFAULT_MAX_DELETES,
) -> PurgeSummary:
    """Permanently delete tombstones past their expiry across all users."""
    clock = clock or utc_now
    now = clock()
    summary = PurgeSummary()

    for record_type, service in services.items():
        store = service.store
        prefix = f"{record_type.value}:"
        after = None
        while summary.deleted < max_deletes:
            keys = store.list_keys(prefix, limit=batch_size, after=after, include_expired=True)
            if not keys:
                break
            after = keys[-1]
            for key in keys:
                summary.checked += 1
                value = store.get_json(key, include_expired=True)
                if not value or not value.get("deleted"):
                    continue
                expires_at = parse_iso((value.get("metadata") or {}).get("expiresAt"))
                if expires_at is None or expires_at > now:
                    continue
                user_id, record_id = service.split_key(key)
                try:
                    service.permanent_delete(user_id, record_id)
                    summary.deleted += 1
                except Exception as e:
                    logger.error(f"Failed to purge {key}: {e}")
                    summary.errors.append(f"{key}: {e}")
                if summary.deleted >= max_deletes:
                    logger.warning(f"Trash purge stopped at max deletes ({max_deletes})")
                    break

    removed = services[RecordType.TRIP].store.purge_expired() if services else 0
    summary.finished_at = clock()
    logger.info(
        f"Trash purge finished: checked={summary.checked} deleted={summary.deleted} "
        f"expired_slots={removed} errors={len(summary.errors)}"
    )
    return summary


class TrashPurger:
    """
    Background thread that runs the expired-trash purge on an interval.
    """

    def __init__(self, services: Dict[RecordType, RecordService], poll_interval: int = TRASH_PURGE_INTERVAL):
        self.services = services
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread = None
        self._running = False
        self.last_summary: Optional[PurgeSummary] = None

    def start(self):
        """Start the background purger."""
        if self._running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._purge_loop, daemon=True)
        self._thread.start()
        self._running = True
        logger.info(f"Trash purger started (every {self.poll_interval}s)")

    def stop(self):
        """Stop the background purger."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._running = False
        logger.info("Trash purger stopped")

    def _purge_loop(self):
        while not self._stop_event.is_set():
            try:
                self.last_summary = purge_expired_trash(self.services)
            except Exception as e:
                logger.error(f"Error in trash purger: {e}")

            self._stop_event.wait(self.poll_interval)

    @property
    def is_running(self) -> bool:
        return self._running


# Global purger instance
_purger: Optional[TrashPurger] = None


def get_purger(services: Optional[Dict[RecordType, RecordService]] = None) -> TrashPurger:
    """Get or create the global trash purger."""
    global _purger
    if _purger is None:
        if services is None:
            raise RuntimeError("Trash purger has not been configured")
        _purger = TrashPurger(services)
    return _purger


def stop_purger():
    """Stop the global trash purger."""
    global _purger
    if _purger:
        _purger.stop()
        _purger = None
