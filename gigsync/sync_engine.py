"""
Offline-first sync engine.

Provides:
- A durable pending-mutation queue (enqueue / drain) drained strictly in
  enqueue order, one item at a time, behind a single in-progress flag
- Debounced drains after enqueue, a periodic drain while online, and drains
  on reconnect / foreground
- Error classification: 4xx responses are fatal (dropped after one attempt),
  network errors and 5xx are retried up to MAX_SYNC_RETRIES times
- Best-effort route enrichment of trips with no distance before upload
- Delta pull (sync_down) of server changes since the last watermark

The engine never raises to its caller; outcomes are visible through the
queue, the dead-letter table and the SyncStatusStore.
"""

import os
import time
import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from gigsync.calculations import (
    as_number, calculate_fuel_cost, calculate_net_profit, calculate_total_earnings,
    meters_to_miles, seconds_to_minutes,
)
from gigsync.db import Clock, now_iso, utc_now
from gigsync.directions import GoogleDirectionsClient
from gigsync.errors import SyncRequestError
from gigsync.events import EventBus, MutationDropped, RecordEnriched, RecordSynced, SyncStatusStore
from gigsync.local_store import LocalStore
from gigsync.models import (
    FailureReason, MAX_SYNC_RETRIES, PendingMutation, QueueAction, RecordType, SyncStatus,
)

logger = logging.getLogger("gigsync.sync")

SYNC_API_BASE = os.getenv("SYNC_API_BASE", "http://localhost:3000")
DEBOUNCE_SECONDS = 0.3
AUTO_SYNC_INTERVAL = 30.0

SYNC_COLLECTIONS = tuple(rt.collection for rt in RecordType)

# Device-side fields never sent to the server
_LOCAL_ONLY_KEYS = ("store", "skipEnrichment", "syncStatus", "lastSyncedAt", "recordType")


def build_sync_client(base_url: Optional[str] = None, user_id: Optional[str] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """AsyncClient pointed at the cloud store, carrying the caller's identity."""
    headers = {"X-User-Id": user_id} if user_id else {}
    return httpx.AsyncClient(base_url=base_url or SYNC_API_BASE, headers=headers, transport=transport)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:100] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)[:100]
    return str(body)[:100]


class SyncEngine:
    def __init__(
        self,
        store: LocalStore,
        client: httpx.AsyncClient,
        directions: Optional[GoogleDirectionsClient] = None,
        status: Optional[SyncStatusStore] = None,
        events: Optional[EventBus] = None,
        clock: Clock = utc_now,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        auto_sync_interval: float = AUTO_SYNC_INTERVAL,
    ):
        self.store = store
        self.client = client
        self.directions = directions
        self.status = status or SyncStatusStore()
        self.events = events or EventBus()
        self.clock = clock
        self.debounce_seconds = debounce_seconds
        self.auto_sync_interval = auto_sync_interval

        self.online = False
        self._syncing = False
        self._initialized = False
        self._debounce_task: Optional[asyncio.Task] = None
        self._auto_task: Optional[asyncio.Task] = None

    # ─────────────────────────── LIFECYCLE ───────────────────────────

    async def init(self, online: bool = True):
        if self._initialized:
            return
        logger.info("Initializing sync engine")
        self.online = online
        self.status.set_online(online)
        if online:
            await self.drain_now()
            await self.sync_down()
            self._start_auto_sync()
        self._refresh_pending()
        self._initialized = True

    async def destroy(self):
        for task in (self._auto_task, self._debounce_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._auto_task = None
        self._debounce_task = None
        self._initialized = False
        logger.info("Sync engine stopped")

    async def set_online(self, online: bool):
        if online == self.online:
            return
        self.online = online
        self.status.set_online(online)
        if online:
            logger.info("Back online, draining queue")
            await self.drain_now()
            self._start_auto_sync()
        else:
            logger.info("Offline, auto-sync paused")
            self._stop_auto_sync()

    async def on_visibility_change(self, visible: bool):
        if visible and self.online:
            await self.drain_now()

    def _start_auto_sync(self):
        if self._auto_task and not self._auto_task.done():
            return
        self._auto_task = asyncio.create_task(self._auto_sync_loop())

    def _stop_auto_sync(self):
        if self._auto_task and not self._auto_task.done():
            self._auto_task.cancel()
        self._auto_task = None

    async def _auto_sync_loop(self):
        while True:
            await asyncio.sleep(self.auto_sync_interval)
            if self.online:
                await self.drain_now()

    # ─────────────────────────── QUEUE ───────────────────────────

    @property
    def pending_count(self) -> int:
        return self.status.state.pending_count

    def _refresh_pending(self):
        self.status.update_pending_count(self.store.queue_count())

    async def enqueue(self, action: QueueAction, target_id: str, payload: Optional[Dict[str, Any]] = None,
                      collection: str = "trips") -> PendingMutation:
        data = dict(payload or {})
        data["store"] = collection
        item = PendingMutation(
            action=QueueAction(action),
            trip_id=str(target_id),
            data=data,
            timestamp=int(time.time() * 1000),
        )
        self.store.add_queue_item(item)
        self._refresh_pending()
        logger.info(f"Queued {item.action.value} {collection}/{item.trip_id}")

        if self.online and not self._syncing:
            self._schedule_drain()
        return item

    def _schedule_drain(self):
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced_drain())

    async def _debounced_drain(self):
        await asyncio.sleep(self.debounce_seconds)
        await self.drain_now()

    async def drain_now(self):
        """Send every queued mutation once, in order. Returns immediately if already draining."""
        if not self.online or self._syncing:
            return
        self._syncing = True
        self.status.set_syncing()
        last_error = None

        try:
            queue = self.store.get_queue()
            if queue:
                logger.info(f"Syncing {len(queue)} item(s)")
            failures = 0
            for item in queue:
                error = await self._process_item(item)
                self._refresh_pending()
                if error:
                    failures += 1
                    last_error = error
            if queue:
                logger.info(f"Sync pass finished: {len(queue) - failures} sent, {failures} failed")
        except Exception as e:
            logger.error(f"Sync error: {e}", exc_info=True)
            last_error = "Sync failed"
        finally:
            self._syncing = False

        if last_error:
            self.status.set_error(last_error)
        else:
            self.status.set_synced(now_iso(self.clock))

    # ─────────────────────────── ITEM PROCESSING ───────────────────────────

    async def _process_item(self, item: PendingMutation) -> Optional[str]:
        """Attempt one queue item; returns an error summary when it did not succeed."""
        try:
            if self._should_enrich(item):
                await self._enrich_trip(item)
            await self._send(item)
        except SyncRequestError as e:
            if e.is_fatal:
                return self._drop_fatal(item, e)
            return self._record_retry(item, str(e))
        except httpx.HTTPError as e:
            return self._record_retry(item, f"{type(e).__name__}: {e}")

        self.store.delete_queue_item(item.id)
        self._mark_synced(item)
        self.events.publish(RecordSynced(item.record_type, item.trip_id, item.action.value))
        return None

    def _drop_fatal(self, item: PendingMutation, error: SyncRequestError) -> str:
        item.last_error = str(error)
        logger.error(
            f"Sync failed permanently for item {item.id} ({item.action.value} {item.collection}/{item.trip_id}): "
            f"{error}. Removing from queue."
        )
        self.store.delete_queue_item(item.id)
        self.store.add_failed(item, FailureReason.FATAL)
        self.events.publish(MutationDropped(item, FailureReason.FATAL.value))
        return f"Sync rejected: {error.message}"

    def _record_retry(self, item: PendingMutation, message: str) -> str:
        item.retries += 1
        item.last_error = message
        if item.retries > MAX_SYNC_RETRIES:
            logger.warning(
                f"Permanent failure for {item.action.value} {item.collection}/{item.trip_id} "
                f"after {item.retries} attempts: {message}"
            )
            self.store.delete_queue_item(item.id)
            self.store.add_failed(item, FailureReason.RETRIES_EXHAUSTED)
            self.events.publish(MutationDropped(item, FailureReason.RETRIES_EXHAUSTED.value))
        else:
            logger.warning(
                f"Retry {item.retries}/{MAX_SYNC_RETRIES} for {item.action.value} "
                f"{item.collection}/{item.trip_id}: {message}"
            )
            self.store.update_queue_item(item)
        return message

    async def _send(self, item: PendingMutation):
        record_type = item.record_type
        base = f"/api/{record_type.collection}"
        body = {k: v for k, v in item.data.items() if k not in _LOCAL_ONLY_KEYS}
        params = None

        if item.action == QueueAction.CREATE:
            method, url = "POST", base
        elif item.action == QueueAction.UPDATE:
            method, url = "PUT", f"{base}/{item.trip_id}"
        elif item.action == QueueAction.DELETE:
            method, url, body = "DELETE", f"{base}/{item.trip_id}", None
        elif item.action == QueueAction.RESTORE:
            method, url, body = "POST", f"/api/trash/{item.trip_id}", None
            params = {"type": record_type.value}
        else:
            method, url, body = "DELETE", f"/api/trash/{item.trip_id}", None
            params = {"type": record_type.value}

        response = await self.client.request(method, url, json=body, params=params)
        if response.status_code >= 400:
            raise SyncRequestError(response.status_code, _error_message(response))

    def _mark_synced(self, item: PendingMutation):
        if item.action == QueueAction.PERMANENT_DELETE:
            return
        if item.action == QueueAction.DELETE:
            namespace, record_id = "trash", f"{item.record_type.value}:{item.trip_id}"
        else:
            namespace, record_id = item.record_type.collection, item.trip_id

        record = self.store.get(namespace, record_id)
        if record:
            record["syncStatus"] = SyncStatus.SYNCED.value
            record["lastSyncedAt"] = now_iso(self.clock)
            self.store.put(namespace, record)

    # ─────────────────────────── ENRICHMENT ───────────────────────────

    def _should_enrich(self, item: PendingMutation) -> bool:
        return (
            self.directions is not None
            and item.action in (QueueAction.CREATE, QueueAction.UPDATE)
            and item.record_type == RecordType.TRIP
            and not item.data.get("skipEnrichment")
        )

    async def _enrich_trip(self, item: PendingMutation):
        trip = item.data
        miles = trip.get("totalMiles")
        start = trip.get("startAddress")
        if not isinstance(miles, (int, float)) or miles != 0 or not isinstance(start, str) or not start:
            return

        stops = [s for s in trip.get("stops") or [] if isinstance(s, dict)]
        destination = trip.get("endAddress") or start
        try:
            route = await self.directions.route(start, destination, [s.get("address") for s in stops])
        except Exception as e:
            logger.warning(f"Route enrichment failed for trip {item.trip_id} (sending anyway): {e}")
            return
        if route is None:
            logger.warning(f"No route found for trip {item.trip_id}, skipping enrichment")
            return

        patch: Dict[str, Any] = {
            "totalMiles": meters_to_miles(route.distance_meters),
            "estimatedTime": seconds_to_minutes(route.duration_seconds),
        }
        if as_number(trip.get("mpg")) and as_number(trip.get("gasPrice")) is not None:
            patch["fuelCost"] = calculate_fuel_cost(patch["totalMiles"], trip["mpg"], trip["gasPrice"])
        if stops:
            patch["totalEarnings"] = calculate_total_earnings(stops)
        patch["netProfit"] = calculate_net_profit({**trip, **patch})

        item.data.update(patch)
        self.store.update_queue_item(item)

        local = self.store.get("trips", item.trip_id)
        if local is not None:
            local.update(patch)
            self.store.put("trips", local)
            self.events.publish(RecordEnriched(RecordType.TRIP, item.trip_id, dict(local)))
        logger.info(f"Enriched trip {item.trip_id}: {patch['totalMiles']} mi, {patch['estimatedTime']} min")

    # ─────────────────────────── DELTA PULL ───────────────────────────

    async def sync_down(self, collections: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """Apply server changes since each collection's watermark; returns records applied."""
        if not self.online:
            return {}
        applied: Dict[str, int] = {}
        pending = {(item.collection, item.trip_id) for item in self.store.get_queue()}

        for collection in collections or SYNC_COLLECTIONS:
            meta_key = f"last_sync:{collection}"
            since = self.store.get_meta(meta_key)
            try:
                response = await self.client.get(
                    f"/api/{collection}", params={"since": since} if since else None
                )
                if response.status_code >= 400:
                    raise SyncRequestError(response.status_code, _error_message(response))
                records = response.json()
            except (httpx.HTTPError, SyncRequestError, ValueError) as e:
                logger.error(f"Sync down failed for {collection}: {e}")
                continue

            count = 0
            watermark = since
            for record in records if isinstance(records, list) else []:
                if not isinstance(record, dict) or record.get("id") is None:
                    continue
                record_id = str(record["id"])
                stamp = record.get("updatedAt")
                if stamp and (watermark is None or stamp > watermark):
                    watermark = stamp
                if (collection, record_id) in pending:
                    continue
                if record.get("deleted"):
                    self.store.delete(collection, record_id)
                else:
                    local = dict(record)
                    local["syncStatus"] = SyncStatus.SYNCED.value
                    local["lastSyncedAt"] = now_iso(self.clock)
                    self.store.put(collection, local)
                count += 1

            if watermark:
                self.store.set_meta(meta_key, watermark)
            applied[collection] = count
            if count:
                logger.info(f"Pulled {count} {collection} change(s)")
        return applied
