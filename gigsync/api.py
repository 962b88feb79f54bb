"""
HTTP routes for the GigSync cloud store.

Provides:
- /api/trips, /api/expenses, /api/mileage: list (with ?since= delta), get, create, update, delete
- /api/trash: list, restore, permanent delete, empty
- /api/settings: per-user mileage / fuel defaults
- /api/cron/trash-purge: run the expired-trash purge now (bearer CRON_ADMIN_SECRET)

Identity comes from the X-User-Id header set by the auth gateway in front
of this service.
"""

import hmac
import json
import os
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from gigsync.db import db
from gigsync.kv import RecordStore
from gigsync.lifecycle import LifecycleRules
from gigsync.models import RecordType
from gigsync.record_service import make_services
from gigsync.settings import SettingsService
from gigsync.trash_purge import purge_expired_trash

logger = logging.getLogger("gigsync.api")

# ─────────────────────────── DEPENDENCIES ───────────────────────────

_rules: Optional[LifecycleRules] = None


def get_rules() -> LifecycleRules:
    """Get or create the process-wide lifecycle rules (record services + settings)."""
    global _rules
    if _rules is None:
        store = RecordStore(db)
        _rules = LifecycleRules(make_services(store), SettingsService(db))
    return _rules


def reset_rules():
    global _rules
    _rules = None


def require_user_id(request: Request) -> str:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


def require_admin(request: Request):
    """Cron / diagnostics access: ``Authorization: Bearer <CRON_ADMIN_SECRET>``."""
    header = (request.headers.get("Authorization") or "").strip()
    token = header[7:].strip() if header.startswith("Bearer ") else header
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    secret = os.getenv("CRON_ADMIN_SECRET", "")
    if not secret or not hmac.compare_digest(secret.encode(), token.encode()):
        logger.warning(f"Rejected admin request to {request.url.path}")
        raise HTTPException(status_code=403, detail="Forbidden")
    return True


async def read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return body


def parse_record_type(value: Optional[str]) -> Optional[RecordType]:
    if not value:
        return None
    try:
        return RecordType.from_collection(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown record type: {value}")


# ─────────────────────────── COLLECTIONS ───────────────────────────

def collection_router(record_type: RecordType) -> APIRouter:
    """CRUD + delta listing for one record type."""
    router = APIRouter(prefix=f"/api/{record_type.collection}", tags=[record_type.collection])
    label = record_type.value

    @router.get("")
    def list_records(
        since: Optional[str] = None,
        user_id: str = Depends(require_user_id),
        rules: LifecycleRules = Depends(get_rules),
    ):
        return rules.service_for(record_type).list(user_id, since=since)

    @router.get("/{record_id}")
    def get_record(
        record_id: str,
        user_id: str = Depends(require_user_id),
        rules: LifecycleRules = Depends(get_rules),
    ):
        record = rules.service_for(record_type).get(user_id, record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
        return record

    @router.post("", status_code=201)
    async def create_record(
        request: Request,
        user_id: str = Depends(require_user_id),
        rules: LifecycleRules = Depends(get_rules),
    ):
        body = await read_json_body(request)
        record = rules.create(record_type, user_id, body)
        return JSONResponse(record, status_code=201)

    @router.put("/{record_id}")
    async def update_record(
        record_id: str,
        request: Request,
        user_id: str = Depends(require_user_id),
        rules: LifecycleRules = Depends(get_rules),
    ):
        body = await read_json_body(request)
        return rules.update(record_type, user_id, record_id, body)

    @router.delete("/{record_id}", status_code=204)
    def delete_record(
        record_id: str,
        user_id: str = Depends(require_user_id),
        rules: LifecycleRules = Depends(get_rules),
    ):
        rules.delete(record_type, user_id, record_id)
        return Response(status_code=204)

    return router


trips_router = collection_router(RecordType.TRIP)
expenses_router = collection_router(RecordType.EXPENSE)
mileage_router = collection_router(RecordType.MILEAGE)


# ─────────────────────────── TRASH ───────────────────────────

trash_router = APIRouter(prefix="/api/trash", tags=["trash"])


@trash_router.get("")
def list_trash(
    record_type: Optional[str] = Query(None, alias="type"),
    user_id: str = Depends(require_user_id),
    rules: LifecycleRules = Depends(get_rules),
):
    return rules.list_trash(user_id, parse_record_type(record_type))


@trash_router.delete("")
def empty_trash(
    user_id: str = Depends(require_user_id),
    rules: LifecycleRules = Depends(get_rules),
):
    removed = rules.empty_trash(user_id)
    return {"success": True, "deleted": removed}


@trash_router.post("/{record_id}")
def restore_from_trash(
    record_id: str,
    record_type: Optional[str] = Query(None, alias="type"),
    user_id: str = Depends(require_user_id),
    rules: LifecycleRules = Depends(get_rules),
):
    restored_type, record = rules.restore(user_id, record_id, parse_record_type(record_type))
    logger.info(f"Restored {restored_type.value} {record_id} for {user_id}")
    return record


@trash_router.delete("/{record_id}")
def permanent_delete(
    record_id: str,
    record_type: Optional[str] = Query(None, alias="type"),
    user_id: str = Depends(require_user_id),
    rules: LifecycleRules = Depends(get_rules),
):
    removed = rules.permanent_delete(user_id, record_id, parse_record_type(record_type))
    return {"success": True, "deleted": removed}


# ─────────────────────────── SETTINGS / CRON ───────────────────────────

settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


@settings_router.get("")
def get_settings(
    user_id: str = Depends(require_user_id),
    rules: LifecycleRules = Depends(get_rules),
):
    return rules.settings.get(user_id)


@settings_router.put("")
async def update_settings(
    request: Request,
    user_id: str = Depends(require_user_id),
    rules: LifecycleRules = Depends(get_rules),
):
    body = await read_json_body(request)
    return rules.settings.update(user_id, body)


cron_router = APIRouter(prefix="/api/cron", tags=["cron"])


@cron_router.post("/trash-purge")
@cron_router.get("/trash-purge")
def run_trash_purge(
    _admin: bool = Depends(require_admin),
    rules: LifecycleRules = Depends(get_rules),
):
    summary = purge_expired_trash(rules.services, clock=rules.clock)
    return summary.to_dict()


ALL_ROUTERS = [
    trips_router,
    expenses_router,
    mileage_router,
    trash_router,
    settings_router,
    cron_router,
]
