"""
Shared pytest fixtures and test utilities for GigSync tests.

This module provides:
- Environment configuration before the app is imported
- Database setup/teardown with isolation
- A controllable clock for TTL / expiry tests
- Record payload factories
- TestClient and sync-engine fixtures wired to the same clock
"""
import os
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Any, List, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

# ─────────────────────────── PATH SETUP ───────────────────────────

TEST_ROOT = Path(__file__).resolve().parent
DATA_DIR = TEST_ROOT / "tmp_data"
DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_FILE = DATA_DIR / "gigsync.db"
CRON_SECRET = "test-cron-secret"

# ─────────────────────────── ENVIRONMENT ───────────────────────────

def configure_test_environment():
    """Configure environment variables for testing."""
    os.environ["DB_PATH"] = str(DB_FILE)
    os.environ["LOCAL_DB_PATH"] = str(DATA_DIR / "gigsync-local.db")
    os.environ["LOG_FILE"] = str(DATA_DIR / "gigsync.log")
    os.environ["TRASH_PURGE_ENABLED"] = "0"  # No background thread in tests
    os.environ["CRON_ADMIN_SECRET"] = CRON_SECRET
    os.environ.setdefault("LOG_LEVEL", "WARNING")
    os.environ.setdefault("GOOGLE_MAPS_API_KEY", "test-maps-key")

configure_test_environment()

# Now we can import app modules
import sys
sys.path.insert(0, str(TEST_ROOT.parent))

from gigsync.main import app  # noqa: E402
from gigsync.api import get_rules, reset_rules  # noqa: E402
from gigsync.db import db, init_db  # noqa: E402
from gigsync.kv import RecordStore  # noqa: E402
from gigsync.lifecycle import LifecycleRules  # noqa: E402
from gigsync.local_store import LocalStore  # noqa: E402
from gigsync.record_service import make_services  # noqa: E402
from gigsync.settings import SettingsService  # noqa: E402
from gigsync.sync_engine import SyncEngine  # noqa: E402

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

# ─────────────────────────── CLOCK ───────────────────────────

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

# ─────────────────────────── DATABASE HELPERS ───────────────────────────

def get_test_db():
    """Get a database connection for test operations."""
    conn = sqlite3.connect(DB_FILE)
    conn.row_factory = sqlite3.Row
    return conn

def clear_all_test_data():
    """Clear all test data from database tables."""
    init_db()
    conn = get_test_db()
    for table in ("records", "record_index", "index_meta", "user_settings"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    reset_rules()

def raw_slot(key: str):
    """Read a KV slot directly, bypassing expiry."""
    conn = get_test_db()
    row = conn.execute("SELECT * FROM records WHERE key = ?", (key,)).fetchone()
    conn.close()
    return dict(row) if row else None

# ─────────────────────────── TEST DATA FACTORIES ───────────────────────────

def make_trip(**overrides) -> Dict[str, Any]:
    """Trip payload as a client would send it."""
    trip = {
        "id": f"trip-{uuid.uuid4().hex[:8]}",
        "date": "2026-03-01",
        "startAddress": "100 Main St, Springfield",
        "endAddress": "100 Main St, Springfield",
        "stops": [
            {"id": "s1", "address": "200 Oak Ave", "order": 0, "earnings": 25.0},
            {"id": "s2", "address": "300 Pine Rd", "order": 1, "earnings": 15.0},
        ],
        "totalMiles": 0,
        "mpg": 25,
        "gasPrice": 3.5,
    }
    trip.update(overrides)
    return trip

def make_mileage(**overrides) -> Dict[str, Any]:
    mileage = {
        "id": f"mileage-{uuid.uuid4().hex[:8]}",
        "date": "2026-03-01",
        "startOdometer": 1000,
        "endOdometer": 1042.5,
        "vehicle": "Civic",
    }
    mileage.update(overrides)
    return mileage

def make_expense(**overrides) -> Dict[str, Any]:
    expense = {
        "id": f"expense-{uuid.uuid4().hex[:8]}",
        "date": "2026-03-01",
        "category": "supplies",
        "amount": 12.5,
        "description": "Insulated bags",
    }
    expense.update(overrides)
    return expense

def auth_headers(user_id: str = USER_ID) -> Dict[str, str]:
    return {"X-User-Id": user_id}

def admin_headers(secret: str = CRON_SECRET) -> Dict[str, str]:
    return {"Authorization": f"Bearer {secret}"}

# ─────────────────────────── PYTEST FIXTURES ───────────────────────────

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def record_store(clock):
    clear_all_test_data()
    return RecordStore(db, clock)

@pytest.fixture
def services(record_store, clock):
    return make_services(record_store, clock)

@pytest.fixture
def rules(services, clock):
    return LifecycleRules(services, SettingsService(db, clock), clock)

@pytest.fixture
def client(rules):
    """
    Function-scoped test client with clean database state, sharing the
    ``rules`` fixture (and its clock) with the app.
    """
    app.dependency_overrides[get_rules] = lambda: rules
    with TestClient(app) as client:
        client.headers.update(auth_headers())
        yield client
    app.dependency_overrides.clear()

@pytest.fixture
def local_store(tmp_path):
    return LocalStore(str(tmp_path / "local.db"))

@pytest.fixture
def asgi_client(rules):
    """httpx AsyncClient that talks to the app in-process."""
    app.dependency_overrides[get_rules] = lambda: rules
    transport = httpx.ASGITransport(app=app)
    yield httpx.AsyncClient(transport=transport, base_url="http://testserver", headers=auth_headers())
    app.dependency_overrides.clear()

class ScriptedServer:
    """
    MockTransport handler that records requests and replies from a script.

    ``responses`` is consumed in order; once exhausted ``default`` is used.
    Entries may be an int status code, an (int, json) tuple, or an exception.
    """

    def __init__(self, responses: List[Any] = None, default: Any = 200):
        self.responses = list(responses or [])
        self.default = default
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.responses.pop(0) if self.responses else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, tuple):
            status, body = reply
            return httpx.Response(status, json=body)
        if reply == 204:
            return httpx.Response(204)
        return httpx.Response(reply, json={"ok": True} if reply < 400 else {"error": f"status {reply}"})

    @property
    def calls(self) -> List[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]

def make_engine(local_store: LocalStore, handler: Callable, **kwargs) -> SyncEngine:
    """Engine over a MockTransport; starts offline so nothing drains until told to."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")
    kwargs.setdefault("debounce_seconds", 0.01)
    return SyncEngine(local_store, client, **kwargs)

# ─────────────────────────── ASSERTION HELPERS ───────────────────────────

def assert_json_error(response, expected_status: int = 400, contains: str = None):
    """Assert JSON response indicates error."""
    assert response.status_code == expected_status, (
        f"Expected {expected_status}, got {response.status_code}: {response.text}"
    )
    data = response.json()
    assert "error" in data
    if contains:
        assert contains in data["error"], f"Expected '{contains}' in '{data['error']}'"
