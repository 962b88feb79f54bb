"""
Tests for the cloud record services (tombstones, restore, TTL, index repair).
"""

import json

import pytest

from gigsync.errors import NotDeletedError, NotFoundError
from gigsync.models import RecordType, RETENTION_SECONDS

from tests.conftest import USER_ID, OTHER_USER_ID, get_test_db, raw_slot


@pytest.fixture
def trips(services):
    return services[RecordType.TRIP]


@pytest.fixture
def expenses(services):
    return services[RecordType.EXPENSE]


@pytest.fixture
def mileage(services):
    return services[RecordType.MILEAGE]


def _expense(expense_id="e1", user_id=USER_ID, **extra):
    record = {"id": expense_id, "userId": user_id, "category": "supplies", "amount": 9.5}
    record.update(extra)
    return record


class TestPutAndGet:
    def test_put_stamps_updated_at(self, expenses, clock):
        saved = expenses.put(_expense())
        assert saved["updatedAt"] == "2026-03-01T12:00:00.000Z"
        assert saved["createdAt"] == saved["updatedAt"]
        assert expenses.get(USER_ID, "e1")["amount"] == 9.5

    def test_put_clears_tombstone_markers_and_device_fields(self, expenses):
        saved = expenses.put(_expense(deleted=True, backup={"x": 1}, store="expenses", skipEnrichment=True))
        assert "deleted" not in saved
        assert "backup" not in saved
        assert "store" not in saved
        assert "skipEnrichment" not in saved

    def test_records_are_scoped_per_user(self, expenses):
        expenses.put(_expense())
        assert expenses.get(OTHER_USER_ID, "e1") is None
        assert expenses.list(OTHER_USER_ID) == []

    def test_get_never_returns_tombstone(self, expenses):
        expenses.put(_expense())
        expenses.delete(USER_ID, "e1")
        assert expenses.get(USER_ID, "e1") is None
        assert expenses.get_raw(USER_ID, "e1")["deleted"] is True


class TestSoftDelete:
    def test_tombstone_shape(self, expenses, clock):
        expenses.put(_expense())
        tombstone = expenses.delete(USER_ID, "e1")

        assert tombstone["deleted"] is True
        assert tombstone["deletedBy"] == USER_ID
        assert tombstone["metadata"]["originalKey"] == "expense:user-1:e1"
        assert tombstone["metadata"]["expiresAt"] == "2026-03-31T12:00:00.000Z"
        assert tombstone["backup"]["amount"] == 9.5

        slot = raw_slot("expense:user-1:e1")
        assert slot["expires_at"] is not None
        assert json.loads(slot["value"])["deleted"] is True

    def test_delete_missing_is_noop(self, expenses):
        assert expenses.delete(USER_ID, "nope") is None

    def test_delete_twice_is_idempotent(self, expenses, clock):
        expenses.put(_expense())
        first = expenses.delete(USER_ID, "e1")
        clock.advance(minutes=5)
        second = expenses.delete(USER_ID, "e1")
        assert second == first
        assert expenses.get_raw(USER_ID, "e1") == first

    def test_trip_backup_has_zero_miles(self, trips):
        trips.put({"id": "t1", "userId": USER_ID, "totalMiles": 42.0})
        tombstone = trips.delete(USER_ID, "t1")
        assert tombstone["backup"]["totalMiles"] == 0


class TestRestore:
    def test_round_trip_restores_record(self, mileage, clock):
        original = mileage.put({"id": "m1", "userId": USER_ID, "miles": 12.5, "vehicle": "Civic"})
        mileage.delete(USER_ID, "m1")
        clock.advance(hours=1)
        restored = mileage.restore(USER_ID, "m1")

        assert restored["updatedAt"] != original["updatedAt"]
        without_stamp = {k: v for k, v in restored.items() if k != "updatedAt"}
        assert without_stamp == {k: v for k, v in original.items() if k != "updatedAt"}
        assert mileage.get(USER_ID, "m1") == restored
        assert raw_slot("mileage:user-1:m1")["expires_at"] is None

    def test_restore_missing_raises_not_found(self, mileage):
        with pytest.raises(NotFoundError):
            mileage.restore(USER_ID, "ghost")

    def test_restore_active_raises_not_deleted(self, mileage):
        mileage.put({"id": "m1", "userId": USER_ID, "miles": 1})
        with pytest.raises(NotDeletedError) as exc:
            mileage.restore(USER_ID, "m1")
        assert exc.value.status_code == 404

    def test_permanent_delete_removes_slot(self, mileage):
        mileage.put({"id": "m1", "userId": USER_ID, "miles": 1})
        mileage.delete(USER_ID, "m1")
        assert mileage.permanent_delete(USER_ID, "m1") is True
        assert mileage.get_raw(USER_ID, "m1") is None
        assert mileage.list_trash(USER_ID) == []


class TestListing:
    def test_list_excludes_tombstones(self, expenses):
        expenses.put(_expense("e1"))
        expenses.put(_expense("e2"))
        expenses.delete(USER_ID, "e1")
        assert [r["id"] for r in expenses.list(USER_ID)] == ["e2"]

    def test_list_since_includes_tombstones(self, expenses, clock):
        expenses.put(_expense("e1"))
        expenses.put(_expense("e2"))
        watermark = "2026-03-01T12:00:00.000Z"
        clock.advance(minutes=1)
        expenses.delete(USER_ID, "e1")
        expenses.put(_expense("e3"))

        changed = {r["id"]: r for r in expenses.list(USER_ID, since=watermark)}
        assert set(changed) == {"e1", "e3"}
        assert changed["e1"]["deleted"] is True

    def test_list_sorted_newest_first(self, expenses, clock):
        expenses.put(_expense("old"))
        clock.advance(minutes=1)
        expenses.put(_expense("new"))
        assert [r["id"] for r in expenses.list(USER_ID)] == ["new", "old"]

    def test_list_trash_summaries(self, trips, clock):
        trips.put({"id": "t1", "userId": USER_ID, "date": "2026-02-01", "stops": [{"id": "s", "earnings": 5}]})
        trips.put({"id": "t2", "userId": USER_ID})
        trips.delete(USER_ID, "t1")
        clock.advance(minutes=1)
        trips.delete(USER_ID, "t2")

        trash = trips.list_trash(USER_ID)
        assert [item["id"] for item in trash] == ["t2", "t1"]
        assert trash[1]["recordType"] == "trip"
        assert trash[1]["date"] == "2026-02-01"
        assert trash[1]["stopCount"] == 1
        assert trash[1]["metadata"]["originalKey"] == "trip:user-1:t1"

    def test_list_trash_skips_unreadable_tombstone(self, trips, record_store):
        trips.put({"id": "t1", "userId": USER_ID})
        trips.delete(USER_ID, "t1")
        record_store.put("trip:user-1:bad", {"id": "bad", "deleted": True, "backup": "not-a-dict"})
        assert [item["id"] for item in trips.list_trash(USER_ID)] == ["t1"]


class TestTtlExpiry:
    def test_tombstone_gone_after_retention_window(self, expenses, clock):
        expenses.put(_expense())
        expenses.delete(USER_ID, "e1")
        assert len(expenses.list(USER_ID, since="2000-01-01T00:00:00Z")) == 1

        clock.advance(seconds=RETENTION_SECONDS + 1)
        assert expenses.get_raw(USER_ID, "e1") is None
        assert expenses.list(USER_ID, since="2000-01-01T00:00:00Z") == []
        assert expenses.list_trash(USER_ID) == []
        with pytest.raises(NotFoundError):
            expenses.restore(USER_ID, "e1")

    def test_tombstone_still_present_just_before_expiry(self, expenses, clock):
        expenses.put(_expense())
        expenses.delete(USER_ID, "e1")
        clock.advance(seconds=RETENTION_SECONDS - 1)
        assert len(expenses.list_trash(USER_ID)) == 1

    def test_restore_clears_ttl(self, expenses, clock):
        expenses.put(_expense())
        expenses.delete(USER_ID, "e1")
        expenses.restore(USER_ID, "e1")
        clock.advance(days=60)
        assert expenses.get(USER_ID, "e1") is not None


class TestIndexSelfHeal:
    def test_index_rebuilds_when_rows_missing(self, expenses):
        expenses.put(_expense("e1"))
        expenses.put(_expense("e2"))
        conn = get_test_db()
        conn.execute("DELETE FROM record_index WHERE id = 'e2'")
        conn.commit()
        conn.close()

        assert {r["id"] for r in expenses.list(USER_ID)} == {"e1", "e2"}
        conn = get_test_db()
        count = conn.execute("SELECT COUNT(*) FROM record_index WHERE record_type = 'expense'").fetchone()[0]
        conn.close()
        assert count == 2

    def test_dirty_flag_forces_rebuild(self, expenses, record_store):
        expenses.put(_expense("e1", amount=1))
        # Authoritative write that bypasses the index
        record_store.put("expense:user-1:e1", _expense("e1", amount=99, updatedAt="2026-03-01T12:00:00.000Z"))
        assert expenses.list(USER_ID)[0]["amount"] == 1

        expenses.mark_dirty(USER_ID)
        assert expenses.list(USER_ID)[0]["amount"] == 99

        conn = get_test_db()
        dirty = conn.execute(
            "SELECT dirty FROM index_meta WHERE user_id = ? AND record_type = 'expense'", (USER_ID,)
        ).fetchone()[0]
        conn.close()
        assert dirty == 0

    def test_corrupt_slot_skipped_during_rebuild(self, expenses, record_store):
        expenses.put(_expense("e1"))
        record_store.put("expense:user-1:broken", "{not json")
        assert [r["id"] for r in expenses.list(USER_ID)] == ["e1"]


class TestUserScoping:
    def test_user_id_with_colon_gets_its_own_prefix(self, expenses):
        expenses.put(_expense("secret", user_id="alice:x"))
        expenses.put(_expense("mine", user_id="alice"))

        assert [r["id"] for r in expenses.list("alice")] == ["mine"]
        assert [r["id"] for r in expenses.list("alice:x")] == ["secret"]
        assert raw_slot("expense:alice%3Ax:secret") is not None

    def test_prefix_sibling_trash_not_listed(self, expenses):
        expenses.put(_expense("secret", user_id="alice:x"))
        expenses.delete("alice:x", "secret")
        assert expenses.list_trash("alice") == []
        assert [t["id"] for t in expenses.list_trash("alice:x")] == ["secret"]

    def test_slot_owned_by_someone_else_is_skipped(self, expenses, record_store):
        expenses.put(_expense("e1"))
        record_store.put("expense:user-1:planted", _expense("planted", user_id=OTHER_USER_ID))

        assert [r["id"] for r in expenses.rebuild_index(USER_ID)] == ["e1"]

    def test_split_key_reverses_escaping(self, expenses):
        key = expenses.key_for("alice:x", "e1")
        assert expenses.split_key(key) == ("alice:x", "e1")
