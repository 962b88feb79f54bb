"""
Tests for the on-device store: namespaces, queue, dead letters and meta.
"""

import sqlite3

import pytest

from gigsync.models import FailureReason, PendingMutation, QueueAction

from tests.conftest import USER_ID, OTHER_USER_ID


def _mutation(target_id, action=QueueAction.CREATE, store="trips"):
    return PendingMutation(action=action, trip_id=target_id, data={"id": target_id, "store": store}, timestamp=1)


class TestNamespaces:
    def test_put_get_and_list_by_user(self, local_store):
        local_store.put("trips", {"id": "t1", "userId": USER_ID, "updatedAt": "2026-03-01T10:00:00.000Z"})
        local_store.put("trips", {"id": "t2", "userId": USER_ID, "updatedAt": "2026-03-01T11:00:00.000Z"})
        local_store.put("trips", {"id": "t3", "userId": OTHER_USER_ID})

        assert local_store.get("trips", "t1")["userId"] == USER_ID
        assert [t["id"] for t in local_store.get_all_by_user("trips", USER_ID)] == ["t2", "t1"]

    def test_put_replaces(self, local_store):
        local_store.put("expenses", {"id": "e1", "userId": USER_ID, "amount": 1})
        local_store.put("expenses", {"id": "e1", "userId": USER_ID, "amount": 2})
        assert local_store.get("expenses", "e1")["amount"] == 2

    def test_by_sync_status(self, local_store):
        local_store.put("mileage", {"id": "m1", "userId": USER_ID, "syncStatus": "pending"})
        local_store.put("mileage", {"id": "m2", "userId": USER_ID, "syncStatus": "synced"})
        assert [m["id"] for m in local_store.get_by_sync_status("mileage", "pending")] == ["m1"]

    def test_delete_missing_is_noop(self, local_store):
        local_store.delete("trips", "never-there")
        assert local_store.get("trips", "never-there") is None

    def test_unknown_namespace_rejected(self, local_store):
        with pytest.raises(ValueError):
            local_store.get("boats", "b1")

    def test_corrupt_document_skipped(self, local_store):
        local_store.put("trips", {"id": "good", "userId": USER_ID})
        conn = sqlite3.connect(local_store.path)
        conn.execute(
            "INSERT INTO trips (id, user_id, sync_status, updated_at, data) VALUES (?, ?, ?, ?, ?)",
            ("bad", USER_ID, None, None, "{broken"),
        )
        conn.commit()
        conn.close()

        assert [t["id"] for t in local_store.get_all_by_user("trips", USER_ID)] == ["good"]
        assert local_store.get("trips", "bad") is None


class TestQueue:
    def test_queue_keeps_insertion_order(self, local_store):
        for target in ("a", "b", "c"):
            local_store.add_queue_item(_mutation(target))
        assert [item.trip_id for item in local_store.get_queue()] == ["a", "b", "c"]
        assert local_store.queue_count() == 3

    def test_add_assigns_id(self, local_store):
        item = _mutation("a")
        local_store.add_queue_item(item)
        assert item.id is not None

    def test_update_and_delete(self, local_store):
        item = _mutation("a", QueueAction.UPDATE, "expenses")
        local_store.add_queue_item(item)
        item.retries = 2
        item.last_error = "HTTP 503: unavailable"
        item.data["amount"] = 5
        local_store.update_queue_item(item)

        (stored,) = local_store.get_queue()
        assert stored.retries == 2
        assert stored.last_error == "HTTP 503: unavailable"
        assert stored.data["amount"] == 5
        assert stored.collection == "expenses"

        local_store.delete_queue_item(item.id)
        assert local_store.queue_count() == 0


class TestDeadLetterAndMeta:
    def test_failed_mutations_recorded(self, local_store):
        item = _mutation("a", QueueAction.DELETE, "mileage")
        local_store.add_queue_item(item)
        item.last_error = "HTTP 409: conflict"
        local_store.add_failed(item, FailureReason.FATAL)

        (failed,) = local_store.get_failed()
        assert failed["reason"] == "fatal"
        assert failed["action"] == "delete"
        assert failed["data"]["store"] == "mileage"
        assert failed["last_error"] == "HTTP 409: conflict"

    def test_meta_round_trip(self, local_store):
        assert local_store.get_meta("last_sync:trips") is None
        local_store.set_meta("last_sync:trips", "2026-03-01T12:00:00.000Z")
        local_store.set_meta("last_sync:trips", "2026-03-02T12:00:00.000Z")
        assert local_store.get_meta("last_sync:trips") == "2026-03-02T12:00:00.000Z"
