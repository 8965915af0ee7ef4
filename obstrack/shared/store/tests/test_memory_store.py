"""Tests for the in-memory document store and subscriptions."""
import pytest

from obstrack.shared.errors import StoreError
from obstrack.shared.store import InMemoryDocumentStore, Subscription

COLLECTION = "artifacts/app/public/data/complaints"


@pytest.fixture
def store():
    return InMemoryDocumentStore()


class TestPointOperations:
    """Tests for get/set/create."""

    def test_get_missing_returns_none(self, store):
        assert store.get_doc(f"{COLLECTION}/2024-03-03") is None

    def test_set_then_get(self, store):
        store.set_doc(f"{COLLECTION}/2024-03-03", {"raised": 3})

        doc = store.get_doc(f"{COLLECTION}/2024-03-03")

        assert doc.id == "2024-03-03"
        assert doc.data == {"raised": 3}

    def test_merge_keeps_other_fields(self, store):
        path = f"{COLLECTION}/2024-03-03"
        store.set_doc(path, {"raised": 3, "open": 1})
        store.set_doc(path, {"open": 0, "closed": 3}, merge=True)

        assert store.get_doc(path).data == {"raised": 3, "open": 0, "closed": 3}

    def test_overwrite_replaces_document(self, store):
        path = f"{COLLECTION}/2024-03-03"
        store.set_doc(path, {"raised": 3, "open": 1})
        store.set_doc(path, {"closed": 3})

        assert store.get_doc(path).data == {"closed": 3}

    def test_create_if_absent(self, store):
        path = "artifacts/app/users/u1/profile/role"

        assert store.create_doc(path, {"role": "manager"}) is True
        assert store.create_doc(path, {"role": "deputy"}) is False
        assert store.get_doc(path).data == {"role": "manager"}

    def test_returned_data_is_a_copy(self, store):
        path = f"{COLLECTION}/2024-03-03"
        store.set_doc(path, {"tasks": [{"progress": 10}]})

        store.get_doc(path).data["tasks"].append({"progress": 50})

        assert len(store.get_doc(path).data["tasks"]) == 1

    def test_collection_path_rejected_for_writes(self, store):
        with pytest.raises(StoreError):
            store.set_doc(COLLECTION, {"raised": 1})

    def test_list_docs_only_direct_children(self, store):
        store.set_doc(f"{COLLECTION}/a", {"raised": 1})
        store.set_doc(f"{COLLECTION}/b", {"raised": 2})
        store.set_doc("artifacts/app/public/data/the_gap/2024-03", {"is_positive": True})

        ids = sorted(doc.id for doc in store.list_docs(COLLECTION))

        assert ids == ["a", "b"]

    def test_fail_writes_raises_store_error(self, store):
        store.fail_writes = True

        with pytest.raises(StoreError):
            store.set_doc(f"{COLLECTION}/a", {"raised": 1})

        assert store.get_doc(f"{COLLECTION}/a") is None

    def test_update_if_matching_field(self, store):
        store.set_doc(f"{COLLECTION}/req", {"requestStatus": "Pending", "bucketKey": "2024-03-05"})

        assert store.update_if(
            f"{COLLECTION}/req", "requestStatus", "Pending", {"requestStatus": "Approved"}
        ) is True

        data = store.get_doc(f"{COLLECTION}/req").data
        assert data == {"requestStatus": "Approved", "bucketKey": "2024-03-05"}

    def test_update_if_field_changed(self, store):
        store.set_doc(f"{COLLECTION}/req", {"requestStatus": "Rejected"})

        assert store.update_if(
            f"{COLLECTION}/req", "requestStatus", "Pending", {"requestStatus": "Approved"}
        ) is False
        assert store.get_doc(f"{COLLECTION}/req").data["requestStatus"] == "Rejected"

    def test_update_if_missing_document(self, store):
        assert store.update_if(f"{COLLECTION}/req", "requestStatus", "Pending", {}) is False
        assert store.get_doc(f"{COLLECTION}/req") is None

    def test_new_doc_ids_are_unique(self, store):
        assert store.new_doc_id() != store.new_doc_id()


class TestSubscriptions:
    """Tests for on_snapshot delivery and teardown."""

    def test_initial_snapshot_delivered(self, store):
        store.set_doc(f"{COLLECTION}/a", {"raised": 1})
        received = []

        store.on_snapshot(COLLECTION, received.append)

        assert len(received) == 1
        assert [doc.id for doc in received[0]] == ["a"]

    def test_collection_listener_sees_writes_in_order(self, store):
        received = []
        store.on_snapshot(COLLECTION, received.append)

        store.set_doc(f"{COLLECTION}/a", {"raised": 1})
        store.set_doc(f"{COLLECTION}/a", {"raised": 2}, merge=True)

        assert [docs[0].data["raised"] for docs in received[1:]] == [1, 2]

    def test_document_listener_receives_none_when_absent(self, store):
        received = []
        store.on_snapshot("artifacts/app/users/u1/profile/role", received.append)

        assert received == [None]

    def test_unsubscribe_stops_delivery(self, store):
        received = []
        subscription = store.on_snapshot(COLLECTION, received.append)

        subscription.unsubscribe()
        store.set_doc(f"{COLLECTION}/a", {"raised": 1})

        assert len(received) == 1
        assert subscription.active is False
        assert store._hub.listener_count() == 0

    def test_unsubscribe_is_idempotent(self, store):
        subscription = store.on_snapshot(COLLECTION, lambda snapshot: None)

        subscription.unsubscribe()
        subscription.unsubscribe()

        assert store._hub.listener_count() == 0

    def test_context_manager_releases_listener(self, store):
        with store.on_snapshot(COLLECTION, lambda snapshot: None) as subscription:
            assert isinstance(subscription, Subscription)
            assert store._hub.listener_count() == 1

        assert store._hub.listener_count() == 0

    def test_simulated_outage_reaches_error_callback(self, store):
        errors = []
        subscription = store.on_snapshot(
            COLLECTION, lambda snapshot: None, on_error=errors.append
        )

        store.simulate_outage(COLLECTION, "network down")

        assert len(errors) == 1
        assert isinstance(errors[0], StoreError)
        assert subscription.active is True

    def test_failing_listener_does_not_block_others(self, store):
        received = []

        def broken(snapshot):
            raise RuntimeError("boom")

        store.on_snapshot(COLLECTION, broken)
        store.on_snapshot(COLLECTION, received.append)
        store.set_doc(f"{COLLECTION}/a", {"raised": 1})

        assert len(received) == 2

    def test_failed_first_read_only_reaches_new_listener(self, store, monkeypatch):
        existing_errors = []
        store.on_snapshot(COLLECTION, lambda snapshot: None, on_error=existing_errors.append)

        def unavailable(collection_path):
            raise StoreError("read failed")

        monkeypatch.setattr(store, "list_docs", unavailable)
        new_errors = []
        subscription = store.on_snapshot(
            COLLECTION, lambda snapshot: None, on_error=new_errors.append
        )

        assert len(new_errors) == 1
        assert existing_errors == []
        assert subscription.active is True
