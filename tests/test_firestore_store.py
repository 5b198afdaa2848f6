"""Tests for the Cloud Firestore backend.

The Firestore client is replaced by ``unittest.mock`` objects, so these tests
check how the store drives the client API without any network access.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest import mock

import pytest

firestore = pytest.importorskip("google.cloud.firestore")

from google.api_core import exceptions as google_exceptions  # noqa: E402
from google.cloud.firestore_v1.vector import Vector  # noqa: E402

from omnibrain.errors import UNAVAILABLE, BackendError  # noqa: E402
from omnibrain.firestore_store import FirestoreDocumentStore, _to_firestore  # noqa: E402
from omnibrain.store import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, WriteBatch  # noqa: E402


def _snapshot(doc_id, data, exists=True):
    snap = mock.MagicMock()
    snap.id = doc_id
    snap.exists = exists
    snap.to_dict.return_value = data
    return snap


@pytest.fixture()
def client():
    return mock.MagicMock()


@pytest.fixture()
def collection(client):
    return client.collection.return_value.document.return_value.collection.return_value


@pytest.fixture()
def fs_store(client):
    return FirestoreDocumentStore(client, "alice")


def test_collection_path(client, fs_store):
    client.collection.assert_called_once_with("users")
    client.collection.return_value.document.assert_called_once_with("alice")
    client.collection.return_value.document.return_value.collection.assert_called_once_with(
        "memories"
    )
    assert fs_store.namespace == "alice"


def test_field_translation():
    assert _to_firestore("createdAt", SERVER_TIMESTAMP) is firestore.SERVER_TIMESTAMP
    assert isinstance(_to_firestore("relatedTo", ArrayUnion(["a"])), firestore.ArrayUnion)
    assert isinstance(_to_firestore("relatedTo", ArrayRemove(["a"])), firestore.ArrayRemove)
    assert isinstance(_to_firestore("embedding", [0.1, 0.2]), Vector)
    assert _to_firestore("embedding", None) is None
    assert _to_firestore("fact", "hello") == "hello"


def test_get(collection, fs_store):
    collection.document.return_value.get.return_value = _snapshot("m1", {"fact": "hi"})
    doc = fs_store.get("m1")
    assert doc.id == "m1"
    assert doc.data == {"fact": "hi"}
    collection.document.assert_called_with("m1")


def test_get_missing(collection, fs_store):
    collection.document.return_value.get.return_value = _snapshot("m1", None, exists=False)
    assert fs_store.get("m1") is None


def test_get_many_drops_missing(client, fs_store):
    client.get_all.return_value = [
        _snapshot("a", {"fact": "a"}),
        _snapshot("b", None, exists=False),
    ]
    docs = fs_store.get_many(["a", "b"])
    assert list(docs) == ["a"]


def test_find_nearest_extracts_distance(collection, fs_store):
    collection.find_nearest.return_value.stream.return_value = [
        _snapshot("m1", {"fact": "near", "vector_distance": 0.25}),
    ]
    ((doc, distance),) = fs_store.find_nearest([1.0, 0.0], limit=5)
    assert distance == 0.25
    assert "vector_distance" not in doc.data
    kwargs = collection.find_nearest.call_args.kwargs
    assert kwargs["vector_field"] == "embedding"
    assert kwargs["limit"] == 5


def test_count(collection, fs_store):
    result = mock.MagicMock(alias="total", value=7)
    collection.count.return_value.get.return_value = [[result]]
    assert fs_store.count() == 7


def test_created_at_bound(collection, fs_store):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    query = collection.order_by.return_value.limit.return_value
    query.stream.return_value = [_snapshot("m1", {"createdAt": created})]
    assert fs_store.created_at_bound(ascending=True) == created
    query.stream.return_value = []
    assert fs_store.created_at_bound(ascending=False) is None


def test_commit_skips_missing_optional_updates(client, collection, fs_store):
    refs = {}
    collection.document.side_effect = lambda doc_id: refs.setdefault(doc_id, mock.MagicMock())
    client.get_all.return_value = [_snapshot("present", {"relatedTo": ["gone"]})]
    fs_batch = client.batch.return_value

    batch = WriteBatch()
    batch.update("present", {"relatedTo": ArrayRemove(["gone"])}, missing_ok=True)
    batch.update("gone", {"relatedTo": ArrayRemove(["present"])}, missing_ok=True)
    batch.delete("old")
    fs_store.commit(batch)

    updated = [c.args[0] for c in fs_batch.update.call_args_list]
    assert updated == [refs["present"]]
    fs_batch.delete.assert_called_once_with(refs["old"])
    fs_batch.commit.assert_called_once()


def test_commit_splits_large_batches(client, fs_store):
    batch = WriteBatch()
    for i in range(501):
        batch.delete(f"m{i}")
    fs_store.commit(batch)
    assert client.batch.return_value.commit.call_count == 2


def test_unavailable_becomes_retryable_backend_error(collection, fs_store):
    collection.stream.side_effect = google_exceptions.ServiceUnavailable("backend down")
    with pytest.raises(BackendError) as excinfo:
        fs_store.fetch_all()
    assert excinfo.value.code == UNAVAILABLE
    assert excinfo.value.retryable


def test_permission_denied_is_not_retryable(collection, fs_store):
    collection.stream.side_effect = google_exceptions.PermissionDenied("nope")
    with pytest.raises(BackendError) as excinfo:
        fs_store.fetch_all()
    assert excinfo.value.code == "PERMISSION_DENIED"
    assert not excinfo.value.retryable
