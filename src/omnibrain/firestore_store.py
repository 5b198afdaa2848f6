"""Cloud Firestore backend for OmniBrain.

Memories for a namespace live in the collection
``users/{namespace}/memories``, one document per memory.  Semantic search
uses Firestore's vector ``find_nearest`` query, so the ``embedding`` field
needs a vector index with the embedding provider's dimension.

Google API errors are re-raised as :class:`~omnibrain.errors.BackendError`
carrying the gRPC status name (``UNAVAILABLE``, ``DEADLINE_EXCEEDED``, ...)
so the retry executor can classify them.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.cloud.firestore_v1.base_vector_query import DistanceMeasure
from google.cloud.firestore_v1.vector import Vector

from .errors import DEADLINE_EXCEEDED, BackendError
from .store import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, Document, DocumentStore, WriteBatch

logger = logging.getLogger(__name__)

# Firestore rejects batches with more than 500 writes.
_MAX_BATCH_WRITES = 500
_DISTANCE_FIELD = "vector_distance"


@contextmanager
def _translate_errors() -> Generator[None, None, None]:
    """Re-raise Google API errors as :class:`BackendError`."""
    try:
        yield
    except google_exceptions.GoogleAPICallError as exc:
        status = getattr(exc, "grpc_status_code", None)
        code = status.name if status is not None else type(exc).__name__.upper()
        raise BackendError(code, str(exc.message)) from exc
    except google_exceptions.RetryError as exc:
        raise BackendError(DEADLINE_EXCEEDED, str(exc)) from exc


def _to_firestore(field: str, value: Any) -> Any:
    """Translate a field value (or transform) into its Firestore form."""
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, ArrayUnion):
        return firestore.ArrayUnion(list(value.values))
    if isinstance(value, ArrayRemove):
        return firestore.ArrayRemove(list(value.values))
    if field == "embedding" and value is not None:
        return Vector(list(value))
    return value


def _snapshot_to_document(snapshot: Any) -> Document:
    return Document(snapshot.id, snapshot.to_dict() or {})


class FirestoreDocumentStore(DocumentStore):
    """A namespace's memories in Cloud Firestore.

    Args:
        client: A ``google.cloud.firestore.Client``.
        namespace: Tenant key; selects ``users/{namespace}/memories``.
    """

    def __init__(self, client: firestore.Client, namespace: str) -> None:
        self._client = client
        self.namespace = namespace
        self._collection = client.collection("users").document(namespace).collection("memories")

    @classmethod
    def from_service_account(
        cls, credentials_path: str | os.PathLike[str], namespace: str
    ) -> FirestoreDocumentStore:
        """Build a store from a service-account JSON key file."""
        client = firestore.Client.from_service_account_json(str(credentials_path))
        logger.info("Connected to Firestore project %s", client.project)
        return cls(client, namespace)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def new_id(self) -> str:
        return self._collection.document().id

    def get(self, doc_id: str) -> Document | None:
        with _translate_errors():
            snapshot = self._collection.document(doc_id).get()
        if not snapshot.exists:
            return None
        return _snapshot_to_document(snapshot)

    def get_many(self, doc_ids: Iterable[str]) -> dict[str, Document]:
        refs = [self._collection.document(doc_id) for doc_id in dict.fromkeys(doc_ids)]
        if not refs:
            return {}
        with _translate_errors():
            snapshots = list(self._client.get_all(refs))
        return {s.id: _snapshot_to_document(s) for s in snapshots if s.exists}

    def fetch_all(self) -> list[Document]:
        with _translate_errors():
            return [_snapshot_to_document(s) for s in self._collection.stream()]

    def query_tags_any(self, tags: list[str]) -> list[Document]:
        if not tags:
            return []
        query = self._collection.where(filter=FieldFilter("tags", "array_contains_any", tags))
        with _translate_errors():
            return [_snapshot_to_document(s) for s in query.stream()]

    def find_nearest(self, vector: list[float], limit: int) -> list[tuple[Document, float]]:
        query = self._collection.find_nearest(
            vector_field="embedding",
            query_vector=Vector(vector),
            distance_measure=DistanceMeasure.COSINE,
            limit=limit,
            distance_result_field=_DISTANCE_FIELD,
        )
        with _translate_errors():
            snapshots = list(query.stream())

        results: list[tuple[Document, float]] = []
        for snapshot in snapshots:
            doc = _snapshot_to_document(snapshot)
            distance = doc.data.pop(_DISTANCE_FIELD, None)
            results.append((doc, float(distance) if distance is not None else 0.0))
        return results

    def count(self) -> int:
        with _translate_errors():
            results = self._collection.count(alias="total").get()
        for group in results:
            for result in group:
                if result.alias == "total":
                    return int(result.value)
        return 0

    def created_at_bound(self, ascending: bool) -> datetime | None:
        direction = firestore.Query.ASCENDING if ascending else firestore.Query.DESCENDING
        query = self._collection.order_by("createdAt", direction=direction).limit(1)
        with _translate_errors():
            snapshots = list(query.stream())
        if not snapshots:
            return None
        value = (snapshots[0].to_dict() or {}).get("createdAt")
        return value if isinstance(value, datetime) else None

    def find_expired(self, now: datetime) -> list[str]:
        # A range filter on a timestamp only matches timestamp values, so
        # documents with a null expiresAt are never returned.
        query = self._collection.where(filter=FieldFilter("expiresAt", "<=", now))
        with _translate_errors():
            return [s.id for s in query.stream()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(self, batch: WriteBatch) -> None:
        ops = list(batch.ops)
        if not ops:
            return

        # Updates flagged missing_ok are dropped for absent documents,
        # since a Firestore update on a missing document fails the batch.
        optional_ids = [op.doc_id for op in ops if op.kind == "update" and op.missing_ok]
        if optional_ids:
            existing = self.get_many(optional_ids)
            ops = [
                op
                for op in ops
                if not (op.kind == "update" and op.missing_ok and op.doc_id not in existing)
            ]

        for start in range(0, len(ops), _MAX_BATCH_WRITES):
            fs_batch = self._client.batch()
            for op in ops[start : start + _MAX_BATCH_WRITES]:
                ref = self._collection.document(op.doc_id)
                if op.kind == "delete":
                    fs_batch.delete(ref)
                elif op.kind == "set":
                    fs_batch.set(ref, self._translate(op.data or {}))
                elif op.kind == "update":
                    fs_batch.update(ref, self._translate(op.data or {}))
                else:
                    raise ValueError(f"Unknown write operation {op.kind!r}")
            with _translate_errors():
                fs_batch.commit()

    @staticmethod
    def _translate(data: Mapping[str, Any]) -> dict[str, Any]:
        return {field: _to_firestore(field, value) for field, value in data.items()}

    def close(self) -> None:
        self._client.close()

    def __repr__(self) -> str:  # pragma: no cover
        return f"FirestoreDocumentStore(namespace={self.namespace!r})"
