"""Document store abstraction and the local SQLite backend.

The memory engine talks to a :class:`DocumentStore`: one collection of
documents scoped to a single namespace.  Documents are plain field
mappings with camelCase keys (``fact``, ``tags``, ``pinned``,
``relatedTo``, ``expiresAt``, ``createdAt``, ``updatedAt``,
``embedding``).  Writes may use the field transforms defined here
(:data:`SERVER_TIMESTAMP`, :class:`ArrayUnion`, :class:`ArrayRemove`),
which each backend resolves in its own way.

:class:`SQLiteDocumentStore` keeps everything in a local SQLite file.  The
Cloud Firestore backend lives in :mod:`omnibrain.firestore_store`.
"""

from __future__ import annotations

import contextlib
import json
import math
import os
import sqlite3
import struct
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, NamedTuple

from .errors import UNAVAILABLE, BackendError

_DEFAULT_DIR = os.path.join(os.path.expanduser("~"), ".omnibrain")
_DEFAULT_DB = os.path.join(_DEFAULT_DIR, "memories.db")

# ---------------------------------------------------------------------------
# Documents and write batches
# ---------------------------------------------------------------------------


class Document(NamedTuple):
    """A raw document: its identifier and field mapping."""

    id: str
    data: dict[str, Any]


class _ServerTimestamp:
    """Sentinel replaced by the backend's clock when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Any = _ServerTimestamp()


class _ArrayTransform:
    """Base for array field transforms."""

    def __init__(self, values: Iterable[Any]) -> None:
        self.values = tuple(values)

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and other.values == self.values  # type: ignore[attr-defined]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self.values)!r})"


class ArrayUnion(_ArrayTransform):
    """Add *values* to an array field, skipping ones already present."""


class ArrayRemove(_ArrayTransform):
    """Remove every occurrence of *values* from an array field."""


class WriteOp(NamedTuple):
    """One queued write.  *kind* is ``"set"``, ``"update"`` or ``"delete"``."""

    kind: str
    doc_id: str
    data: dict[str, Any] | None = None
    missing_ok: bool = False


class WriteBatch:
    """An ordered list of writes committed atomically by a store.

    Example::

        batch = WriteBatch()
        batch.update(a, {"relatedTo": ArrayUnion([b])})
        batch.update(b, {"relatedTo": ArrayUnion([a])})
        store.commit(batch)
    """

    def __init__(self) -> None:
        self.ops: list[WriteOp] = []

    def set(self, doc_id: str, data: Mapping[str, Any]) -> None:
        """Create or fully overwrite *doc_id*."""
        self.ops.append(WriteOp("set", doc_id, dict(data)))

    def update(self, doc_id: str, data: Mapping[str, Any], missing_ok: bool = False) -> None:
        """Change fields of an existing document.

        With *missing_ok*, an absent document is skipped instead of failing
        the whole batch.
        """
        self.ops.append(WriteOp("update", doc_id, dict(data), missing_ok))

    def delete(self, doc_id: str) -> None:
        """Delete *doc_id* (a no-op if it does not exist)."""
        self.ops.append(WriteOp("delete", doc_id))

    def __len__(self) -> int:
        return len(self.ops)

    def __repr__(self) -> str:  # pragma: no cover
        return f"WriteBatch({len(self.ops)} ops)"


# ---------------------------------------------------------------------------
# Abstract store
# ---------------------------------------------------------------------------


class DocumentStore(ABC):
    """One namespace's collection of memory documents."""

    namespace: str

    @abstractmethod
    def new_id(self) -> str:
        """Return a fresh, unused document identifier."""

    def create(self, data: Mapping[str, Any]) -> str:
        """Create a document with a generated identifier and return it."""
        doc_id = self.new_id()
        batch = WriteBatch()
        batch.set(doc_id, data)
        self.commit(batch)
        return doc_id

    @abstractmethod
    def get(self, doc_id: str) -> Document | None:
        """Return the document, or ``None`` if it does not exist."""

    @abstractmethod
    def get_many(self, doc_ids: Iterable[str]) -> dict[str, Document]:
        """Fetch several documents in one round trip, keyed by id.

        Missing ids are absent from the result.
        """

    @abstractmethod
    def fetch_all(self) -> list[Document]:
        """Return every document in the collection."""

    @abstractmethod
    def query_tags_any(self, tags: list[str]) -> list[Document]:
        """Return documents whose ``tags`` contain any of *tags*."""

    @abstractmethod
    def find_nearest(self, vector: list[float], limit: int) -> list[tuple[Document, float]]:
        """Return up to *limit* ``(document, cosine distance)`` pairs, nearest first."""

    def update(self, doc_id: str, data: Mapping[str, Any]) -> None:
        """Change fields of an existing document."""
        batch = WriteBatch()
        batch.update(doc_id, data)
        self.commit(batch)

    def delete(self, doc_id: str) -> None:
        """Delete a document."""
        batch = WriteBatch()
        batch.delete(doc_id)
        self.commit(batch)

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored documents, expired ones included."""

    @abstractmethod
    def created_at_bound(self, ascending: bool) -> datetime | None:
        """Return the oldest (*ascending*) or newest ``createdAt`` value."""

    @abstractmethod
    def find_expired(self, now: datetime) -> list[str]:
        """Return ids of documents whose ``expiresAt`` is at or before *now*."""

    @abstractmethod
    def commit(self, batch: WriteBatch) -> None:
        """Apply every write in *batch* atomically."""

    def close(self) -> None:
        """Release any resources held by the store."""


# ---------------------------------------------------------------------------
# SQLite encoding helpers
# ---------------------------------------------------------------------------


def _pack_embedding(embedding: list[float] | None) -> bytes | None:
    """Pack a list of floats into a compact little-endian f32 blob."""
    if not embedding:
        return None
    return struct.pack(f"<{len(embedding)}f", *embedding)


def _unpack_embedding(blob: bytes | None) -> list[float] | None:
    """Unpack a blob created by :func:`_pack_embedding`."""
    if blob is None:
        return None
    count = len(blob) // 4  # 4 bytes per float32
    return list(struct.unpack(f"<{count}f", blob))


def _format_ts(value: datetime | None) -> str | None:
    """Format a datetime as a fixed-width UTC ISO-8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _loads(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors in pure Python.

    Args:
        a: First vector.
        b: Second vector.

    Returns:
        Cosine similarity in the range ``[-1, 1]``.  Returns ``0.0`` if
        either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise ValueError(f"Vectors must be the same length (got {len(a)} and {len(b)}).")

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for ai, bi in zip(a, b):
        dot += ai * bi
        mag_a += ai * ai
        mag_b += bi * bi

    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0

    return dot / (math.sqrt(mag_a) * math.sqrt(mag_b))


# field name -> column name
_COLUMNS: dict[str, str] = {
    "fact": "fact",
    "tags": "tags_json",
    "pinned": "pinned",
    "relatedTo": "related_json",
    "expiresAt": "expires_at",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "embedding": "embedding_blob",
}

_ARRAY_FIELDS = ("tags", "relatedTo")
_TIMESTAMP_FIELDS = ("expiresAt", "createdAt", "updatedAt")


class SQLiteDocumentStore(DocumentStore):
    """Thread-safe SQLite storage for one namespace's memory documents.

    Several namespaces may share one database file; each store only sees
    rows tagged with its own namespace.  The class uses per-thread
    connections to satisfy SQLite's threading constraints.

    Args:
        path: Path to the SQLite database file.  Parent directories are
            created automatically.  Defaults to ``~/.omnibrain/memories.db``.
        namespace: Tenant key scoping every read and write.
    """

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(self, path: str | os.PathLike[str] | None = None, namespace: str = "default") -> None:
        raw_path = str(path) if path is not None else _DEFAULT_DB
        self._path = os.path.realpath(os.path.expanduser(raw_path))
        self.namespace = namespace
        self._local = threading.local()

        parent = os.path.dirname(self._path)
        if parent:
            os.makedirs(parent, mode=0o700, exist_ok=True)
            with contextlib.suppress(OSError):
                os.chmod(parent, 0o700)

        from .migrations import ensure_schema

        self._schema_version = ensure_schema(self._get_connection())

    @property
    def path(self) -> str:
        return self._path

    @property
    def schema_version(self) -> int:
        return self._schema_version

    # ------------------------------------------------------------------
    # Connection management (per-thread)
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return (or create) a SQLite connection for the current thread."""
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._path)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        """Yield a cursor; commit on success, roll back on error.

        Lock contention is reported as a retryable :class:`BackendError`.
        """
        conn = self._get_connection()
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            message = str(exc)
            if "locked" in message or "busy" in message:
                raise BackendError(UNAVAILABLE, message) from exc
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def get(self, doc_id: str) -> Document | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM memories WHERE namespace = ? AND id = ?",
                (self.namespace, doc_id),
            )
            row = cur.fetchone()
        return self._row_to_document(row) if row is not None else None

    def get_many(self, doc_ids: Iterable[str]) -> dict[str, Document]:
        ids = list(dict.fromkeys(doc_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._cursor() as cur:
            cur.execute(
                f"SELECT * FROM memories WHERE namespace = ? AND id IN ({placeholders})",
                (self.namespace, *ids),
            )
            rows = cur.fetchall()
        docs = (self._row_to_document(r) for r in rows)
        return {doc.id: doc for doc in docs}

    def fetch_all(self) -> list[Document]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM memories WHERE namespace = ?", (self.namespace,))
            rows = cur.fetchall()
        return [self._row_to_document(r) for r in rows]

    def query_tags_any(self, tags: list[str]) -> list[Document]:
        if not tags:
            return []
        placeholders = ", ".join("?" for _ in tags)
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM memories AS m
                WHERE m.namespace = ?
                  AND json_valid(m.tags_json)
                  AND EXISTS (
                      SELECT 1 FROM json_each(m.tags_json) AS t
                      WHERE t.value IN ({placeholders})
                  )
                """,
                (self.namespace, *tags),
            )
            rows = cur.fetchall()
        return [self._row_to_document(r) for r in rows]

    def find_nearest(self, vector: list[float], limit: int) -> list[tuple[Document, float]]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM memories WHERE namespace = ? AND embedding_blob IS NOT NULL",
                (self.namespace,),
            )
            rows = cur.fetchall()

        scored: list[tuple[Document, float]] = []
        for row in rows:
            doc = self._row_to_document(row)
            embedding = doc.data.get("embedding")
            if not embedding or len(embedding) != len(vector):
                continue
            scored.append((doc, 1.0 - cosine_similarity(vector, embedding)))
        scored.sort(key=lambda pair: pair[1])
        return scored[: max(limit, 0)]

    def count(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM memories WHERE namespace = ?", (self.namespace,))
            result = cur.fetchone()
        return result[0] if result else 0

    def created_at_bound(self, ascending: bool) -> datetime | None:
        order = "ASC" if ascending else "DESC"
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT created_at FROM memories
                WHERE namespace = ? AND created_at IS NOT NULL
                ORDER BY created_at {order}
                LIMIT 1
                """,
                (self.namespace,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return datetime.fromisoformat(row[0])

    def find_expired(self, now: datetime) -> list[str]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id FROM memories
                WHERE namespace = ? AND expires_at IS NOT NULL AND expires_at <= ?
                """,
                (self.namespace, _format_ts(now)),
            )
            rows = cur.fetchall()
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(self, batch: WriteBatch) -> None:
        if not batch.ops:
            return
        now = datetime.now(timezone.utc)
        with self._cursor() as cur:
            for op in batch.ops:
                if op.kind == "delete":
                    cur.execute(
                        "DELETE FROM memories WHERE namespace = ? AND id = ?",
                        (self.namespace, op.doc_id),
                    )
                elif op.kind == "set":
                    self._apply_set(cur, op.doc_id, op.data or {}, now)
                elif op.kind == "update":
                    self._apply_update(cur, op, now)
                else:
                    raise ValueError(f"Unknown write operation {op.kind!r}")

    def _apply_set(
        self, cur: sqlite3.Cursor, doc_id: str, data: Mapping[str, Any], now: datetime
    ) -> None:
        values = {field: self._encode(field, value, None, now) for field, value in data.items()}
        columns = ["namespace", "id", *(_COLUMNS[field] for field in values)]
        placeholders = ", ".join("?" for _ in columns)
        cur.execute(
            f"INSERT OR REPLACE INTO memories ({', '.join(columns)}) VALUES ({placeholders})",
            (self.namespace, doc_id, *values.values()),
        )

    def _apply_update(self, cur: sqlite3.Cursor, op: WriteOp, now: datetime) -> None:
        cur.execute(
            "SELECT * FROM memories WHERE namespace = ? AND id = ?",
            (self.namespace, op.doc_id),
        )
        row = cur.fetchone()
        if row is None:
            if op.missing_ok:
                return
            raise BackendError("NOT_FOUND", f"No document to update: {op.doc_id}")

        current = self._row_to_document(row).data
        data = op.data or {}
        set_clauses = [f"{_COLUMNS[field]} = ?" for field in data]
        params = [self._encode(field, value, current.get(field), now) for field, value in data.items()]
        if not set_clauses:
            return
        cur.execute(
            f"UPDATE memories SET {', '.join(set_clauses)} WHERE namespace = ? AND id = ?",
            (*params, self.namespace, op.doc_id),
        )

    @staticmethod
    def _encode(field: str, value: Any, current: Any, now: datetime) -> Any:
        """Turn a document field value into its column value."""
        if field not in _COLUMNS:
            raise ValueError(f"Unknown memory field {field!r}")
        if value is SERVER_TIMESTAMP:
            value = now
        if isinstance(value, (ArrayUnion, ArrayRemove)):
            existing = list(current) if isinstance(current, list) else []
            if isinstance(value, ArrayUnion):
                value = existing + [v for v in value.values if v not in existing]
            else:
                value = [v for v in existing if v not in value.values]

        if field in _ARRAY_FIELDS:
            return json.dumps(list(value or []), ensure_ascii=False)
        if field in _TIMESTAMP_FIELDS:
            return _format_ts(value)
        if field == "pinned":
            return 1 if value is True else 0
        if field == "embedding":
            return _pack_embedding(list(value) if value else None)
        return value

    def close(self) -> None:
        """Close the current thread's database connection, if open."""
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        """Convert a database row into a :class:`Document`."""
        return Document(
            row["id"],
            {
                "fact": row["fact"],
                "tags": _loads(row["tags_json"]),
                "pinned": bool(row["pinned"]),
                "relatedTo": _loads(row["related_json"]),
                "expiresAt": row["expires_at"],
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
                "embedding": _unpack_embedding(row["embedding_blob"]),
            },
        )

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def __enter__(self) -> SQLiteDocumentStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def __repr__(self) -> str:  # pragma: no cover
        return f"SQLiteDocumentStore(path={self._path!r}, namespace={self.namespace!r})"
