"""Shared fixtures for the OmniBrain test suite.

Every test runs against a real SQLite document store in ``tmp_path``.  The
store records its commits and can be told to fail with a backend error code,
which lets retry and batching behaviour be observed without a network.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from omnibrain.core import MemoryEngine
from omnibrain.embeddings import EmbeddingProvider, EmbeddingService
from omnibrain.errors import UNAVAILABLE, BackendError
from omnibrain.store import SERVER_TIMESTAMP, SQLiteDocumentStore, WriteBatch

VOCABULARY = ("cat", "dog", "coffee", "tea", "python")


class RecordingStore(SQLiteDocumentStore):
    """SQLite store that records commits and can inject backend failures."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.commits: list[int] = []
        self._failures: dict[str, list[str]] = {}

    def fail(self, method: str, times: int = 1, code: str = UNAVAILABLE) -> None:
        self._failures.setdefault(method, []).extend([code] * times)

    def _maybe_fail(self, method: str) -> None:
        queue = self._failures.get(method)
        if queue:
            raise BackendError(queue.pop(0), "injected failure")

    def get(self, doc_id):
        self._maybe_fail("get")
        return super().get(doc_id)

    def fetch_all(self):
        self._maybe_fail("fetch_all")
        return super().fetch_all()

    def commit(self, batch):
        self._maybe_fail("commit")
        self.commits.append(len(batch))
        super().commit(batch)


class KeywordEmbedding(EmbeddingProvider):
    """Deterministic provider: one dimension per vocabulary word."""

    dimension = len(VOCABULARY)

    def __init__(self):
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return "Keyword (test)"

    def embed(self, text: str) -> list[float]:
        self.calls.append([text])
        return [1.0 if word in text.lower() else 0.0 for word in VOCABULARY]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [[1.0 if w in t.lower() else 0.0 for w in VOCABULARY] for t in texts]


class BrokenEmbedding(EmbeddingProvider):
    """Provider whose API is always down."""

    dimension = 3

    @property
    def name(self) -> str:
        return "Broken (test)"

    def embed(self, text: str) -> list[float]:
        raise ConnectionError("embedding API unreachable")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def utc(offset_hours: float = 0.0) -> datetime:
    """Return the current UTC time shifted by *offset_hours*."""
    return datetime.now(timezone.utc) + timedelta(hours=offset_hours)


def seed(
    store,
    fact: str,
    *,
    created: datetime | None = None,
    expires: datetime | None = None,
    pinned: bool = False,
    tags=(),
    related=(),
) -> str:
    """Write a document straight to *store*, bypassing the engine."""
    doc_id = store.new_id()
    batch = WriteBatch()
    batch.set(
        doc_id,
        {
            "fact": fact,
            "tags": list(tags),
            "pinned": pinned,
            "relatedTo": list(related),
            "expiresAt": expires,
            "createdAt": created or SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        },
    )
    store.commit(batch)
    return doc_id


@pytest.fixture()
def store(tmp_path):
    """A recording SQLite store for the namespace ``alice``."""
    s = RecordingStore(tmp_path / "memories.db", namespace="alice")
    yield s
    s.close()


@pytest.fixture()
def sleeps():
    """Delays requested by the retry executor."""
    return []


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def engine(store, sleeps, clock):
    """An engine without embeddings."""
    return MemoryEngine(store, sleep=sleeps.append, clock=clock)


@pytest.fixture()
def keyword_provider():
    return KeywordEmbedding()


@pytest.fixture()
def semantic_engine(store, sleeps, clock, keyword_provider):
    """An engine with the deterministic keyword embedding provider."""
    return MemoryEngine(
        store, embeddings=EmbeddingService(keyword_provider), sleep=sleeps.append, clock=clock
    )
