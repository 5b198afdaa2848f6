"""Core OmniBrain engine -- the main entry point for the library.

Ties together a document store, the read cache, the retry executor, lexical
relevance scoring and an optional embedding service into the full set of
memory operations: CRUD, pinning, search, bulk writes, links, export/import
and TTL cleanup.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from .cache import DEFAULT_TTL, MemoryCache
from .config import Config
from .embeddings import EmbeddingService, create_embedding_service
from .errors import MemoryNotFoundError
from .memory import (
    EXPORT_FORMAT_VERSION,
    BulkResult,
    Memory,
    MemoryStats,
    ScoredMemory,
    normalize_tags,
)
from .relevance import MATCH_THRESHOLD, rank, score, tag_boost
from .retry import with_retry
from .store import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, Document, DocumentStore, WriteBatch

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50
MAX_BULK_ITEMS = 20
IMPORT_CHUNK_SIZE = 20
# Backend limit on values in an "array contains any" query.
MAX_QUERY_TAGS = 30
MIN_SEMANTIC_SIMILARITY = 0.3

IMPORT_MODES = ("merge", "replace")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _expiry(ttl_hours: float | None) -> datetime | None:
    """Return the expiry time for a TTL in hours, or ``None`` for no TTL."""
    if ttl_hours is None or ttl_hours <= 0:
        return None
    return _utcnow() + timedelta(hours=ttl_hours)


def _created_key(memory: Memory) -> float:
    return memory.created_at.timestamp() if memory.created_at else 0.0


def _decode(doc: Document) -> Memory:
    return Memory.from_document(doc.id, doc.data)


class MemoryEngine:
    """A cache-accelerated, relevance-ranked fact store.

    Quick start::

        from omnibrain import MemoryEngine, SQLiteDocumentStore

        engine = MemoryEngine(SQLiteDocumentStore("memories.db", namespace="alice"))
        memory_id = engine.add("Alice prefers dark mode", tags=["preferences"])
        results = engine.smart_search("dark mode")

    Every call to the store goes through the retry executor.  Listing,
    search and export read a whole-collection snapshot from the cache;
    every write invalidates it.

    Args:
        store: Backend holding the namespace's documents.
        embeddings: Embedding service used to vectorise facts, or ``None``
            to disable semantic search.
        cache_ttl: Maximum age of the cached snapshot, in seconds.
        sleep: Wait function used between retries.
        clock: Monotonic clock used by the cache.
    """

    def __init__(
        self,
        store: DocumentStore,
        embeddings: EmbeddingService | None = None,
        cache_ttl: float = DEFAULT_TTL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._cache = MemoryCache(ttl=cache_ttl, clock=clock)
        self._sleep = sleep
        logger.info(
            "Memory engine initialised  namespace=%s  store=%r  embeddings=%r",
            store.namespace,
            store,
            embeddings,
        )

    @property
    def namespace(self) -> str:
        return self._store.namespace

    @property
    def has_embeddings(self) -> bool:
        """Whether semantic search is available."""
        return self._embeddings is not None

    @property
    def cache(self) -> MemoryCache:
        return self._cache

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add(
        self,
        fact: str,
        tags: Iterable[str] | None = None,
        pinned: bool = False,
        ttl_hours: float | None = None,
    ) -> str:
        """Store a new memory.

        Args:
            fact: The text to remember.
            tags: Optional tags; stored lowercased, blanks dropped.
            pinned: Whether the memory is listed before unpinned ones.
            ttl_hours: If positive, the memory expires after this many hours.

        Returns:
            The identifier assigned by the store.
        """
        data: dict[str, Any] = {
            "fact": fact,
            "tags": normalize_tags(tags),
            "pinned": bool(pinned),
            "relatedTo": [],
            "expiresAt": _expiry(ttl_hours),
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        vector = self._safe_embed(fact, "add")
        if vector:
            data["embedding"] = vector

        memory_id = self._retry("add", lambda: self._store.create(data))
        self._cache.invalidate()
        logger.debug("Added memory %s (%d chars)", memory_id, len(fact))
        return memory_id

    def get_by_id(self, memory_id: str) -> Memory | None:
        """Return the memory, or ``None`` if it is absent or expired."""
        doc = self._retry("get_by_id", lambda: self._store.get(memory_id))
        if doc is None:
            return None
        memory = _decode(doc)
        if memory.is_expired():
            return None
        return memory

    def get_all(
        self, limit: int | None = DEFAULT_PAGE_SIZE, offset: int | None = 0
    ) -> list[Memory]:
        """List live memories, pinned first, then newest first.

        Args:
            limit: Page size, clamped to ``[1, 200]``.  Defaults to 50.
            offset: Number of memories to skip.

        Returns:
            One page of :class:`Memory` objects.
        """
        limit = min(max(DEFAULT_PAGE_SIZE if limit is None else limit, 1), MAX_PAGE_SIZE)
        offset = max(offset or 0, 0)

        live = self._live_memories()
        live.sort(key=_created_key, reverse=True)
        # Stable, so recency order is kept within each group.
        live.sort(key=lambda m: not m.pinned)
        return live[offset : offset + limit]

    def update(
        self,
        memory_id: str,
        fact: str | None = None,
        tags: Iterable[str] | None = None,
        pinned: bool | None = None,
    ) -> Memory:
        """Change the fact, tags and/or pinned flag of a memory.

        A changed fact is re-embedded when an embedding service is
        configured.

        Returns:
            The memory as stored after the update.

        Raises:
            MemoryNotFoundError: If *memory_id* does not exist.
        """
        if self._retry("update", lambda: self._store.get(memory_id)) is None:
            raise MemoryNotFoundError(memory_id)

        data: dict[str, Any] = {"updatedAt": SERVER_TIMESTAMP}
        if fact is not None:
            data["fact"] = fact
            vector = self._safe_embed(fact, "update")
            if vector:
                data["embedding"] = vector
        if tags is not None:
            data["tags"] = normalize_tags(tags)
        if pinned is not None:
            data["pinned"] = bool(pinned)

        self._retry("update", lambda: self._store.update(memory_id, data))
        self._cache.invalidate()
        logger.debug("Updated memory %s (fields=%s)", memory_id, sorted(data))
        return self._fetch_existing("update", memory_id)

    def delete(self, memory_id: str) -> bool:
        """Delete a memory.

        Returns:
            ``True`` if it existed, ``False`` otherwise.
        """

        def op() -> bool:
            if self._store.get(memory_id) is None:
                return False
            self._store.delete(memory_id)
            return True

        deleted = self._retry("delete", op)
        self._cache.invalidate()
        if deleted:
            logger.debug("Deleted memory %s", memory_id)
        return deleted

    def toggle_pin(self, memory_id: str) -> Memory:
        """Flip a memory's pinned flag and return the updated memory.

        Raises:
            MemoryNotFoundError: If *memory_id* does not exist.
        """

        def op() -> None:
            doc = self._store.get(memory_id)
            if doc is None:
                raise MemoryNotFoundError(memory_id)
            pinned = doc.data.get("pinned") is True
            self._store.update(memory_id, {"pinned": not pinned, "updatedAt": SERVER_TIMESTAMP})

        self._retry("toggle_pin", op)
        self._cache.invalidate()
        return self._fetch_existing("toggle_pin", memory_id)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str) -> list[Memory]:
        """Case-insensitive substring search over live facts."""
        needle = query.lower()
        return [m for m in self._live_memories() if needle in m.fact.lower()]

    def smart_search(self, query: str) -> list[ScoredMemory]:
        """Rank live memories by lexical relevance to *query*.

        Memories scoring below :data:`~omnibrain.relevance.MATCH_THRESHOLD`
        are dropped, tag matches get a boost, and the rest are sorted by
        descending relevance (ties keep their order).  A blank query
        matches nothing.
        """
        if not query.strip():
            return []

        scored: list[tuple[float, Memory]] = []
        for memory in self._live_memories():
            relevance = score(memory.fact, query, memory.tags)
            if relevance >= MATCH_THRESHOLD:
                scored.append((round(relevance, 2), memory))

        boosted = [(round(tag_boost(r, query, m.tags), 2), m) for r, m in scored]
        return [ScoredMemory(m, r) for r, m in rank(boosted)]

    def search_by_tags(self, tags: Sequence[str]) -> list[Memory]:
        """Return live memories carrying any of *tags*.

        Only the first 30 tags are used; the backend rejects more.
        """
        wanted = normalize_tags(list(tags)[:MAX_QUERY_TAGS])
        if not wanted:
            return []
        docs = self._retry("search_by_tags", lambda: self._store.query_tags_any(wanted))
        return [m for m in map(_decode, docs) if not m.is_expired()]

    def semantic_search(
        self, query_vector: Sequence[float], limit: int = 10
    ) -> list[ScoredMemory]:
        """Nearest-neighbour search by cosine distance.

        Distances are converted to similarities (``1 - distance``) and only
        matches above 0.3 are kept.

        Args:
            query_vector: Embedding of the query.
            limit: Maximum number of neighbours to fetch.
        """
        vector = list(query_vector)
        if not vector:
            return []
        pairs = self._retry("semantic_search", lambda: self._store.find_nearest(vector, limit))

        results: list[ScoredMemory] = []
        for doc, distance in pairs:
            memory = _decode(doc)
            if memory.is_expired():
                continue
            similarity = round(1.0 - distance, 2)
            if similarity > MIN_SEMANTIC_SIMILARITY:
                results.append(ScoredMemory(memory, similarity))
        return results

    def recall(self, query: str, limit: int = 10) -> list[ScoredMemory]:
        """Semantic search for *query*, or smart search without embeddings.

        The query is embedded with the configured service.  When no service
        is configured, or it returns an empty vector, the lexical
        :meth:`smart_search` ranking is used instead.
        """
        if not query.strip():
            return []
        if self._embeddings is not None:
            vector = self._embeddings.embed(query)
            if vector:
                return self.semantic_search(vector, limit)
            logger.warning("Empty query embedding, falling back to smart search")
        return self.smart_search(query)[:limit]

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def add_bulk(self, items: Iterable[Mapping[str, Any]]) -> BulkResult:
        """Add up to 20 memories in one batch; extra items are ignored.

        Each item is a mapping with ``fact`` and optional ``tags``,
        ``pinned`` and ``ttl_hours``.  An item without a fact, or with
        unusable tags or TTL, is reported in the result's errors instead of
        failing the batch.
        """
        clamped = list(items)[:MAX_BULK_ITEMS]
        ids: list[str] = []
        errors: list[str] = []
        if not clamped:
            return BulkResult.from_lists(ids, errors)

        prepared: list[dict[str, Any]] = []
        for index, item in enumerate(clamped):
            fact = item.get("fact") if isinstance(item, Mapping) else None
            if not isinstance(fact, str) or not fact.strip():
                errors.append(f"index {index}: missing fact")
                continue
            try:
                prepared.append(
                    {
                        "fact": fact,
                        "tags": normalize_tags(item.get("tags")),
                        "pinned": item.get("pinned") is True,
                        "relatedTo": [],
                        "expiresAt": _expiry(item.get("ttl_hours")),
                        "createdAt": SERVER_TIMESTAMP,
                        "updatedAt": SERVER_TIMESTAMP,
                    }
                )
            except (TypeError, ValueError) as exc:
                errors.append(f"index {index}: {exc}")

        vectors = self._safe_embed_batch([data["fact"] for data in prepared], "add_bulk")
        batch = WriteBatch()
        for position, data in enumerate(prepared):
            if position < len(vectors) and vectors[position]:
                data["embedding"] = vectors[position]
            doc_id = self._store.new_id()
            batch.set(doc_id, data)
            ids.append(doc_id)

        if len(batch):
            self._retry("add_bulk", lambda: self._store.commit(batch))
        self._cache.invalidate()
        logger.info("Bulk added %d memories (%d failed)", len(ids), len(errors))
        return BulkResult.from_lists(ids, errors)

    def delete_bulk(self, memory_ids: Iterable[str]) -> BulkResult:
        """Delete up to 20 memories in one batch; extra ids are ignored.

        Duplicate ids are collapsed.  Each id is checked individually;
        missing ones are reported as ``"<id>: not found"``.
        """
        clamped = list(dict.fromkeys(memory_ids))[:MAX_BULK_ITEMS]
        ids: list[str] = []
        errors: list[str] = []
        batch = WriteBatch()
        for memory_id in clamped:
            if self._retry("delete_bulk", lambda mid=memory_id: self._store.get(mid)) is None:
                errors.append(f"{memory_id}: not found")
                continue
            batch.delete(memory_id)
            ids.append(memory_id)

        if ids:
            self._retry("delete_bulk", lambda: self._store.commit(batch))
        self._cache.invalidate()
        logger.info("Bulk deleted %d memories (%d not found)", len(ids), len(errors))
        return BulkResult.from_lists(ids, errors)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def link(self, first_id: str, second_id: str) -> None:
        """Link two memories in both directions.

        Raises:
            MemoryNotFoundError: If either memory does not exist.
        """

        def op() -> None:
            for memory_id in (first_id, second_id):
                if self._store.get(memory_id) is None:
                    raise MemoryNotFoundError(memory_id)
            batch = WriteBatch()
            batch.update(
                first_id, {"relatedTo": ArrayUnion([second_id]), "updatedAt": SERVER_TIMESTAMP}
            )
            batch.update(
                second_id, {"relatedTo": ArrayUnion([first_id]), "updatedAt": SERVER_TIMESTAMP}
            )
            self._store.commit(batch)

        self._retry("link", op)
        self._cache.invalidate()
        logger.debug("Linked memories %s <-> %s", first_id, second_id)

    def unlink(self, first_id: str, second_id: str) -> None:
        """Remove the link between two memories in both directions.

        Unlike :meth:`link` this does not check that the memories exist;
        the update is simply skipped for a missing side.
        """
        batch = WriteBatch()
        batch.update(
            first_id,
            {"relatedTo": ArrayRemove([second_id]), "updatedAt": SERVER_TIMESTAMP},
            missing_ok=True,
        )
        batch.update(
            second_id,
            {"relatedTo": ArrayRemove([first_id]), "updatedAt": SERVER_TIMESTAMP},
            missing_ok=True,
        )
        self._retry("unlink", lambda: self._store.commit(batch))
        self._cache.invalidate()
        logger.debug("Unlinked memories %s <-> %s", first_id, second_id)

    def get_related(self, memory_id: str) -> list[Memory]:
        """Return the live memories linked to *memory_id*.

        Linked ids that no longer exist or have expired are skipped.

        Raises:
            MemoryNotFoundError: If *memory_id* itself does not exist.
        """
        doc = self._retry("get_related", lambda: self._store.get(memory_id))
        if doc is None:
            raise MemoryNotFoundError(memory_id)
        related_ids = _decode(doc).related_to
        if not related_ids:
            return []

        docs = self._retry("get_related", lambda: self._store.get_many(related_ids))
        results: list[Memory] = []
        for related_id in related_ids:
            related = docs.get(related_id)
            if related is None:
                continue
            memory = _decode(related)
            if not memory.is_expired():
                results.append(memory)
        return results

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_all(self) -> dict[str, Any]:
        """Export every stored memory, newest first, as a JSON-safe dict."""
        memories = sorted(self._cached_memories(), key=_created_key, reverse=True)
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exportedAt": _utcnow().isoformat(),
            "userId": self.namespace,
            "count": len(memories),
            "memories": [m.to_dict() for m in memories],
        }

    def import_all(self, data: Mapping[str, Any], mode: str = "merge") -> BulkResult:
        """Import an export blob.

        In ``"merge"`` mode ids that already exist are skipped and reported
        as ``"<id>: already exists (skipped)"``.  In ``"replace"`` mode every
        existing memory is deleted first, in its own batch.

        Memories are written in chunks of 20, one batch per chunk.  Chunks
        are not atomic with each other: if a commit fails, earlier chunks
        stay written and the error propagates.

        Args:
            data: An object shaped like :meth:`export_all` output.
            mode: ``"merge"`` or ``"replace"``.

        Raises:
            ValueError: If *mode* is not recognised.
        """
        if mode not in IMPORT_MODES:
            raise ValueError(f"Unknown import mode {mode!r}. Supported: {', '.join(IMPORT_MODES)}")

        entries = data.get("memories") if isinstance(data, Mapping) else None
        if not isinstance(entries, list):
            entries = []
        ids: list[str] = []
        errors: list[str] = []

        if mode == "replace":
            self._wipe()

        for start in range(0, len(entries), IMPORT_CHUNK_SIZE):
            chunk = entries[start : start + IMPORT_CHUNK_SIZE]
            self._import_chunk(chunk, start, mode, ids, errors)

        self._cache.invalidate()
        logger.info(
            "Imported %d memories (mode=%s, %d skipped)", len(ids), mode, len(errors)
        )
        return BulkResult.from_lists(ids, errors)

    def _wipe(self) -> None:
        existing = self._retry("import_all", self._store.fetch_all)
        if existing:
            batch = WriteBatch()
            for doc in existing:
                batch.delete(doc.id)
            self._retry("import_all", lambda: self._store.commit(batch))
        self._cache.invalidate()
        logger.info("Cleared %d existing memories for replace import", len(existing))

    def _import_chunk(
        self,
        chunk: list[Any],
        offset: int,
        mode: str,
        ids: list[str],
        errors: list[str],
    ) -> None:
        candidates: list[Memory] = []
        for index, entry in enumerate(chunk, start=offset):
            if not isinstance(entry, Mapping) or not isinstance(entry.get("fact"), str):
                errors.append(f"index {index}: missing fact")
                continue
            memory = Memory.from_dict(entry)
            if not memory.id:
                memory.id = self._store.new_id()
            candidates.append(memory)

        if mode == "merge" and candidates:
            existing = self._retry(
                "import_all", lambda: self._store.get_many([m.id for m in candidates])
            )
            to_write = []
            for memory in candidates:
                if memory.id in existing:
                    errors.append(f"{memory.id}: already exists (skipped)")
                else:
                    to_write.append(memory)
        else:
            to_write = candidates

        if not to_write:
            return

        vectors = self._safe_embed_batch([m.fact for m in to_write], "import_all")
        batch = WriteBatch()
        for position, memory in enumerate(to_write):
            doc: dict[str, Any] = {
                "fact": memory.fact,
                "tags": normalize_tags(memory.tags),
                "pinned": memory.pinned,
                "relatedTo": list(memory.related_to),
                "expiresAt": memory.expires_at,
                "createdAt": memory.created_at or SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }
            if position < len(vectors) and vectors[position]:
                doc["embedding"] = vectors[position]
            batch.set(memory.id, doc)

        self._retry("import_all", lambda: self._store.commit(batch))
        self._cache.invalidate()
        ids.extend(m.id for m in to_write)

    # ------------------------------------------------------------------
    # Stats and cleanup
    # ------------------------------------------------------------------

    def get_stats(self) -> MemoryStats:
        """Return the stored count and the oldest/newest creation times."""
        total = self._retry("get_stats", self._store.count)
        if total == 0:
            return MemoryStats()
        oldest = self._retry("get_stats", lambda: self._store.created_at_bound(ascending=True))
        newest = self._retry("get_stats", lambda: self._store.created_at_bound(ascending=False))
        return MemoryStats(total_count=total, oldest_timestamp=oldest, newest_timestamp=newest)

    def cleanup_expired(self) -> int:
        """Delete every expired memory and return how many were removed."""
        now = _utcnow()
        expired = self._retry("cleanup_expired", lambda: self._store.find_expired(now))
        self._cache.invalidate()
        if not expired:
            return 0

        batch = WriteBatch()
        for memory_id in expired:
            batch.delete(memory_id)
        self._retry("cleanup_expired", lambda: self._store.commit(batch))
        self._cache.invalidate()
        logger.info("Cleaned up %d expired memories", len(expired))
        return len(expired)

    def close(self) -> None:
        """Close the underlying store."""
        self._store.close()

    def __enter__(self) -> MemoryEngine:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _retry(self, label: str, fn: Callable[[], T]) -> T:
        return with_retry(label, fn, sleep=self._sleep)

    def _cached_memories(self) -> list[Memory]:
        """Return the cached snapshot, re-fetching it when stale."""
        snapshot = self._cache.get()
        if snapshot is None:
            docs = self._retry("fetch_all", self._store.fetch_all)
            snapshot = [_decode(doc) for doc in docs]
            self._cache.put(snapshot)
        return snapshot

    def _live_memories(self) -> list[Memory]:
        """Return copies of the unexpired memories in the snapshot."""
        now = _utcnow()
        return [m.copy() for m in self._cached_memories() if not m.is_expired(now)]

    def _fetch_existing(self, label: str, memory_id: str) -> Memory:
        doc = self._retry(label, lambda: self._store.get(memory_id))
        if doc is None:
            raise MemoryNotFoundError(memory_id)
        return _decode(doc)

    def _safe_embed(self, text: str, label: str) -> list[float] | None:
        """Embed *text*, returning ``None`` on failure or without a service."""
        if self._embeddings is None:
            return None
        try:
            return self._embeddings.embed(text) or None
        except Exception:
            logger.warning(
                "Embedding failed for %s, storing without a vector", label, exc_info=True
            )
            return None

    def _safe_embed_batch(self, texts: list[str], label: str) -> list[list[float]]:
        """Embed *texts* in one call, returning ``[]`` on failure."""
        if self._embeddings is None or not texts:
            return []
        try:
            vectors = self._embeddings.embed_batch(texts)
        except Exception:
            logger.warning(
                "Batch embedding failed for %s, storing without vectors", label, exc_info=True
            )
            return []
        if len(vectors) != len(texts):
            logger.warning(
                "Batch embedding for %s returned %d vectors for %d texts; ignoring them",
                label,
                len(vectors),
                len(texts),
            )
            return []
        return vectors

    def __repr__(self) -> str:  # pragma: no cover
        return f"MemoryEngine(store={self._store!r}, embeddings={self._embeddings!r})"


def open_engine(config: Config, **kwargs: Any) -> MemoryEngine:
    """Build a :class:`MemoryEngine` from loaded configuration.

    Args:
        config: Configuration from :func:`omnibrain.config.load_config`.
        **kwargs: Forwarded to :class:`MemoryEngine`.
    """
    store: DocumentStore
    if config.backend == "sqlite":
        from .store import SQLiteDocumentStore

        store = SQLiteDocumentStore(config.sqlite_path, namespace=config.user_id)
    else:
        from .firestore_store import FirestoreDocumentStore

        store = FirestoreDocumentStore.from_service_account(
            config.credentials_path, config.user_id
        )
    return MemoryEngine(store, embeddings=create_embedding_service(config), **kwargs)
