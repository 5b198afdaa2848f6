"""Memory data model for OmniBrain.

Defines the :class:`Memory` dataclass, the single decoder that turns raw
document-store data into one, and the small result types returned by the
engine.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

# Version stamped into export blobs.
EXPORT_FORMAT_VERSION = "2.2.0"


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def normalize_tags(tags: Iterable[Any] | None) -> list[str]:
    """Lowercase and strip *tags*, dropping empty and non-string entries.

    Duplicates are kept.
    """
    if not tags:
        return []
    result: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        cleaned = tag.strip().lower()
        if cleaned:
            result.append(cleaned)
    return result


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a stored timestamp to an aware UTC datetime.

    Accepts :class:`datetime` instances (including Firestore's
    ``DatetimeWithNanoseconds``) and ISO-8601 strings.  Anything else,
    including unparseable strings, yields ``None``.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_embedding(value: Any) -> list[float] | None:
    if value is None or isinstance(value, (str, bytes)):
        return None
    try:
        vector = [float(x) for x in value]
    except (TypeError, ValueError):
        return None
    return vector or None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [v for v in value if isinstance(v, str)]


@dataclass
class Memory:
    """A single fact stored in OmniBrain.

    Attributes:
        id: Identifier assigned by the document store.
        fact: The text of the memory.
        tags: Lowercase tags.
        pinned: Pinned memories are listed before unpinned ones.
        related_to: IDs of linked memories.  Links are symmetric.
        expires_at: When the memory stops being visible, or ``None`` if it
            never expires.
        created_at: Creation time as recorded by the store.
        updated_at: Time of the most recent write.
        embedding: Vector embedding of :attr:`fact`, if one was computed.
    """

    id: str
    fact: str = ""
    tags: list[str] = field(default_factory=list)
    pinned: bool = False
    related_to: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    embedding: list[float] | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return ``True`` if the memory's expiry time has passed."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _utcnow())

    def copy(self) -> Memory:
        """Return a copy whose lists can be changed without affecting this one."""
        return replace(
            self,
            tags=list(self.tags),
            related_to=list(self.related_to),
            embedding=list(self.embedding) if self.embedding is not None else None,
        )

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any] | None) -> Memory:
        """Decode raw document data, applying a default for every bad field.

        Stored data is never trusted to have the right shape: a missing
        fact becomes ``""``, non-list ``tags``/``relatedTo`` become empty
        lists, a non-boolean ``pinned`` becomes ``False`` and unreadable
        timestamps become ``None``.

        Args:
            doc_id: The document identifier.
            data: Field mapping as returned by the store (camelCase keys).

        Returns:
            A new :class:`Memory`.
        """
        data = data or {}
        fact = data.get("fact")
        return cls(
            id=doc_id,
            fact=fact if isinstance(fact, str) else "",
            tags=_string_list(data.get("tags")),
            pinned=data.get("pinned") is True,
            related_to=_string_list(data.get("relatedTo")),
            expires_at=parse_timestamp(data.get("expiresAt")),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            embedding=_parse_embedding(data.get("embedding")),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Memory:
        """Reconstruct a Memory from the output of :meth:`to_dict`."""
        return cls.from_document(str(data.get("id") or ""), data)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the export format.

        Keys are camelCase and timestamps ISO-8601 strings.  The embedding
        is not included.
        """
        return {
            "id": self.id,
            "fact": self.fact,
            "tags": list(self.tags),
            "pinned": self.pinned,
            "relatedTo": list(self.related_to),
            "expiresAt": _isoformat(self.expires_at),
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        preview = self.fact[:60] + ("..." if len(self.fact) > 60 else "")
        return f"Memory(id={self.id!r}, fact={preview!r}, tags={self.tags!r}, pinned={self.pinned})"


@dataclass
class ScoredMemory:
    """A memory paired with its relevance to a query."""

    memory: Memory
    relevance: float

    def to_dict(self) -> dict[str, Any]:
        data = self.memory.to_dict()
        data["relevance"] = self.relevance
        return data


@dataclass
class BulkResult:
    """Outcome of a bulk or import operation.

    Individual failures are reported in :attr:`errors` rather than raised.
    """

    succeeded: int = 0
    failed: int = 0
    ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_lists(cls, ids: list[str], errors: list[str]) -> BulkResult:
        return cls(succeeded=len(ids), failed=len(errors), ids=ids, errors=errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "ids": list(self.ids),
            "errors": list(self.errors),
        }


@dataclass
class MemoryStats:
    """Aggregate statistics for one namespace."""

    total_count: int = 0
    oldest_timestamp: datetime | None = None
    newest_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCount": self.total_count,
            "oldestTimestamp": _isoformat(self.oldest_timestamp),
            "newestTimestamp": _isoformat(self.newest_timestamp),
        }
