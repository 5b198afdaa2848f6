"""Whole-collection read cache for the memory engine."""

from __future__ import annotations

import time
from collections.abc import Callable

from .memory import Memory

DEFAULT_TTL = 5 * 60  # seconds


class MemoryCache:
    """A time-boxed snapshot of every memory in one namespace.

    The cache holds either a complete snapshot or nothing.  There is no
    partial update path: writers call :meth:`invalidate` and the next
    reader re-fetches the whole collection.

    Args:
        ttl: Maximum snapshot age in seconds.
        clock: Monotonic clock used to age the snapshot.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._snapshot: list[Memory] | None = None
        self._stored_at = 0.0

    def get(self) -> list[Memory] | None:
        """Return the snapshot if it is younger than the TTL, else ``None``."""
        if self._snapshot is None:
            return None
        if self._clock() - self._stored_at >= self.ttl:
            return None
        return self._snapshot

    def put(self, memories: list[Memory]) -> None:
        """Replace the snapshot and restart its TTL window."""
        self._snapshot = memories
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        """Drop the snapshot so the next read goes to the store."""
        self._snapshot = None
        self._stored_at = 0.0

    def __repr__(self) -> str:  # pragma: no cover
        state = "empty" if self._snapshot is None else f"{len(self._snapshot)} memories"
        return f"MemoryCache(ttl={self.ttl!r}, {state})"
