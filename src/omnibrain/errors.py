"""Exception types raised by OmniBrain.

Bulk and import operations never raise for individual item failures; they
return a :class:`~omnibrain.memory.BulkResult` instead.  The exceptions here
cover the cases that do propagate to the caller.
"""

from __future__ import annotations

# Classification codes for transient backend failures.  Backends translate
# their native errors into these names (they match the gRPC status names).
UNAVAILABLE = "UNAVAILABLE"
DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"

RETRYABLE_CODES: frozenset[str] = frozenset({UNAVAILABLE, DEADLINE_EXCEEDED})


class OmniBrainError(Exception):
    """Base class for all OmniBrain errors."""


class MemoryNotFoundError(OmniBrainError, LookupError):
    """Raised when an operation targets a memory that does not exist.

    Args:
        memory_id: The identifier that could not be resolved.
    """

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory {memory_id} not found.")
        self.memory_id = memory_id


class BackendError(OmniBrainError):
    """A failure reported by the document store.

    Args:
        code: Classification code, e.g. ``"UNAVAILABLE"``.
        message: Human-readable description.
    """

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code

    @property
    def retryable(self) -> bool:
        """Whether the retry executor should try the call again."""
        return self.code in RETRYABLE_CODES


class ConfigError(OmniBrainError, ValueError):
    """Raised when required configuration is missing or invalid."""


def error_code(exc: BaseException) -> str | None:
    """Return the classification code of *exc*, or ``None`` if it has none."""
    if isinstance(exc, BackendError):
        return exc.code
    return None
