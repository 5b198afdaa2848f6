"""Schema setup for the local SQLite document store.

The schema version is kept in SQLite's ``PRAGMA user_version``.  There is
only one schema so far; databases stamped with a newer version are opened
without modification.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Timestamps are stored as fixed-width UTC ISO-8601 strings so that text
# ordering matches chronological ordering.
_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS memories (
        namespace      TEXT    NOT NULL,
        id             TEXT    NOT NULL,
        fact           TEXT    NOT NULL DEFAULT '',
        tags_json      TEXT    NOT NULL DEFAULT '[]',
        pinned         INTEGER NOT NULL DEFAULT 0,
        related_json   TEXT    NOT NULL DEFAULT '[]',
        expires_at     TEXT,
        created_at     TEXT,
        updated_at     TEXT,
        embedding_blob BLOB,
        PRIMARY KEY (namespace, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories (namespace, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_memories_expires_at ON memories (namespace, expires_at)",
)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the database's ``user_version`` (``0`` if never set)."""
    row = conn.execute("PRAGMA user_version").fetchone()
    return row[0] if row else 0


def ensure_schema(conn: sqlite3.Connection) -> int:
    """Create the schema if needed and return the database's version.

    Every statement is idempotent, so a database at an older or unset
    version is brought up to :data:`SCHEMA_VERSION` in place.
    """
    version = get_schema_version(conn)
    if version > SCHEMA_VERSION:
        logger.warning(
            "Database schema version %d is newer than the library supports (%d); "
            "opening it unchanged",
            version,
            SCHEMA_VERSION,
        )
        return version
    if version == SCHEMA_VERSION:
        return version

    logger.debug("Creating memories schema (version %d -> %d)", version, SCHEMA_VERSION)
    for statement in _SCHEMA:
        conn.execute(statement)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()
    return SCHEMA_VERSION
