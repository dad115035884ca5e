"""Database initialisation and migration helpers.

``init_db(conn)`` is idempotent: safe to call on an existing database.
``migrate(conn)`` brings it up to date with the schema-version table.
"""

from __future__ import annotations

import logging
import sqlite3

from canopy.config import settings

logger = logging.getLogger(__name__)

# Version the base schema file creates
SCHEMA_VERSION = 1

# Incremental changes on top of the base schema, as (version, sql).
MIGRATIONS: list[tuple[int, str]] = [
    # (2, "ALTER TABLE workspaces ADD COLUMN color TEXT;"),
]


def _read_schema() -> str:
    return settings.schema_path.read_text(encoding="utf-8")


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes, then apply pending migrations.

    Args:
        conn: An open, configured SQLite connection.
    """
    # executescript() issues an implicit COMMIT first, which is fine for a
    # DDL-only script.
    conn.executescript(_read_schema())
    _ensure_version_table(conn)
    migrate(conn)


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the internal schema-version tracking table if absent."""
    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version  INTEGER PRIMARY KEY,
                applied_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER))
            )
            """
        )


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied schema version (0 if none applied)."""
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) FROM schema_version"
    ).fetchone()
    return row[0] if row else 0


def migrate(conn: sqlite3.Connection) -> None:
    """Record the base schema on a fresh database, then run pending migrations.

    Migrations are applied in version order, each in its own transaction
    together with its ``schema_version`` row.
    """
    applied = current_version(conn)
    if applied == 0:
        with conn:
            conn.execute("INSERT INTO schema_version(version) VALUES (?)", (SCHEMA_VERSION,))
        applied = SCHEMA_VERSION

    for version, sql in sorted(MIGRATIONS):
        if version > applied:
            with conn:
                conn.execute(sql)
                conn.execute("INSERT INTO schema_version(version) VALUES (?)", (version,))
            logger.info("Applied schema migration %d", version)
            applied = version
