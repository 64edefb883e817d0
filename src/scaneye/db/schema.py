"""SQLite schema definitions for ScanEye.

ScanEye persists exactly one logical document: the runtime configuration
record, stored as one row per field so that a merge only rewrites the
fields it changes.
"""

from __future__ import annotations

# Current schema version -- increment when adding migrations
SCHEMA_VERSION = 1

_TABLE_NAMES: list[str] = [
    "runtime_config",
    "schema_version",
]


def get_all_table_names() -> list[str]:
    """Return the list of all table names managed by this schema."""
    return list(_TABLE_NAMES)


async def create_all_tables(db) -> None:
    """Apply the full V1 schema to the database.

    Convenience wrapper for tests and fresh databases. For production
    use, prefer ``apply_migrations()`` from the migrations module.
    """
    await db.executescript(SCHEMA_V1_SQL)
    await db.commit()


# ---------------------------------------------------------------------------
# SQL statements for schema version 1
# ---------------------------------------------------------------------------

SCHEMA_V1_SQL = """
-- Runtime configuration record: one row per field, value is JSON
CREATE TABLE IF NOT EXISTS runtime_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);
"""
