"""SQLite database connection management and schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    server_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    server_user_id TEXT NOT NULL,
    rating_key TEXT,
    live_uuid TEXT,
    state TEXT NOT NULL DEFAULT 'playing',
    progress_ms INTEGER NOT NULL DEFAULT 0,
    total_duration_ms INTEGER,
    is_transcode INTEGER NOT NULL DEFAULT 0,
    ip_address TEXT NOT NULL DEFAULT '',
    device_id TEXT,
    player_name TEXT,
    platform TEXT,
    device TEXT,
    product TEXT,
    media_type TEXT NOT NULL DEFAULT '',
    media_title TEXT NOT NULL DEFAULT '',
    geo_lat REAL,
    geo_lon REAL,
    geo_city TEXT,
    geo_country TEXT,
    geo_private INTEGER NOT NULL DEFAULT 0,
    started_at REAL NOT NULL,
    last_seen_at REAL NOT NULL,
    stopped_at REAL,
    last_paused_at REAL,
    paused_duration_ms INTEGER NOT NULL DEFAULT 0,
    watched INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS violations (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    rule_name TEXT NOT NULL DEFAULT '',
    server_user_id TEXT NOT NULL,
    session_id TEXT,
    severity TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    acknowledged_at REAL
);

CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,
    yaml_content TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_open
    ON sessions(server_id, session_key) WHERE stopped_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_sessions_user
    ON sessions(server_user_id, started_at);
CREATE INDEX IF NOT EXISTS idx_violations_user
    ON violations(server_user_id, created_at);
"""

# One open violation per (user, session, rule); acknowledged ones don't count.
VIOLATION_DEDUP_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_violations_unique_open
    ON violations(server_user_id, session_id, rule_id)
    WHERE acknowledged_at IS NULL AND session_id IS NOT NULL;
"""


async def get_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open (or create) the database and run migrations."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")

    await _migrate(db)
    return db


async def _migrate(db: aiosqlite.Connection) -> None:
    """Run schema migrations if needed."""
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )
    row = await cursor.fetchone()

    if row is None:
        await db.executescript(SCHEMA_SQL + VIOLATION_DEDUP_SQL)
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await db.commit()
        logger.info("Database initialized at schema version %d", SCHEMA_VERSION)
        return

    cursor = await db.execute("SELECT version FROM schema_version")
    row = await cursor.fetchone()
    current = row[0] if row else 0

    if current < SCHEMA_VERSION:
        logger.info(
            "Migrating database from version %d to %d",
            current,
            SCHEMA_VERSION,
        )
        if current < 2:
            # Drop duplicate open violations before the unique index goes in.
            await db.execute(
                "DELETE FROM violations WHERE acknowledged_at IS NULL "
                "AND session_id IS NOT NULL AND rowid NOT IN ("
                "SELECT MIN(rowid) FROM violations "
                "WHERE acknowledged_at IS NULL AND session_id IS NOT NULL "
                "GROUP BY server_user_id, session_id, rule_id)"
            )
            await db.executescript(VIOLATION_DEDUP_SQL)
        if current < 3:
            for column in ("device", "product"):
                await db.execute(f"ALTER TABLE sessions ADD COLUMN {column} TEXT")
        await db.execute(
            "UPDATE schema_version SET version = ?",
            (SCHEMA_VERSION,),
        )
        await db.commit()
