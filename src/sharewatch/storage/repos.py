"""Repository classes for async CRUD operations on SQLite."""

from __future__ import annotations

import json
import time

import aiosqlite
import yaml

from sharewatch.policy.loader import dump_rule, parse_rule
from sharewatch.policy.models import Rule
from sharewatch.session.models import GeoLocation, Session, SessionState, Violation

_SESSION_COLUMNS = (
    "id",
    "server_id",
    "session_key",
    "server_user_id",
    "rating_key",
    "live_uuid",
    "state",
    "progress_ms",
    "total_duration_ms",
    "is_transcode",
    "ip_address",
    "device_id",
    "player_name",
    "platform",
    "device",
    "product",
    "media_type",
    "media_title",
    "geo_lat",
    "geo_lon",
    "geo_city",
    "geo_country",
    "geo_private",
    "started_at",
    "last_seen_at",
    "stopped_at",
    "last_paused_at",
    "paused_duration_ms",
    "watched",
)


def _session_row(session: Session) -> tuple:
    geo = session.geo or GeoLocation()
    return (
        session.id,
        session.server_id,
        session.session_key,
        session.server_user_id,
        session.rating_key,
        session.live_uuid,
        session.state.value,
        session.progress_ms,
        session.total_duration_ms,
        int(session.is_transcode),
        session.ip_address,
        session.device_id,
        session.player_name,
        session.platform,
        session.device,
        session.product,
        session.media_type,
        session.media_title,
        geo.lat,
        geo.lon,
        geo.city,
        geo.country,
        int(geo.is_private),
        session.started_at,
        session.last_seen_at,
        session.stopped_at,
        session.last_paused_at,
        session.paused_duration_ms,
        int(session.watched),
    )


def session_from_row(row: dict) -> Session:
    geo = None
    if row["geo_country"] or row["geo_lat"] is not None or row["geo_private"]:
        geo = GeoLocation(
            lat=row["geo_lat"],
            lon=row["geo_lon"],
            city=row["geo_city"],
            country=row["geo_country"],
            is_private=bool(row["geo_private"]),
        )
    return Session(
        id=row["id"],
        server_id=row["server_id"],
        session_key=row["session_key"],
        server_user_id=row["server_user_id"],
        rating_key=row["rating_key"],
        live_uuid=row["live_uuid"],
        state=SessionState(row["state"]),
        progress_ms=row["progress_ms"],
        total_duration_ms=row["total_duration_ms"],
        is_transcode=bool(row["is_transcode"]),
        ip_address=row["ip_address"],
        device_id=row["device_id"],
        player_name=row["player_name"],
        platform=row["platform"],
        device=row["device"],
        product=row["product"],
        media_type=row["media_type"],
        media_title=row["media_title"],
        geo=geo,
        started_at=row["started_at"],
        last_seen_at=row["last_seen_at"],
        stopped_at=row["stopped_at"],
        last_paused_at=row["last_paused_at"],
        paused_duration_ms=row["paused_duration_ms"],
        watched=bool(row["watched"]),
    )


class SessionRepo:
    """Create/update/close persistence for tracked sessions."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def upsert(self, session: Session) -> None:
        placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in _SESSION_COLUMNS if c != "id"
        )
        await self._db.execute(
            f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            _session_row(session),
        )
        await self._db.commit()

    async def get(self, session_id: str) -> Session | None:
        cursor = await self._db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return session_from_row(dict(row)) if row else None

    async def list_open(self, server_id: str) -> list[Session]:
        cursor = await self._db.execute(
            "SELECT * FROM sessions WHERE server_id = ? AND stopped_at IS NULL "
            "ORDER BY started_at",
            (server_id,),
        )
        return [session_from_row(dict(row)) async for row in cursor]

    async def list_by_user(
        self, server_user_id: str, since: float = 0.0, limit: int = 100
    ) -> list[Session]:
        cursor = await self._db.execute(
            "SELECT * FROM sessions WHERE server_user_id = ? AND started_at >= ? "
            "ORDER BY started_at DESC LIMIT ?",
            (server_user_id, since, limit),
        )
        return [session_from_row(dict(row)) async for row in cursor]


class ViolationRepo:
    """CRUD for violations. Implements the ViolationRecorder protocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def record(self, violation: Violation) -> bool:
        cursor = await self._db.execute(
            "INSERT OR IGNORE INTO violations "
            "(id, rule_id, rule_name, server_user_id, session_id, "
            "severity, data, created_at, acknowledged_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                violation.id,
                violation.rule_id,
                violation.rule_name,
                violation.server_user_id,
                violation.session_id,
                violation.severity,
                json.dumps(violation.data),
                violation.created_at,
                violation.acknowledged_at,
            ),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def acknowledge(self, violation_id: str, at: float | None = None) -> bool:
        cursor = await self._db.execute(
            "UPDATE violations SET acknowledged_at = ? "
            "WHERE id = ? AND acknowledged_at IS NULL",
            (at if at is not None else time.time(), violation_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def get(self, violation_id: str) -> dict | None:
        cursor = await self._db.execute(
            "SELECT * FROM violations WHERE id = ?", (violation_id,)
        )
        row = await cursor.fetchone()
        return _violation_dict(row) if row else None

    async def list_recent(self, limit: int = 50, offset: int = 0) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM violations ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_violation_dict(row) async for row in cursor]

    async def list_by_user(self, server_user_id: str, limit: int = 50) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM violations WHERE server_user_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (server_user_id, limit),
        )
        return [_violation_dict(row) async for row in cursor]


def _violation_dict(row: aiosqlite.Row) -> dict:
    data = dict(row)
    data["data"] = json.loads(data["data"])
    return data


class RuleRepo:
    """Stores rule definitions as YAML documents."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def save(self, rule: Rule) -> None:
        now = time.time()
        content = yaml.safe_dump(dump_rule(rule), sort_keys=False)
        await self._db.execute(
            "INSERT INTO rules (id, yaml_content, enabled, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET yaml_content = excluded.yaml_content, "
            "enabled = excluded.enabled, updated_at = excluded.updated_at",
            (rule.id, content, int(rule.enabled), now, now),
        )
        await self._db.commit()

    async def get(self, rule_id: str) -> Rule | None:
        cursor = await self._db.execute(
            "SELECT yaml_content FROM rules WHERE id = ?", (rule_id,)
        )
        row = await cursor.fetchone()
        return parse_rule(yaml.safe_load(row["yaml_content"])) if row else None

    async def list_enabled(self) -> list[Rule]:
        cursor = await self._db.execute(
            "SELECT yaml_content FROM rules WHERE enabled = 1 ORDER BY created_at"
        )
        return [parse_rule(yaml.safe_load(row["yaml_content"])) async for row in cursor]
