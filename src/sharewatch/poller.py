"""Poll sources — normalise media server session payloads into snapshots.

Media servers report sessions with inconsistent typing (numbers as strings,
blank identifiers, vendor-specific states). Everything is normalised here so
the tracker can trust the snapshot fields.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from sharewatch.session.models import (
    PollSnapshot,
    Server,
    ServerUser,
    SessionState,
    server_user_key,
)

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"1", "true", "yes", "on", "transcode"}


class Poller(Protocol):
    """Source of poll cycles for one or more servers."""

    async def poll(self, server: Server) -> list[PollSnapshot]:
        """Return every session the server currently reports. Raises on failure."""
        ...


def _get(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any, default: int | None = 0) -> int | None:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_STRINGS


def _state(value: Any) -> SessionState:
    try:
        return SessionState(str(value).strip().lower())
    except ValueError:
        # buffering, unknown vendor states, missing: playback is in progress
        return SessionState.PLAYING


def snapshot_from_dict(server_id: str, data: dict[str, Any]) -> PollSnapshot:
    """Build a PollSnapshot from one raw session payload.

    Accepts snake_case keys and the camelCase names media servers use.
    Raises ValueError when the transport key or user identity is missing.
    """
    session_key = _text(_get(data, "session_key", "sessionKey"))
    if session_key is None:
        raise ValueError("Poll entry is missing 'session_key'")
    user_id = _text(_get(data, "user_id", "userId"))
    if user_id is None:
        raise ValueError(f"Poll entry {session_key} is missing 'user_id'")

    total = _int(_get(data, "total_duration_ms", "duration"), default=None)
    return PollSnapshot(
        server_id=server_id,
        session_key=session_key,
        user_id=user_id,
        state=_state(data.get("state")),
        rating_key=_text(_get(data, "rating_key", "ratingKey")),
        live_uuid=_text(_get(data, "live_uuid", "liveUuid")),
        progress_ms=_int(_get(data, "progress_ms", "viewOffset")) or 0,
        total_duration_ms=total or None,
        is_transcode=_bool(_get(data, "is_transcode", "isTranscode")),
        ip_address=_text(_get(data, "ip_address", "ipAddress")) or "",
        device_id=_text(_get(data, "device_id", "deviceId")),
        player_name=_text(_get(data, "player_name", "playerName")),
        platform=_text(data.get("platform")),
        device=_text(data.get("device")),
        product=_text(data.get("product")),
        media_type=_text(_get(data, "media_type", "mediaType")) or "episode",
        media_title=_text(_get(data, "media_title", "title")) or "",
        username=_text(data.get("username")) or "",
    )


def snapshots_from_payload(
    server_id: str, entries: list[dict[str, Any]]
) -> list[PollSnapshot]:
    """Normalise a whole poll response, skipping entries without identity."""
    snapshots: list[PollSnapshot] = []
    for entry in entries or ():
        if not isinstance(entry, dict):
            logger.warning("Skipping non-mapping poll entry from %s: %r", server_id, entry)
            continue
        try:
            snapshots.append(snapshot_from_dict(server_id, entry))
        except ValueError as exc:
            logger.warning("Skipping poll entry from %s: %s", server_id, exc)
    return snapshots


@dataclass
class ReplayCycle:
    """One recorded poll cycle."""

    at: float
    sessions: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    failed: frozenset[str] = frozenset()


class ReplayPoller:
    """Replays recorded poll cycles from a YAML file.

    Format::

        servers:
          - id: home
            name: Home Plex
        users:
          - id: u1
            username: alice
            server_id: home
        cycles:
          - at: 1700000000
            sessions:
              home:
                - {session_key: "1", user_id: u1, rating_key: "100"}
          - at: 1700000010
            failed: [home]
    """

    def __init__(
        self,
        servers: list[Server],
        users: list[ServerUser],
        cycles: list[ReplayCycle],
    ) -> None:
        self.servers = servers
        self.users = users
        self.cycles = cycles
        self._index = -1

    @classmethod
    def from_yaml(cls, path: str | Path) -> ReplayPoller:
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ValueError(f"Replay file is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Replay YAML must be a mapping")

        servers = [
            Server(
                id=str(s["id"]),
                name=str(s.get("name", s["id"])),
                type=str(s.get("type", "plex")),
            )
            for s in data.get("servers", [])
        ]
        if not servers:
            raise ValueError("Replay YAML must list at least one server")
        default_server = servers[0].id

        users = []
        for raw in data.get("users", []):
            vendor_id = str(raw["id"])
            user_server = str(raw.get("server_id", default_server))
            user = ServerUser(
                id=server_user_key(user_server, vendor_id),
                username=str(raw.get("username", vendor_id)),
                server_id=user_server,
                trust_score=int(raw.get("trust_score", 100)),
                external_id=vendor_id,
            )
            if "created_at" in raw:
                user.created_at = float(raw["created_at"])
            if raw.get("last_activity_at") is not None:
                user.last_activity_at = float(raw["last_activity_at"])
            users.append(user)

        cycles = []
        for raw in data.get("cycles", []):
            if "at" not in raw:
                raise ValueError("Every replay cycle needs an 'at' timestamp")
            sessions = raw.get("sessions") or {}
            if isinstance(sessions, list):
                sessions = {default_server: sessions}
            cycles.append(
                ReplayCycle(
                    at=float(raw["at"]),
                    sessions={str(k): list(v or []) for k, v in sessions.items()},
                    failed=frozenset(str(s) for s in raw.get("failed", [])),
                )
            )
        cycles.sort(key=lambda c: c.at)
        return cls(servers=servers, users=users, cycles=cycles)

    @property
    def current(self) -> ReplayCycle | None:
        if 0 <= self._index < len(self.cycles):
            return self.cycles[self._index]
        return None

    def advance(self) -> float | None:
        """Move to the next cycle; returns its timestamp or None when exhausted."""
        self._index += 1
        cycle = self.current
        return cycle.at if cycle is not None else None

    async def poll(self, server: Server) -> list[PollSnapshot]:
        cycle = self.current
        if cycle is None:
            return []
        if server.id in cycle.failed:
            raise ConnectionError(f"Server {server.id} did not answer")
        return snapshots_from_payload(server.id, cycle.sessions.get(server.id, []))
