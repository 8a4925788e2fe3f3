"""Session data models — poll snapshots, tracked sessions, lifecycle events."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


class SessionState(enum.Enum):
    """Playback state reported by a media server."""

    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"


class SessionEventType(enum.Enum):
    """Lifecycle transition emitted by the tracker."""

    STARTED = "started"
    UPDATED = "updated"
    ENDED = "ended"


class Decision(enum.Enum):
    """How one poll snapshot was reconciled."""

    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class GeoLocation:
    """Resolved location of an IP address."""

    lat: float | None = None
    lon: float | None = None
    city: str | None = None
    country: str | None = None
    is_private: bool = False

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


@dataclass(frozen=True)
class Server:
    """A monitored media server."""

    id: str
    name: str = ""
    type: str = "plex"


def server_user_key(server_id: str, user_id: str) -> str:
    """Identity of a vendor account within one server.

    Vendor user ids are only unique per server, so two servers reporting
    user "1" are two different accounts.
    """
    return f"{server_id}:{user_id}"


@dataclass
class ServerUser:
    """An account on one media server."""

    id: str
    username: str = ""
    server_id: str = ""
    trust_score: int = 100
    created_at: float = field(default_factory=time.time)
    last_activity_at: float | None = None
    external_id: str = ""

    @property
    def vendor_id(self) -> str:
        """The id the media server uses for this account."""
        return self.external_id or self.id


@dataclass(frozen=True)
class PollSnapshot:
    """One transport session as reported by a single poll cycle.

    Normalised at the poller boundary; the tracker trusts the field types.
    """

    server_id: str
    session_key: str
    user_id: str
    state: SessionState = SessionState.PLAYING
    rating_key: str | None = None
    live_uuid: str | None = None
    progress_ms: int = 0
    total_duration_ms: int | None = None
    is_transcode: bool = False
    ip_address: str = ""
    device_id: str | None = None
    player_name: str | None = None
    platform: str | None = None
    device: str | None = None
    product: str | None = None
    media_type: str = "episode"
    media_title: str = ""
    username: str = ""


@dataclass
class Session:
    """One logical playback session reconstructed from successive polls."""

    server_id: str
    session_key: str
    server_user_id: str
    rating_key: str | None = None
    live_uuid: str | None = None
    state: SessionState = SessionState.PLAYING
    progress_ms: int = 0
    total_duration_ms: int | None = None
    is_transcode: bool = False
    ip_address: str = ""
    device_id: str | None = None
    player_name: str | None = None
    platform: str | None = None
    device: str | None = None
    product: str | None = None
    media_type: str = "episode"
    media_title: str = ""
    geo: GeoLocation | None = None
    started_at: float = field(default_factory=time.time)
    last_seen_at: float = field(default_factory=time.time)
    stopped_at: float | None = None
    last_paused_at: float | None = None
    paused_duration_ms: int = 0
    watched: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def full_key(self) -> str:
        return f"{self.server_id}:{self.session_key}"

    @property
    def is_open(self) -> bool:
        return self.stopped_at is None

    @property
    def country(self) -> str | None:
        return self.geo.country if self.geo else None

    @classmethod
    def from_snapshot(
        cls, snapshot: PollSnapshot, now: float, geo: GeoLocation | None = None
    ) -> Session:
        return cls(
            server_id=snapshot.server_id,
            session_key=snapshot.session_key,
            server_user_id=server_user_key(snapshot.server_id, snapshot.user_id),
            rating_key=snapshot.rating_key,
            live_uuid=snapshot.live_uuid,
            state=snapshot.state,
            progress_ms=snapshot.progress_ms,
            total_duration_ms=snapshot.total_duration_ms,
            is_transcode=snapshot.is_transcode,
            ip_address=snapshot.ip_address,
            device_id=snapshot.device_id,
            player_name=snapshot.player_name,
            platform=snapshot.platform,
            device=snapshot.device,
            product=snapshot.product,
            media_type=snapshot.media_type,
            media_title=snapshot.media_title,
            geo=geo,
            started_at=now,
            last_seen_at=now,
            last_paused_at=now if snapshot.state == SessionState.PAUSED else None,
        )


@dataclass(frozen=True)
class SessionEvent:
    """A lifecycle transition of one session."""

    type: SessionEventType
    session: Session
    transcode_changed: bool = False


@dataclass(frozen=True)
class TrackerDecision:
    """Outcome of reconciling one poll snapshot."""

    decision: Decision
    session_id: str


@dataclass
class CycleResult:
    """Everything one poll cycle did for one server."""

    server_id: str
    decisions: list[TrackerDecision] = field(default_factory=list)
    events: list[SessionEvent] = field(default_factory=list)

    def of_type(self, event_type: SessionEventType) -> list[SessionEvent]:
        return [e for e in self.events if e.type == event_type]


@dataclass
class Violation:
    """A persisted record of one matched rule instance."""

    rule_id: str
    rule_name: str
    server_user_id: str
    session_id: str | None
    severity: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    acknowledged_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
