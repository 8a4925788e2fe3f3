"""Session state tracker — reconciles poll snapshots into logical sessions.

Transport session keys are reused by media servers across distinct pieces of
content (autoplay, live TV channel surfing), so each poll is classified as
either a continuation of the open session for its key or a new session that
supersedes it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from sharewatch.session.models import (
    CycleResult,
    Decision,
    PollSnapshot,
    Session,
    SessionEvent,
    SessionEventType,
    SessionState,
    TrackerDecision,
)

if TYPE_CHECKING:
    from sharewatch.resolve import GeoResolver

logger = logging.getLogger(__name__)

# Fraction of the runtime that must actually be watched to count as watched.
WATCH_COMPLETION_RATIO = 0.85

DEFAULT_STALE_TIMEOUT = 300.0


def detect_media_change(
    existing_rating_key: str | None,
    new_rating_key: str | None,
    existing_live_uuid: str | None = None,
    new_live_uuid: str | None = None,
) -> bool:
    """Return True when a poll represents different content than the open session.

    Missing content identity on either side is treated as unchanged. A changed
    rating key with the same live UUID on both sides is a channel change within
    one live TV tune-in, not a new session.
    """
    if not existing_rating_key or not new_rating_key:
        return False
    if existing_rating_key == new_rating_key:
        return False
    if existing_live_uuid and new_live_uuid and existing_live_uuid == new_live_uuid:
        return False
    return True


def accumulate_pause(
    session: Session, new_state: SessionState, now: float
) -> None:
    """Fold a playing/paused transition into the session's pause accounting."""
    if session.state != SessionState.PAUSED and new_state == SessionState.PAUSED:
        session.last_paused_at = now
    elif session.state == SessionState.PAUSED and new_state != SessionState.PAUSED:
        if session.last_paused_at is not None:
            session.paused_duration_ms += int((now - session.last_paused_at) * 1000)
        session.last_paused_at = None


def watch_time_ms(session: Session, now: float) -> int:
    """Wall-clock time spent actually playing, excluding pauses."""
    elapsed = int((now - session.started_at) * 1000)
    ongoing = 0
    if session.last_paused_at is not None:
        ongoing = int((now - session.last_paused_at) * 1000)
    return max(0, elapsed - session.paused_duration_ms - ongoing)


def is_watch_complete(watched_ms: int, total_duration_ms: int | None) -> bool:
    if not total_duration_ms or total_duration_ms <= 0:
        return False
    return watched_ms >= total_duration_ms * WATCH_COMPLETION_RATIO


@dataclass
class TrackerState:
    """Known transport keys and their open sessions for one server.

    Owned by exactly one tracker; lives as long as the server connection.
    """

    server_id: str
    known_keys: set[str] = field(default_factory=set)
    open_sessions: dict[str, list[Session]] = field(default_factory=dict)

    def full_key(self, session_key: str) -> str:
        return f"{self.server_id}:{session_key}"

    def open_for(self, full_key: str) -> list[Session]:
        return self.open_sessions.get(full_key, [])

    def add(self, session: Session) -> None:
        self.known_keys.add(session.full_key)
        self.open_sessions.setdefault(session.full_key, []).append(session)

    def discard(self, session: Session) -> None:
        sessions = self.open_sessions.get(session.full_key)
        if not sessions:
            return
        remaining = [s for s in sessions if s.id != session.id]
        if remaining:
            self.open_sessions[session.full_key] = remaining
        else:
            del self.open_sessions[session.full_key]

    def forget(self, full_key: str) -> None:
        self.known_keys.discard(full_key)
        self.open_sessions.pop(full_key, None)

    def all_open(self) -> list[Session]:
        return [s for sessions in self.open_sessions.values() for s in sessions]


class SessionTracker:
    """Turns per-server poll cycles into correctly segmented sessions."""

    def __init__(
        self,
        server_id: str,
        geo_resolver: GeoResolver | None = None,
    ) -> None:
        self.server_id = server_id
        self._state = TrackerState(server_id=server_id)
        self._geo = geo_resolver
        self._key_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @property
    def state(self) -> TrackerState:
        return self._state

    def active_sessions(self) -> list[Session]:
        with self._registry_lock:
            return self._state.all_open()

    def restore(self, sessions: list[Session]) -> None:
        """Seed the tracker with open sessions loaded from persistence."""
        with self._registry_lock:
            for session in sessions:
                if session.server_id != self.server_id or not session.is_open:
                    continue
                self._state.add(session)
        logger.info(
            "Restored %d open session(s) for server %s",
            len(self._state.all_open()),
            self.server_id,
        )

    def process(
        self,
        snapshot: PollSnapshot,
        now: float | None = None,
        events: list[SessionEvent] | None = None,
    ) -> TrackerDecision:
        """Reconcile one snapshot: create a new session or update the open one."""
        now = time.time() if now is None else now
        events = events if events is not None else []

        if snapshot.server_id != self.server_id:
            logger.warning(
                "Snapshot for server %s routed to tracker for %s",
                snapshot.server_id,
                self.server_id,
            )
            snapshot = replace(snapshot, server_id=self.server_id)
        full_key = self._state.full_key(snapshot.session_key)

        with self._lock_for(full_key):
            if full_key not in self._state.known_keys:
                session = self._create(snapshot, now, events)
                return TrackerDecision(Decision.CREATE, session.id)

            existing = self._heal(full_key, now, events)
            if existing is None:
                # Key known but nothing open (e.g. closed by a stale sweep).
                session = self._create(snapshot, now, events)
                return TrackerDecision(Decision.CREATE, session.id)

            if detect_media_change(
                existing.rating_key,
                snapshot.rating_key,
                existing.live_uuid,
                snapshot.live_uuid,
            ):
                logger.info(
                    "Media change on %s: %s -> %s",
                    full_key,
                    existing.rating_key,
                    snapshot.rating_key,
                )
                self._close(existing, now, events)
                session = self._create(snapshot, now, events)
                return TrackerDecision(Decision.CREATE, session.id)

            self._update(existing, snapshot, now, events)
            return TrackerDecision(Decision.UPDATE, existing.id)

    def process_cycle(
        self, snapshots: list[PollSnapshot], now: float | None = None
    ) -> CycleResult:
        """Process one full poll cycle and close keys absent from it."""
        now = time.time() if now is None else now
        result = CycleResult(server_id=self.server_id)
        seen: set[str] = set()

        for snapshot in snapshots:
            seen.add(self._state.full_key(snapshot.session_key))
            decision = self.process(snapshot, now=now, events=result.events)
            result.decisions.append(decision)

        with self._registry_lock:
            absent = [k for k in self._state.known_keys if k not in seen]

        for full_key in absent:
            with self._lock_for(full_key):
                for session in list(self._state.open_for(full_key)):
                    logger.debug("Session %s no longer reported — ending", session.id)
                    self._close(session, now, result.events)
                with self._registry_lock:
                    self._state.forget(full_key)
            with self._registry_lock:
                self._key_locks.pop(full_key, None)

        return result

    def sweep_stale(
        self, now: float | None = None, timeout: float = DEFAULT_STALE_TIMEOUT
    ) -> list[SessionEvent]:
        """Close open sessions that have not been seen for ``timeout`` seconds."""
        now = time.time() if now is None else now
        events: list[SessionEvent] = []
        for session in self.active_sessions():
            if now - session.last_seen_at <= timeout:
                continue
            with self._lock_for(session.full_key):
                if session.is_open:
                    logger.info(
                        "Session %s stale for %.0fs — ending",
                        session.id,
                        now - session.last_seen_at,
                    )
                    self._close(session, session.last_seen_at, events)
        return events

    def _lock_for(self, full_key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(full_key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[full_key] = lock
            return lock

    def _heal(
        self, full_key: str, now: float, events: list[SessionEvent]
    ) -> Session | None:
        """Return the single open session for a key, closing any extras."""
        with self._registry_lock:
            open_sessions = sorted(
                self._state.open_for(full_key), key=lambda s: s.started_at
            )
        if len(open_sessions) > 1:
            logger.warning(
                "%d open sessions for %s — closing %d older one(s)",
                len(open_sessions),
                full_key,
                len(open_sessions) - 1,
            )
            for stale in open_sessions[:-1]:
                self._close(stale, now, events)
        return open_sessions[-1] if open_sessions else None

    def _create(
        self, snapshot: PollSnapshot, now: float, events: list[SessionEvent]
    ) -> Session:
        geo = self._geo.resolve(snapshot.ip_address) if self._geo else None
        session = Session.from_snapshot(snapshot, now, geo=geo)
        with self._registry_lock:
            self._state.add(session)
        events.append(SessionEvent(SessionEventType.STARTED, session))
        logger.debug("Session %s started on %s", session.id, session.full_key)
        return session

    def _update(
        self,
        session: Session,
        snapshot: PollSnapshot,
        now: float,
        events: list[SessionEvent],
    ) -> None:
        accumulate_pause(session, snapshot.state, now)
        transcode_changed = session.is_transcode != snapshot.is_transcode

        session.state = snapshot.state
        session.progress_ms = snapshot.progress_ms
        if snapshot.total_duration_ms:
            session.total_duration_ms = snapshot.total_duration_ms
        session.is_transcode = snapshot.is_transcode
        # Channel changes within a live tune-in carry the new channel's key.
        if snapshot.rating_key:
            session.rating_key = snapshot.rating_key
        if snapshot.live_uuid:
            session.live_uuid = snapshot.live_uuid
        if snapshot.media_title:
            session.media_title = snapshot.media_title
        session.last_seen_at = now
        if not session.watched:
            session.watched = is_watch_complete(
                watch_time_ms(session, now), session.total_duration_ms
            )

        events.append(
            SessionEvent(
                SessionEventType.UPDATED,
                session,
                transcode_changed=transcode_changed,
            )
        )

    def _close(
        self, session: Session, now: float, events: list[SessionEvent]
    ) -> None:
        if session.state == SessionState.PAUSED and session.last_paused_at is not None:
            session.paused_duration_ms += int(
                max(0.0, now - session.last_paused_at) * 1000
            )
            session.last_paused_at = None
        if not session.watched:
            session.watched = is_watch_complete(
                watch_time_ms(session, now), session.total_duration_ms
            )
        session.state = SessionState.STOPPED
        session.stopped_at = now
        with self._registry_lock:
            self._state.discard(session)
        events.append(SessionEvent(SessionEventType.ENDED, session))
        logger.debug("Session %s ended", session.id)
