"""Thread-safe index of active and recently ended sessions across servers."""

from __future__ import annotations

import dataclasses
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from sharewatch.session.models import Session, SessionEvent, SessionEventType

# Ended sessions kept per user, regardless of the time window.
MAX_RECENT_PER_USER = 100


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time copies of one user's sessions for an evaluation pass."""

    active: tuple[Session, ...]
    recent: tuple[Session, ...]


@dataclass
class SessionHistory:
    """Read path for the rule engine.

    The manager applies tracker events (lock-guarded); evaluation passes read
    via snapshot(), which returns copies so a pass never observes a session
    set that is being updated.
    """

    recent_window_hours: float = 24.0
    _active: dict[str, Session] = field(default_factory=dict)
    _recent: dict[str, deque[Session]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def apply(self, events: list[SessionEvent]) -> None:
        """Apply a batch of lifecycle events atomically."""
        with self._lock:
            for event in events:
                session = event.session
                if event.type == SessionEventType.ENDED:
                    self._active.pop(session.id, None)
                    recent = self._recent.setdefault(
                        session.server_user_id,
                        deque(maxlen=MAX_RECENT_PER_USER),
                    )
                    recent.appendleft(dataclasses.replace(session))
                else:
                    self._active[session.id] = dataclasses.replace(session)

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def snapshot(
        self, server_user_id: str, now: float | None = None
    ) -> SessionSnapshot:
        """Return the user's active sessions and sessions within the window.

        ``recent`` includes the user's active sessions as well as ended ones
        started within ``recent_window_hours``; newest first.
        """
        now = time.time() if now is None else now
        cutoff = now - self.recent_window_hours * 3600
        with self._lock:
            active = tuple(
                dataclasses.replace(s)
                for s in self._active.values()
                if s.server_user_id == server_user_id
            )
            ended = tuple(
                dataclasses.replace(s)
                for s in self._recent.get(server_user_id, ())
                if s.started_at >= cutoff
            )
        recent = tuple(
            sorted(active + ended, key=lambda s: s.started_at, reverse=True)
        )
        return SessionSnapshot(active=active, recent=recent)

    def last_activity(self, server_user_id: str) -> float | None:
        """Most recent session start seen for a user, active or ended."""
        with self._lock:
            starts = [
                s.started_at
                for s in self._active.values()
                if s.server_user_id == server_user_id
            ]
            starts.extend(
                s.started_at for s in self._recent.get(server_user_id, ())
            )
        return max(starts) if starts else None
