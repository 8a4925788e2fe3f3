"""Session manager — orchestrates polling, tracking, evaluation, and persistence."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from sharewatch.policy.evaluator import RuleEngine
from sharewatch.policy.models import Rule
from sharewatch.policy.results import EvaluationPass
from sharewatch.poller import Poller
from sharewatch.session.history import SessionHistory
from sharewatch.session.models import (
    CycleResult,
    PollSnapshot,
    Server,
    ServerUser,
    Session,
    SessionEvent,
    SessionEventType,
    server_user_key,
)
from sharewatch.session.tracker import DEFAULT_STALE_TIMEOUT, SessionTracker

if TYPE_CHECKING:
    from sharewatch.resolve import GeoResolver
    from sharewatch.storage.repos import SessionRepo

logger = logging.getLogger(__name__)

SESSION_WRITE_ATTEMPTS = 3


class SessionManager:
    """Runs poll cycles for every server: track → persist → evaluate → act."""

    def __init__(
        self,
        servers: Iterable[Server],
        poller: Poller,
        rules: Iterable[Rule],
        engine: RuleEngine | None = None,
        users: Iterable[ServerUser] = (),
        session_repo: SessionRepo | None = None,
        geo_resolver: GeoResolver | None = None,
        history: SessionHistory | None = None,
        poll_interval: float = 10.0,
        stale_timeout: float = DEFAULT_STALE_TIMEOUT,
        on_event: Callable[[SessionEvent], None] | None = None,
        on_evaluation: Callable[[Session, EvaluationPass], None] | None = None,
    ) -> None:
        self._servers = {s.id: s for s in servers}
        self._poller = poller
        self._rules = [r for r in rules if r.enabled]
        self._engine = engine or RuleEngine()
        self._users = {u.id: u for u in users}
        self._session_repo = session_repo
        self._history = history or SessionHistory()
        self._poll_interval = poll_interval
        self._stale_timeout = stale_timeout
        self._on_event = on_event
        self._on_evaluation = on_evaluation
        self._trackers = {
            server_id: SessionTracker(server_id, geo_resolver=geo_resolver)
            for server_id in self._servers
        }
        self._pending_writes: dict[str, Session] = {}
        self._stop_event = asyncio.Event()

    @property
    def history(self) -> SessionHistory:
        return self._history

    @property
    def users(self) -> dict[str, ServerUser]:
        return self._users

    @property
    def pending_writes(self) -> list[Session]:
        return list(self._pending_writes.values())

    def tracker(self, server_id: str) -> SessionTracker:
        return self._trackers[server_id]

    async def restore(self) -> int:
        """Load open sessions from persistence into trackers and history."""
        if self._session_repo is None:
            return 0
        restored = 0
        for server_id, tracker in self._trackers.items():
            sessions = await self._session_repo.list_open(server_id)
            tracker.restore(sessions)
            self._history.apply(
                [SessionEvent(SessionEventType.UPDATED, s) for s in sessions]
            )
            restored += len(sessions)
        return restored

    async def run_cycle(self, now: float | None = None) -> list[CycleResult]:
        """Poll every server once and process the results."""
        now = time.time() if now is None else now
        await self._flush_pending()
        results = await asyncio.gather(
            *(self._poll_server(server, now) for server in self._servers.values())
        )
        return list(results)

    async def monitor_loop(self) -> None:
        """Poll until stop() is called."""
        self._stop_event.clear()
        while not self._stop_event.is_set():
            await self.run_cycle()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._poll_interval
                )
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the monitor loop to stop."""
        self._stop_event.set()

    async def audit_inactive(self, now: float | None = None) -> EvaluationPass:
        """Run inactivity rules for every known user without an active session."""
        now = time.time() if now is None else now
        combined = EvaluationPass()
        for server in self._servers.values():
            idle = [
                (user, _audit_session(user, now))
                for user in self._users.values()
                if user.server_id == server.id
                and not self._history.snapshot(user.id, now).active
            ]
            if not idle:
                continue
            outcome = await self._engine.check_inactive_accounts(
                idle, server, self._rules, now=now
            )
            combined.results.extend(outcome.results)
            combined.rule_failures.extend(outcome.rule_failures)
            combined.action_failures.extend(outcome.action_failures)
        return combined

    async def _poll_server(self, server: Server, now: float) -> CycleResult:
        tracker = self._trackers[server.id]
        try:
            snapshots = await self._poller.poll(server)
        except Exception as exc:
            logger.warning("Poll of server %s failed: %s", server.id, exc)
            result = CycleResult(server_id=server.id)
            result.events.extend(tracker.sweep_stale(now, self._stale_timeout))
        else:
            self._register_users(server, snapshots, now)
            result = tracker.process_cycle(snapshots, now=now)

        await self._handle_cycle(server, result, now)
        return result

    async def _handle_cycle(
        self, server: Server, result: CycleResult, now: float
    ) -> None:
        self._history.apply(result.events)

        for event in result.events:
            await self._persist(event.session)
            if self._on_event:
                self._on_event(event)

        active_users: set[str] = set()
        for event in result.events:
            session = event.session
            if event.type == SessionEventType.STARTED:
                await self._evaluate(server, session, now)
            elif event.type == SessionEventType.UPDATED and event.transcode_changed:
                await self._evaluate(server, session, now, transcode_only=True)
            if event.type != SessionEventType.ENDED:
                active_users.add(session.server_user_id)

        for user_id in active_users:
            self._user(user_id, server.id, now).last_activity_at = now

    async def _evaluate(
        self,
        server: Server,
        session: Session,
        now: float,
        transcode_only: bool = False,
    ) -> EvaluationPass:
        user = self._user(session.server_user_id, server.id, now)
        snapshot = self._history.snapshot(user.id, now)
        outcome = await self._engine.evaluate(
            session=dataclasses.replace(session),
            server_user=user,
            server=server,
            active_sessions=snapshot.active,
            recent_sessions=snapshot.recent,
            rules=self._rules,
            now=now,
            transcode_only=transcode_only,
        )
        for failure in outcome.action_failures:
            logger.error(
                "Action %s for rule %s failed: %s",
                failure.action.type.value,
                failure.rule_id,
                failure.error,
            )
        if self._on_evaluation:
            self._on_evaluation(session, outcome)
        return outcome

    async def _persist(self, session: Session) -> bool:
        if self._session_repo is None:
            return True
        for attempt in range(1, SESSION_WRITE_ATTEMPTS + 1):
            try:
                await self._session_repo.upsert(session)
            except Exception as exc:
                logger.warning(
                    "Writing session %s failed (attempt %d/%d): %s",
                    session.id,
                    attempt,
                    SESSION_WRITE_ATTEMPTS,
                    exc,
                )
                continue
            self._pending_writes.pop(session.id, None)
            return True
        logger.error("Queued session %s for the next cycle", session.id)
        self._pending_writes[session.id] = session
        return False

    async def _flush_pending(self) -> None:
        if not self._pending_writes or self._session_repo is None:
            return
        for session in list(self._pending_writes.values()):
            try:
                await self._session_repo.upsert(session)
            except Exception as exc:
                logger.warning("Queued write for session %s failed: %s", session.id, exc)
                continue
            del self._pending_writes[session.id]

    def _register_users(
        self, server: Server, snapshots: list[PollSnapshot], now: float
    ) -> None:
        for snapshot in snapshots:
            user = self._user(
                server_user_key(server.id, snapshot.user_id),
                server.id,
                now,
                external_id=snapshot.user_id,
            )
            if snapshot.username and not user.username:
                user.username = snapshot.username

    def _user(
        self,
        user_id: str,
        server_id: str,
        now: float | None = None,
        external_id: str = "",
    ) -> ServerUser:
        user = self._users.get(user_id)
        if user is None:
            created_at = time.time() if now is None else now
            user = ServerUser(
                id=user_id,
                server_id=server_id,
                created_at=created_at,
                external_id=external_id,
            )
            self._users[user_id] = user
            logger.info("New server user %s on %s", user_id, server_id)
        return user


def _audit_session(user: ServerUser, now: float) -> Session:
    """Placeholder session for account-level audits; stable id per user."""
    return Session(
        id=f"audit-{user.id}",
        server_id=user.server_id,
        session_key="",
        server_user_id=user.id,
        started_at=now,
        last_seen_at=now,
    )
