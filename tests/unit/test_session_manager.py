"""Tests for the session manager."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from conftest import NOW, make_session, make_snapshot

from sharewatch.actions.executor import ActionExecutor
from sharewatch.policy.evaluator import RuleEngine
from sharewatch.policy.loader import parse_rule
from sharewatch.session.manager import SESSION_WRITE_ATTEMPTS, SessionManager
from sharewatch.session.models import Server, ServerUser, SessionEventType

SERVER = Server(id="home")

STREAMS_RULE = parse_rule(
    {"id": "streams", "type": "concurrent_streams", "params": {"max_streams": 2}}
)
TRANSCODE_RULE = parse_rule(
    {"id": "transcode", "groups": [[{"field": "is_transcoding", "value": True}]]}
)
IDLE_RULE = parse_rule({"id": "idle", "type": "account_inactivity"})


class ScriptedPoller:
    """Returns one scripted poll result per call; exceptions are raised."""

    def __init__(self, *cycles):
        self._cycles = list(cycles)

    async def poll(self, server):
        result = self._cycles.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _manager(poller, rules=(STREAMS_RULE,), **kwargs):
    recorder = MagicMock()
    recorder.record = AsyncMock(return_value=True)
    engine = RuleEngine(executor=ActionExecutor(recorder=recorder))
    manager = SessionManager(
        servers=[SERVER], poller=poller, rules=rules, engine=engine, **kwargs
    )
    return manager, recorder


def test_cycle_tracks_and_evaluates(run_async):
    events = []
    evaluations = []
    poller = ScriptedPoller(
        [make_snapshot(session_key="1")],
        [make_snapshot(session_key="1"), make_snapshot(session_key="2", device_id="phone")],
    )
    manager, recorder = _manager(
        poller,
        on_event=events.append,
        on_evaluation=lambda s, p: evaluations.append(p),
    )

    run_async(manager.run_cycle(now=NOW))
    assert recorder.record.await_count == 0

    run_async(manager.run_cycle(now=NOW + 10))
    recorder.record.assert_awaited_once()
    violation = recorder.record.await_args.args[0]
    assert violation.rule_id == "streams"
    assert len(violation.data["related_session_ids"]) == 2

    assert [e.type for e in events] == [
        SessionEventType.STARTED,
        SessionEventType.UPDATED,
        SessionEventType.STARTED,
    ]
    # Only STARTED events trigger a full evaluation pass.
    assert len(evaluations) == 2
    assert manager.history.active_count() == 2


def test_unknown_users_registered(run_async):
    poller = ScriptedPoller([make_snapshot(user_id="u9", username="zoe")])
    manager, _ = _manager(poller)
    run_async(manager.run_cycle(now=NOW))
    user = manager.users["home:u9"]
    assert user.external_id == "u9"
    assert user.username == "zoe"
    assert user.created_at == NOW
    assert user.last_activity_at == NOW


def test_transcode_change_reevaluates_transcode_rules(run_async):
    poller = ScriptedPoller(
        [make_snapshot()],
        [make_snapshot(is_transcode=True)],
    )
    manager, recorder = _manager(poller, rules=(STREAMS_RULE, TRANSCODE_RULE))
    run_async(manager.run_cycle(now=NOW))
    assert recorder.record.await_count == 0
    run_async(manager.run_cycle(now=NOW + 10))
    recorder.record.assert_awaited_once()
    assert recorder.record.await_args.args[0].rule_id == "transcode"


def test_failed_poll_sweeps_stale_sessions(run_async):
    poller = ScriptedPoller(
        [make_snapshot()],
        ConnectionError("down"),
        ConnectionError("down"),
    )
    manager, _ = _manager(poller, stale_timeout=300)
    run_async(manager.run_cycle(now=NOW))

    [result] = run_async(manager.run_cycle(now=NOW + 60))
    assert result.events == []
    assert manager.history.active_count() == 1

    [result] = run_async(manager.run_cycle(now=NOW + 400))
    assert [e.type for e in result.events] == [SessionEventType.ENDED]
    assert manager.history.active_count() == 0


def test_session_writes_retry_then_queue(run_async):
    repo = MagicMock()
    repo.upsert = AsyncMock(side_effect=OSError("locked"))
    poller = ScriptedPoller([make_snapshot()], [make_snapshot()])
    manager, _ = _manager(poller, session_repo=repo)

    run_async(manager.run_cycle(now=NOW))
    assert repo.upsert.await_count == SESSION_WRITE_ATTEMPTS
    assert len(manager.pending_writes) == 1

    # Next cycle: the queued write goes first, then the UPDATED event succeeds.
    repo.upsert = AsyncMock()
    run_async(manager.run_cycle(now=NOW + 10))
    assert repo.upsert.await_count == 2
    assert manager.pending_writes == []


def test_restore_seeds_tracker_and_history(run_async):
    stored = make_session(started_at=NOW - 60, last_seen_at=NOW - 10)
    repo = MagicMock()
    repo.list_open = AsyncMock(return_value=[stored])
    repo.upsert = AsyncMock()
    poller = ScriptedPoller([make_snapshot()])
    manager, _ = _manager(poller, session_repo=repo)

    assert run_async(manager.restore()) == 1
    assert manager.history.active_count() == 1
    [result] = run_async(manager.run_cycle(now=NOW))
    assert result.decisions[0].session_id == stored.id


def test_audit_flags_dormant_accounts(run_async):
    dormant = ServerUser(id="u2", server_id="home", last_activity_at=NOW - 86400 * 90)
    recent = ServerUser(id="u3", server_id="home", last_activity_at=NOW - 86400)
    manager, recorder = _manager(
        ScriptedPoller(), rules=(IDLE_RULE,), users=[dormant, recent]
    )
    outcome = run_async(manager.audit_inactive(now=NOW))
    assert [r.matched for r in outcome.results] == [True, False]
    violation = recorder.record.await_args.args[0]
    assert violation.server_user_id == "u2"
    assert violation.session_id == "audit-u2"


def test_monitor_loop_stops(run_async):
    poller = ScriptedPoller(*([[]] * 50))
    manager, _ = _manager(poller, poll_interval=0.01)

    async def _run():
        import asyncio

        task = asyncio.create_task(manager.monitor_loop())
        await asyncio.sleep(0.05)
        manager.stop()
        await asyncio.wait_for(task, timeout=1)

    run_async(_run())


def test_episode_change_without_live_uuid_creates_two_sessions(run_async):
    poller = ScriptedPoller(
        [make_snapshot(session_key="abc", rating_key="episode-100", live_uuid=None)],
        [make_snapshot(session_key="abc", rating_key="episode-101", live_uuid=None)],
    )
    events = []
    manager, _ = _manager(poller, on_event=events.append)
    run_async(manager.run_cycle(now=NOW))
    run_async(manager.run_cycle(now=NOW + 10))

    started = [e.session.id for e in events if e.type == SessionEventType.STARTED]
    assert len(set(started)) == 2
    assert not [e for e in events if e.type == SessionEventType.UPDATED]
    assert manager.history.active_count() == 1


def test_live_channel_change_updates_one_session(run_async):
    poller = ScriptedPoller(
        [make_snapshot(session_key="abc", rating_key="channel-1", live_uuid="live-abc")],
        [make_snapshot(session_key="abc", rating_key="channel-2", live_uuid="live-abc")],
    )
    events = []
    manager, _ = _manager(poller, on_event=events.append)
    run_async(manager.run_cycle(now=NOW))
    run_async(manager.run_cycle(now=NOW + 10))

    assert [e.type for e in events] == [
        SessionEventType.STARTED,
        SessionEventType.UPDATED,
    ]
    assert events[0].session.id == events[1].session.id
    assert events[1].session.rating_key == "channel-2"


def test_three_simultaneous_streams_match_threshold_three(run_async):
    rule = parse_rule(
        {"id": "three", "type": "concurrent_streams", "params": {"max_streams": 3}}
    )
    poller = ScriptedPoller(
        [
            make_snapshot(session_key="1", device_id="tv"),
            make_snapshot(session_key="2", device_id="phone"),
            make_snapshot(session_key="3", device_id="tablet"),
        ]
    )
    manager, recorder = _manager(poller, rules=(rule,))
    [result] = run_async(manager.run_cycle(now=NOW))

    session_ids = {e.session.id for e in result.events}
    assert len(session_ids) == 3
    assert recorder.record.await_count >= 1
    for call in recorder.record.await_args_list:
        violation = call.args[0]
        assert violation.rule_id == "three"
        assert set(violation.data["related_session_ids"]) == session_ids


def test_same_vendor_user_on_two_servers_are_separate_accounts(run_async):
    class PerServerPoller:
        async def poll(self, server):
            return [make_snapshot(server_id=server.id, user_id="1")]

    recorder = MagicMock()
    recorder.record = AsyncMock(return_value=True)
    manager = SessionManager(
        servers=[Server(id="a"), Server(id="b")],
        poller=PerServerPoller(),
        rules=(STREAMS_RULE,),
        engine=RuleEngine(executor=ActionExecutor(recorder=recorder)),
    )
    run_async(manager.run_cycle(now=NOW))

    assert {uid: u.server_id for uid, u in manager.users.items()} == {
        "a:1": "a",
        "b:1": "b",
    }
    assert recorder.record.await_count == 0
    assert len(manager.history.snapshot("a:1", NOW).active) == 1
    assert len(manager.history.snapshot("b:1", NOW).active) == 1


def test_audit_covers_same_vendor_user_on_every_server(run_async):
    users = [
        ServerUser(id="a:1", server_id="a", external_id="1", last_activity_at=NOW - 86400 * 90),
        ServerUser(id="b:1", server_id="b", external_id="1", last_activity_at=NOW - 86400 * 90),
    ]
    recorder = MagicMock()
    recorder.record = AsyncMock(return_value=True)
    manager = SessionManager(
        servers=[Server(id="a"), Server(id="b")],
        poller=ScriptedPoller(),
        rules=(IDLE_RULE,),
        engine=RuleEngine(executor=ActionExecutor(recorder=recorder)),
        users=users,
    )
    outcome = run_async(manager.audit_inactive(now=NOW))
    assert len(outcome.matched) == 2
    recorded = {call.args[0].server_user_id for call in recorder.record.await_args_list}
    assert recorded == {"a:1", "b:1"}
