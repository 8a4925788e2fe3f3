"""Tests for the session state tracker."""

from __future__ import annotations

import ipaddress

from conftest import NEW_YORK, NOW, make_session, make_snapshot

from sharewatch.resolve import GeoEntry, GeoResolver
from sharewatch.session.models import Decision, SessionEventType, SessionState
from sharewatch.session.tracker import SessionTracker, is_watch_complete, watch_time_ms


def _tracker(**kwargs) -> SessionTracker:
    return SessionTracker("home", **kwargs)


class TestSegmentation:
    def test_first_poll_creates(self):
        tracker = _tracker()
        decision = tracker.process(make_snapshot(), now=NOW)
        assert decision.decision == Decision.CREATE
        assert len(tracker.active_sessions()) == 1

    def test_constant_rating_key_updates_same_session(self):
        tracker = _tracker()
        first = tracker.process(make_snapshot(), now=NOW)
        second = tracker.process(make_snapshot(progress_ms=5000), now=NOW + 10)
        assert second.decision == Decision.UPDATE
        assert second.session_id == first.session_id
        [session] = tracker.active_sessions()
        assert session.progress_ms == 5000
        assert session.last_seen_at == NOW + 10

    def test_live_channel_change_keeps_one_session(self):
        tracker = _tracker()
        tracker.process(make_snapshot(rating_key="100", live_uuid="tune-1"), now=NOW)
        decision = tracker.process(
            make_snapshot(rating_key="101", live_uuid="tune-1"), now=NOW + 10
        )
        assert decision.decision == Decision.UPDATE
        [session] = tracker.active_sessions()
        assert session.rating_key == "101"

    def test_episode_change_creates_new_session(self):
        tracker = _tracker()
        result_a = tracker.process_cycle([make_snapshot(rating_key="100")], now=NOW)
        result_b = tracker.process_cycle([make_snapshot(rating_key="200")], now=NOW + 10)

        decisions = result_a.decisions + result_b.decisions
        assert [d.decision for d in decisions] == [Decision.CREATE, Decision.CREATE]
        assert decisions[0].session_id != decisions[1].session_id
        assert [e.type for e in result_b.events] == [
            SessionEventType.ENDED,
            SessionEventType.STARTED,
        ]
        ended = result_b.events[0].session
        assert ended.stopped_at == NOW + 10
        assert ended.state == SessionState.STOPPED
        [open_session] = tracker.active_sessions()
        assert open_session.rating_key == "200"

    def test_missing_rating_key_is_an_update(self):
        tracker = _tracker()
        tracker.process(make_snapshot(rating_key="100"), now=NOW)
        decision = tracker.process(make_snapshot(rating_key=None), now=NOW + 10)
        assert decision.decision == Decision.UPDATE
        [session] = tracker.active_sessions()
        assert session.rating_key == "100"

    def test_at_most_one_open_session_per_key(self):
        tracker = _tracker()
        for i, rating_key in enumerate(["1", "2", "2", "3", "3", "3"]):
            tracker.process(make_snapshot(rating_key=rating_key), now=NOW + i)
            assert len(tracker.state.open_for("home:1")) == 1

    def test_keys_are_independent(self):
        tracker = _tracker()
        tracker.process_cycle(
            [make_snapshot(session_key="1"), make_snapshot(session_key="2")], now=NOW
        )
        assert len(tracker.active_sessions()) == 2

    def test_foreign_server_snapshot_still_updates(self, caplog):
        tracker = _tracker()
        decisions = [
            tracker.process(make_snapshot(server_id="other"), now=NOW + i * 10).decision
            for i in range(3)
        ]
        assert decisions == [Decision.CREATE, Decision.UPDATE, Decision.UPDATE]
        [session] = tracker.active_sessions()
        assert session.server_id == "home"
        assert "routed to tracker" in caplog.text


class TestLifecycle:
    def test_absent_key_ends_session(self):
        tracker = _tracker()
        tracker.process_cycle([make_snapshot()], now=NOW)
        result = tracker.process_cycle([], now=NOW + 10)
        assert [e.type for e in result.events] == [SessionEventType.ENDED]
        assert result.events[0].session.stopped_at == NOW + 10
        assert tracker.active_sessions() == []
        assert "home:1" not in tracker.state.known_keys

    def test_reused_key_after_absence_creates(self):
        tracker = _tracker()
        tracker.process_cycle([make_snapshot()], now=NOW)
        tracker.process_cycle([], now=NOW + 10)
        result = tracker.process_cycle([make_snapshot()], now=NOW + 20)
        assert result.decisions[0].decision == Decision.CREATE

    def test_restore_then_self_heal(self, caplog):
        tracker = _tracker()
        older = make_session(started_at=NOW - 100, last_seen_at=NOW - 90)
        newer = make_session(started_at=NOW - 50, last_seen_at=NOW - 40)
        tracker.restore([older, newer])

        result = tracker.process_cycle([make_snapshot()], now=NOW)

        assert result.decisions[0].decision == Decision.UPDATE
        assert result.decisions[0].session_id == newer.id
        assert older.stopped_at == NOW
        ended = [e.session.id for e in result.of_type(SessionEventType.ENDED)]
        assert ended == [older.id]
        assert tracker.active_sessions() == [newer]
        assert "open sessions for home:1" in caplog.text

    def test_restore_ignores_closed_and_foreign_sessions(self):
        tracker = _tracker()
        tracker.restore(
            [
                make_session(stopped_at=NOW),
                make_session(server_id="other"),
            ]
        )
        assert tracker.active_sessions() == []

    def test_stale_sweep(self):
        tracker = _tracker()
        tracker.process(make_snapshot(), now=NOW)
        assert tracker.sweep_stale(now=NOW + 100, timeout=300) == []

        events = tracker.sweep_stale(now=NOW + 301, timeout=300)
        assert [e.type for e in events] == [SessionEventType.ENDED]
        assert events[0].session.stopped_at == NOW
        assert tracker.active_sessions() == []

    def test_key_seen_after_sweep_starts_new_session(self):
        tracker = _tracker()
        first = tracker.process(make_snapshot(), now=NOW)
        tracker.sweep_stale(now=NOW + 400, timeout=300)
        decision = tracker.process(make_snapshot(), now=NOW + 401)
        assert decision.decision == Decision.CREATE
        assert decision.session_id != first.session_id


class TestPlayback:
    def test_pause_accumulates(self):
        tracker = _tracker()
        tracker.process(make_snapshot(), now=NOW)
        tracker.process(make_snapshot(state=SessionState.PAUSED), now=NOW + 10)
        tracker.process(make_snapshot(state=SessionState.PLAYING), now=NOW + 40)
        [session] = tracker.active_sessions()
        assert session.paused_duration_ms == 30_000
        assert session.last_paused_at is None

    def test_close_while_paused_folds_pause(self):
        tracker = _tracker()
        tracker.process_cycle([make_snapshot()], now=NOW)
        tracker.process_cycle([make_snapshot(state=SessionState.PAUSED)], now=NOW + 10)
        result = tracker.process_cycle([], now=NOW + 25)
        session = result.events[0].session
        assert session.paused_duration_ms == 15_000

    def test_watch_completion(self):
        tracker = _tracker()
        tracker.process(make_snapshot(total_duration_ms=100_000), now=NOW)
        tracker.process(make_snapshot(total_duration_ms=100_000), now=NOW + 50)
        [session] = tracker.active_sessions()
        assert session.watched is False
        tracker.process(make_snapshot(total_duration_ms=100_000), now=NOW + 90)
        assert session.watched is True

    def test_watch_time_excludes_pauses(self):
        session = make_session(paused_duration_ms=20_000)
        assert watch_time_ms(session, NOW + 60) == 40_000
        assert is_watch_complete(85, 100)
        assert not is_watch_complete(84, 100)
        assert not is_watch_complete(1000, None)

    def test_transcode_change_flagged(self):
        tracker = _tracker()
        tracker.process_cycle([make_snapshot()], now=NOW)
        result = tracker.process_cycle([make_snapshot(is_transcode=True)], now=NOW + 10)
        [event] = result.events
        assert event.type == SessionEventType.UPDATED
        assert event.transcode_changed is True

        result = tracker.process_cycle([make_snapshot(is_transcode=True)], now=NOW + 20)
        assert result.events[0].transcode_changed is False


def test_geo_resolved_on_create():
    resolver = GeoResolver(
        entries=[GeoEntry(ipaddress.ip_network("24.48.0.0/24"), NEW_YORK)]
    )
    tracker = _tracker(geo_resolver=resolver)
    tracker.process(make_snapshot(ip_address="24.48.0.9"), now=NOW)
    [session] = tracker.active_sessions()
    assert session.geo == NEW_YORK
    assert session.country == "US"
