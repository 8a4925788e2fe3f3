"""Tests for the SQLite storage layer."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from conftest import LONDON, NOW, make_session, single_condition_rule

from sharewatch.policy.models import ConditionField, Operator
from sharewatch.session.models import SessionState, Violation
from sharewatch.storage.db import SCHEMA_SQL, SCHEMA_VERSION, get_db
from sharewatch.storage.repos import RuleRepo, SessionRepo, ViolationRepo


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def db(db_path: Path, run_async):
    conn = run_async(get_db(db_path))
    yield conn
    run_async(conn.close())


def _violation(**overrides) -> Violation:
    data = {
        "rule_id": "r1",
        "rule_name": "Rule one",
        "server_user_id": "u1",
        "session_id": "s1",
        "severity": "warning",
        "data": {"matched_groups": [0]},
        "created_at": NOW,
    }
    data.update(overrides)
    return Violation(**data)


def test_schema_version_recorded(db, run_async):
    cursor = run_async(db.execute("SELECT version FROM schema_version"))
    row = run_async(cursor.fetchone())
    assert row[0] == SCHEMA_VERSION


def test_reopen_is_idempotent(db_path: Path, run_async):
    run_async(run_async(get_db(db_path)).close())
    conn = run_async(get_db(db_path))
    cursor = run_async(conn.execute("SELECT COUNT(*) FROM schema_version"))
    assert run_async(cursor.fetchone())[0] == 1
    run_async(conn.close())


def test_migrates_version_2_sessions_table(db_path: Path, run_async):
    legacy = sqlite3.connect(db_path)
    legacy.executescript(
        SCHEMA_SQL.replace("    device TEXT,\n", "").replace("    product TEXT,\n", "")
    )
    legacy.execute("INSERT INTO schema_version (version) VALUES (2)")
    legacy.commit()
    legacy.close()

    conn = run_async(get_db(db_path))
    session = make_session(device="Chromecast", product="Plex Web")
    run_async(SessionRepo(conn).upsert(session))
    assert run_async(SessionRepo(conn).get(session.id)).device == "Chromecast"
    cursor = run_async(conn.execute("SELECT version FROM schema_version"))
    assert run_async(cursor.fetchone())[0] == SCHEMA_VERSION
    run_async(conn.close())


class TestSessionRepo:
    def test_upsert_and_get(self, db, run_async):
        repo = SessionRepo(db)
        session = make_session(
            geo=LONDON,
            media_title="Pilot",
            is_transcode=True,
            device="iPhone",
            product="Plex for iOS",
        )
        run_async(repo.upsert(session))
        loaded = run_async(repo.get(session.id))
        assert loaded == session

    def test_upsert_updates_existing_row(self, db, run_async):
        repo = SessionRepo(db)
        session = make_session()
        run_async(repo.upsert(session))
        session.state = SessionState.STOPPED
        session.stopped_at = NOW + 60
        session.paused_duration_ms = 1000
        run_async(repo.upsert(session))

        loaded = run_async(repo.get(session.id))
        assert loaded.state == SessionState.STOPPED
        assert loaded.stopped_at == NOW + 60
        assert loaded.paused_duration_ms == 1000

    def test_list_open_by_server(self, db, run_async):
        repo = SessionRepo(db)
        open_a = make_session()
        closed = make_session(stopped_at=NOW)
        other = make_session(server_id="other")
        for s in (open_a, closed, other):
            run_async(repo.upsert(s))
        assert [s.id for s in run_async(repo.list_open("home"))] == [open_a.id]

    def test_list_by_user(self, db, run_async):
        repo = SessionRepo(db)
        old = make_session(started_at=NOW - 100)
        new = make_session(started_at=NOW)
        for s in (old, new, make_session(server_user_id="u2")):
            run_async(repo.upsert(s))
        assert [s.id for s in run_async(repo.list_by_user("u1"))] == [new.id, old.id]
        assert [s.id for s in run_async(repo.list_by_user("u1", since=NOW - 50))] == [new.id]

    def test_session_without_geo(self, db, run_async):
        repo = SessionRepo(db)
        session = make_session(geo=None)
        run_async(repo.upsert(session))
        assert run_async(repo.get(session.id)).geo is None

    def test_get_missing(self, db, run_async):
        assert run_async(SessionRepo(db).get("nope")) is None


class TestViolationRepo:
    def test_record_and_list(self, db, run_async):
        repo = ViolationRepo(db)
        assert run_async(repo.record(_violation())) is True
        [row] = run_async(repo.list_recent())
        assert row["rule_id"] == "r1"
        assert row["data"] == {"matched_groups": [0]}
        assert row["acknowledged_at"] is None

    def test_duplicate_open_violation_ignored(self, db, run_async):
        repo = ViolationRepo(db)
        assert run_async(repo.record(_violation())) is True
        assert run_async(repo.record(_violation())) is False
        assert len(run_async(repo.list_recent())) == 1

    def test_different_rule_or_session_not_duplicate(self, db, run_async):
        repo = ViolationRepo(db)
        run_async(repo.record(_violation()))
        assert run_async(repo.record(_violation(rule_id="r2"))) is True
        assert run_async(repo.record(_violation(session_id="s2"))) is True

    def test_acknowledge_allows_new_violation(self, db, run_async):
        repo = ViolationRepo(db)
        first = _violation()
        run_async(repo.record(first))
        assert run_async(repo.acknowledge(first.id, at=NOW + 5)) is True
        assert run_async(repo.acknowledge(first.id)) is False
        assert run_async(repo.record(_violation())) is True
        assert run_async(repo.get(first.id))["acknowledged_at"] == NOW + 5

    def test_list_by_user(self, db, run_async):
        repo = ViolationRepo(db)
        run_async(repo.record(_violation(created_at=NOW)))
        run_async(repo.record(_violation(session_id="s2", created_at=NOW + 10)))
        run_async(repo.record(_violation(server_user_id="u2")))
        rows = run_async(repo.list_by_user("u1"))
        assert [r["session_id"] for r in rows] == ["s2", "s1"]

    def test_unique_index_enforced_at_sql_level(self, db, run_async):
        insert = (
            "INSERT INTO violations (id, rule_id, server_user_id, session_id, "
            "severity, created_at) VALUES (?, 'r', 'u', 's', 'low', 0)"
        )
        run_async(db.execute(insert, ("a",)))
        with pytest.raises(sqlite3.IntegrityError):
            run_async(db.execute(insert, ("b",)))


class TestRuleRepo:
    def test_save_get_and_list(self, db, run_async):
        repo = RuleRepo(db)
        rule = single_condition_rule(ConditionField.COUNTRY, Operator.IN, ["KP"])
        run_async(repo.save(rule))
        assert run_async(repo.get(rule.id)) == rule
        assert run_async(repo.list_enabled()) == [rule]

    def test_save_overwrites(self, db, run_async):
        repo = RuleRepo(db)
        rule = single_condition_rule(ConditionField.COUNTRY, Operator.IN, ["KP"])
        run_async(repo.save(rule))
        updated = single_condition_rule(ConditionField.COUNTRY, Operator.IN, ["IR"])
        run_async(repo.save(updated))
        assert run_async(repo.get(rule.id)).groups[0].conditions[0].value == ["IR"]
        assert run_async(repo.get("missing")) is None
