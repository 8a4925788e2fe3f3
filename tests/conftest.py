"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from sharewatch.policy.models import (
    Condition,
    ConditionField,
    ConditionGroup,
    Operator,
    Rule,
    RuleType,
)
from sharewatch.session.models import (
    GeoLocation,
    PollSnapshot,
    Session,
    SessionState,
)

NOW = 1_700_000_000.0

NEW_YORK = GeoLocation(lat=40.71, lon=-74.0, city="New York", country="US")
LONDON = GeoLocation(lat=51.51, lon=-0.13, city="London", country="GB")


def _run_async(coro):
    """Run a coroutine to completion from a sync test."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


@pytest.fixture
def run_async():
    return _run_async


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def rules_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "rules.yaml"


@pytest.fixture
def polls_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "polls.yaml"


@pytest.fixture
def geo_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "geo.yaml"


def make_snapshot(**overrides) -> PollSnapshot:
    data = {
        "server_id": "home",
        "session_key": "1",
        "user_id": "u1",
        "state": SessionState.PLAYING,
        "rating_key": "100",
        "ip_address": "24.48.0.5",
        "device_id": "tv",
    }
    data.update(overrides)
    return PollSnapshot(**data)


def make_session(**overrides) -> Session:
    data = {
        "server_id": "home",
        "session_key": "1",
        "server_user_id": "u1",
        "rating_key": "100",
        "ip_address": "24.48.0.5",
        "device_id": "tv",
        "geo": NEW_YORK,
        "started_at": NOW,
        "last_seen_at": NOW,
    }
    data.update(overrides)
    return Session(**data)


def single_condition_rule(
    field: ConditionField,
    operator: Operator,
    value,
    rule_id: str = "r1",
    **params,
) -> Rule:
    return Rule(
        id=rule_id,
        name=rule_id,
        type=RuleType.CUSTOM,
        groups=(ConditionGroup((Condition(field, operator, value, params),)),),
    )
