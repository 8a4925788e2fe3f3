"""Evaluation context and result types shared by evaluators, engine and actions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from sharewatch.policy.models import Condition, Rule, RuleAction
from sharewatch.session.models import Server, ServerUser, Session


@dataclass(frozen=True)
class EvaluationContext:
    """Read-only bundle handed to every evaluator for one pass."""

    session: Session
    server_user: ServerUser
    server: Server
    active_sessions: tuple[Session, ...]
    recent_sessions: tuple[Session, ...]
    rule: Rule
    now: float


@dataclass(frozen=True)
class EvaluatorResult:
    matched: bool
    actual: Any
    related_session_ids: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ConditionEvidence:
    """Why one condition did or did not hold."""

    condition: Condition
    matched: bool
    actual: Any
    related_session_ids: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict, hash=False)
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "field": self.condition.field.value,
            "operator": self.condition.operator.value,
            "threshold": self.condition.value,
            "actual": _jsonable(self.actual),
            "matched": self.matched,
        }
        if self.related_session_ids:
            data["related_session_ids"] = list(self.related_session_ids)
        if self.details:
            data["details"] = {k: _jsonable(v) for k, v in self.details.items()}
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class GroupEvidence:
    group_index: int
    matched: bool
    conditions: tuple[ConditionEvidence, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_index": self.group_index,
            "matched": self.matched,
            "conditions": [c.to_dict() for c in self.conditions],
        }


@dataclass(frozen=True)
class EvaluationResult:
    """Aggregated outcome of one rule for one triggering session.

    ``evidence`` holds the groups that matched; a non-matching rule has none.
    """

    rule_id: str
    rule_name: str
    matched: bool
    matched_groups: tuple[int, ...] = ()
    actions: tuple[RuleAction, ...] = ()
    evidence: tuple[GroupEvidence, ...] = ()

    @property
    def related_session_ids(self) -> list[str]:
        ids: list[str] = []
        for group in self.evidence:
            for cond in group.conditions:
                for sid in cond.related_session_ids:
                    if sid not in ids:
                        ids.append(sid)
        return ids

    def evidence_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "matched_groups": list(self.matched_groups),
            "groups": [g.to_dict() for g in self.evidence],
        }


@dataclass(frozen=True)
class RuleFailure:
    """A rule that raised or timed out; treated as non-matching."""

    rule_id: str
    error: str
    timed_out: bool = False


@dataclass(frozen=True)
class ActionFailure:
    """An action that failed after its rule matched."""

    rule_id: str
    action: RuleAction
    error: str


@dataclass
class EvaluationPass:
    """Everything one evaluation pass produced."""

    results: list[EvaluationResult] = field(default_factory=list)
    rule_failures: list[RuleFailure] = field(default_factory=list)
    action_failures: list[ActionFailure] = field(default_factory=list)

    @property
    def matched(self) -> list[EvaluationResult]:
        return [r for r in self.results if r.matched]


def _jsonable(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        # JSON has no literal for these; store the JavaScript spellings.
        if math.isnan(value):
            return "NaN"
        return "Infinity" if value > 0 else "-Infinity"
    if isinstance(value, (set, frozenset, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value
