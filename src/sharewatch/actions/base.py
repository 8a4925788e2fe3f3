"""Action handler protocols — follow-on actions when a rule matches."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from sharewatch.policy.models import RuleAction
from sharewatch.policy.results import EvaluationContext, EvaluationResult
from sharewatch.session.models import Violation


@dataclass(frozen=True)
class ActionRequest:
    """A request for the external dispatcher (notify, terminate, ...)."""

    action: RuleAction
    rule_id: str
    rule_name: str
    severity: str
    server_id: str
    server_user_id: str
    session_id: str
    session_key: str
    evidence: dict[str, Any] = field(default_factory=dict, hash=False)
    requested_at: float = field(default_factory=time.time)


class ActionHandler(Protocol):
    """Protocol for rule match response actions."""

    async def execute(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        action: RuleAction,
    ) -> None:
        """Execute the action. Raises on failure."""
        ...


class ViolationRecorder(Protocol):
    """Persistence boundary for violations."""

    async def record(self, violation: Violation) -> bool:
        """Store a violation. Returns False if an equivalent one is already open."""
        ...


class ActionDispatcher(Protocol):
    """Delivery boundary for notifications and stream termination."""

    async def dispatch(self, request: ActionRequest) -> None:
        ...


def build_request(
    context: EvaluationContext, result: EvaluationResult, action: RuleAction
) -> ActionRequest:
    return ActionRequest(
        action=action,
        rule_id=result.rule_id,
        rule_name=result.rule_name,
        severity=context.rule.severity.value,
        server_id=context.server.id,
        server_user_id=context.server_user.id,
        session_id=context.session.id,
        session_key=context.session.session_key,
        evidence=result.evidence_dict(),
    )
