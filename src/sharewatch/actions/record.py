"""Record action — turns a matched rule into a persisted Violation."""

from __future__ import annotations

import logging

from sharewatch.actions.base import ViolationRecorder
from sharewatch.policy.models import RuleAction
from sharewatch.policy.results import EvaluationContext, EvaluationResult
from sharewatch.session.models import Violation

logger = logging.getLogger(__name__)


def build_violation(
    context: EvaluationContext, result: EvaluationResult
) -> Violation:
    data = result.evidence_dict()
    data["session"] = {
        "server_id": context.session.server_id,
        "session_key": context.session.session_key,
        "ip_address": context.session.ip_address,
        "device_id": context.session.device_id,
        "media_title": context.session.media_title,
    }
    data["related_session_ids"] = result.related_session_ids
    return Violation(
        rule_id=result.rule_id,
        rule_name=result.rule_name,
        server_user_id=context.server_user.id,
        session_id=context.session.id,
        severity=context.rule.severity.value,
        data=data,
        created_at=context.now,
    )


class RecordViolationAction:
    """Creates a Violation and hands it to the recorder."""

    def __init__(self, recorder: ViolationRecorder) -> None:
        self._recorder = recorder

    async def execute(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        action: RuleAction,
    ) -> None:
        violation = build_violation(context, result)
        created = await self._recorder.record(violation)
        if created:
            logger.warning(
                "VIOLATION [%s] %s: user %s session %s",
                violation.severity,
                violation.rule_name,
                violation.server_user_id,
                violation.session_id,
            )
        else:
            logger.debug(
                "Violation for rule %s on session %s already open",
                violation.rule_id,
                violation.session_id,
            )
