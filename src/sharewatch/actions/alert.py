"""Log-only action — records the match in the log and nothing else."""

from __future__ import annotations

import logging

from sharewatch.policy.models import RuleAction
from sharewatch.policy.results import EvaluationContext, EvaluationResult

logger = logging.getLogger(__name__)


class LogOnlyAction:
    """Logs match details without persisting or dispatching anything."""

    async def execute(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        action: RuleAction,
    ) -> None:
        logger.warning(
            "MATCH [%s]: %s — user %s, session %s, groups %s",
            context.rule.severity.value,
            result.rule_name,
            context.server_user.id,
            context.session.id,
            list(result.matched_groups),
        )
