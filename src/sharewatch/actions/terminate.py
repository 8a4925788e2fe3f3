"""Terminate action — asks the media server to stop the offending stream."""

from __future__ import annotations

import logging

from sharewatch.actions.base import ActionDispatcher, build_request
from sharewatch.policy.models import RuleAction
from sharewatch.policy.results import EvaluationContext, EvaluationResult

logger = logging.getLogger(__name__)


class TerminateStreamAction:
    """Requests termination of the triggering session's stream."""

    def __init__(self, dispatcher: ActionDispatcher) -> None:
        self._dispatcher = dispatcher

    async def execute(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        action: RuleAction,
    ) -> None:
        session = context.session
        logger.critical(
            "TERMINATING session %s (%s on %s) — rule '%s'",
            session.id,
            session.session_key,
            session.server_id,
            result.rule_name,
        )
        await self._dispatcher.dispatch(build_request(context, result, action))
