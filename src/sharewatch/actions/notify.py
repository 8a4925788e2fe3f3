"""Notify action — asks the external dispatcher to deliver a notification."""

from __future__ import annotations

import logging

from sharewatch.actions.base import ActionDispatcher, build_request
from sharewatch.policy.models import RuleAction
from sharewatch.policy.results import EvaluationContext, EvaluationResult

logger = logging.getLogger(__name__)


class NotifyAction:
    """Forwards the match and its evidence to the notification dispatcher."""

    def __init__(self, dispatcher: ActionDispatcher) -> None:
        self._dispatcher = dispatcher

    async def execute(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        action: RuleAction,
    ) -> None:
        request = build_request(context, result, action)
        await self._dispatcher.dispatch(request)
        logger.info(
            "Notification requested for rule %s (user %s, channel %s)",
            result.rule_id,
            context.server_user.id,
            action.params.get("channel", "default"),
        )
