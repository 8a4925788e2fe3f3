"""Action executor — routes each rule action to its handler."""

from __future__ import annotations

from sharewatch.actions.alert import LogOnlyAction
from sharewatch.actions.base import ActionDispatcher, ActionHandler, ViolationRecorder
from sharewatch.actions.notify import NotifyAction
from sharewatch.actions.record import RecordViolationAction
from sharewatch.actions.terminate import TerminateStreamAction
from sharewatch.policy.models import ActionType, RuleAction
from sharewatch.policy.results import EvaluationContext, EvaluationResult


class ActionExecutor:
    """Looks up the handler for an action type and runs it.

    Handlers without a configured collaborator are simply absent; running
    such an action raises LookupError, which the engine reports as an
    action failure.
    """

    def __init__(
        self,
        recorder: ViolationRecorder | None = None,
        dispatcher: ActionDispatcher | None = None,
    ) -> None:
        self._handlers: dict[ActionType, ActionHandler] = {
            ActionType.LOG_ONLY: LogOnlyAction(),
        }
        if recorder is not None:
            self._handlers[ActionType.CREATE_VIOLATION] = RecordViolationAction(recorder)
        if dispatcher is not None:
            self._handlers[ActionType.NOTIFY] = NotifyAction(dispatcher)
            self._handlers[ActionType.TERMINATE_STREAM] = TerminateStreamAction(
                dispatcher
            )

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    async def execute(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        action: RuleAction,
    ) -> None:
        handler = self._handlers.get(action.type)
        if handler is None:
            raise LookupError(f"No handler configured for action {action.type.value}")
        await handler.execute(context, result, action)
