"""Rule evaluation engine — runs condition groups and dispatches actions.

A group matches when every condition in it matches; a rule matches when any
group matches. Each rule is evaluated in isolation: an evaluator that raises
or a rule that exceeds its timeout is reported and treated as non-matching
without affecting the other rules of the same pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sharewatch.policy.conditions import EVALUATORS
from sharewatch.policy.models import (
    DESTRUCTIVE_ACTIONS,
    Condition,
    ConditionGroup,
    Rule,
)
from sharewatch.policy.results import (
    ActionFailure,
    ConditionEvidence,
    EvaluationContext,
    EvaluationPass,
    EvaluationResult,
    GroupEvidence,
    RuleFailure,
)
from sharewatch.session.models import Server, ServerUser, Session

if TYPE_CHECKING:
    from sharewatch.actions.executor import ActionExecutor

logger = logging.getLogger(__name__)

DEFAULT_RULE_TIMEOUT = 2.0


def evaluate_condition(
    context: EvaluationContext, condition: Condition
) -> ConditionEvidence:
    """Evaluate one condition. Evaluator errors propagate to the rule."""
    evaluator = EVALUATORS.get(condition.field)
    if evaluator is None:
        logger.warning("No evaluator for condition field %s", condition.field)
        return ConditionEvidence(
            condition=condition, matched=False, actual=None, error="no evaluator"
        )

    result = evaluator(context, condition)
    return ConditionEvidence(
        condition=condition,
        matched=result.matched,
        actual=result.actual,
        related_session_ids=result.related_session_ids,
        details=result.details,
    )


def evaluate_group(
    context: EvaluationContext, index: int, group: ConditionGroup
) -> GroupEvidence:
    """AND every condition in the group. All conditions run for full evidence."""
    conditions = tuple(evaluate_condition(context, c) for c in group.conditions)
    matched = bool(conditions) and all(c.matched for c in conditions)
    return GroupEvidence(group_index=index, matched=matched, conditions=conditions)


def evaluate_rule(context: EvaluationContext) -> EvaluationResult:
    """Evaluate one rule against the context. Pure: no side effects."""
    rule = context.rule
    evidence = tuple(
        evaluate_group(context, i, group) for i, group in enumerate(rule.groups)
    )
    matched_groups = tuple(g.group_index for g in evidence if g.matched)
    matched = bool(matched_groups)
    return EvaluationResult(
        rule_id=rule.id,
        rule_name=rule.name,
        matched=matched,
        matched_groups=matched_groups,
        actions=rule.actions if matched else (),
        evidence=tuple(g for g in evidence if g.matched),
    )


class RuleEngine:
    """Runs all applicable rules for one triggering session and acts on matches."""

    def __init__(
        self,
        executor: ActionExecutor | None = None,
        rule_timeout: float = DEFAULT_RULE_TIMEOUT,
    ) -> None:
        self._executor = executor
        self._rule_timeout = rule_timeout

    async def evaluate(
        self,
        session: Session,
        server_user: ServerUser,
        server: Server,
        active_sessions: Iterable[Session],
        recent_sessions: Iterable[Session],
        rules: Iterable[Rule],
        now: float | None = None,
        transcode_only: bool = False,
    ) -> EvaluationPass:
        """Run one evaluation pass.

        ``active_sessions`` and ``recent_sessions`` must already be a
        consistent snapshot; they are frozen into the context as tuples.
        """
        now = time.time() if now is None else now
        active = tuple(active_sessions)
        recent = tuple(recent_sessions)
        result = EvaluationPass()

        for rule in rules:
            if not rule.applies_to(server.id, server_user.id, server_user.vendor_id):
                continue
            if transcode_only and not rule.has_transcode_conditions:
                continue

            context = EvaluationContext(
                session=session,
                server_user=server_user,
                server=server,
                active_sessions=active,
                recent_sessions=recent,
                rule=rule,
                now=now,
            )
            outcome = await self._evaluate_isolated(context)
            if isinstance(outcome, RuleFailure):
                result.rule_failures.append(outcome)
                continue

            result.results.append(outcome)
            if outcome.matched:
                logger.warning(
                    "Rule '%s' matched for user %s (session %s, groups %s)",
                    rule.name,
                    server_user.id,
                    session.id,
                    list(outcome.matched_groups),
                )
                result.action_failures.extend(
                    await self._run_actions(context, outcome)
                )

        return result

    async def check_inactive_accounts(
        self,
        users: Iterable[tuple[ServerUser, Session]],
        server: Server,
        rules: Iterable[Rule],
        now: float | None = None,
    ) -> EvaluationPass:
        """Audit sweep: run inactivity rules for users without a new session.

        Each user is paired with a placeholder session representing the
        account (typically the user's last known session).
        """
        inactivity_rules = [r for r in rules if r.is_inactivity_audit]
        combined = EvaluationPass()
        for user, last_session in users:
            outcome = await self.evaluate(
                session=last_session,
                server_user=user,
                server=server,
                active_sessions=(),
                recent_sessions=(),
                rules=inactivity_rules,
                now=now,
            )
            combined.results.extend(outcome.results)
            combined.rule_failures.extend(outcome.rule_failures)
            combined.action_failures.extend(outcome.action_failures)
        return combined

    async def _evaluate_isolated(
        self, context: EvaluationContext
    ) -> EvaluationResult | RuleFailure:
        rule_id = context.rule.id
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(evaluate_rule, context),
                timeout=self._rule_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Rule %s timed out after %.1fs — treating as no match",
                rule_id,
                self._rule_timeout,
            )
            return RuleFailure(rule_id=rule_id, error="timeout", timed_out=True)
        except Exception as exc:
            logger.exception("Rule %s failed — treating as no match", rule_id)
            return RuleFailure(rule_id=rule_id, error=str(exc))

    async def _run_actions(
        self, context: EvaluationContext, outcome: EvaluationResult
    ) -> list[ActionFailure]:
        if self._executor is None:
            return []

        failures: list[ActionFailure] = []
        for action in outcome.actions:
            if action.type in DESTRUCTIVE_ACTIONS and context.rule.is_inactivity_audit:
                logger.warning(
                    "Skipping %s for inactivity rule %s — audit rules only report",
                    action.type.value,
                    context.rule.id,
                )
                continue
            try:
                await self._executor.execute(context, outcome, action)
            except Exception as exc:
                logger.exception(
                    "Action %s failed for rule %s", action.type.value, context.rule.id
                )
                failures.append(
                    ActionFailure(rule_id=context.rule.id, action=action, error=str(exc))
                )
        return failures
