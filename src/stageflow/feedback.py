"""Bounded retry, redirect and escalation decisions for failed stages."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from stageflow.models import (
    EscalationAction,
    FailureKind,
    FeedbackRule,
    RunState,
    RunStatus,
    StageResult,
    StageStatus,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_RULES: tuple[FeedbackRule, ...] = (
    FeedbackRule(FailureKind.COMPILE, max_attempts=3),
    FeedbackRule(FailureKind.TEST, max_attempts=2, target="implement"),
    FeedbackRule(FailureKind.LINT, max_attempts=2, target="implement"),
    FeedbackRule(FailureKind.LAYER_BOUNDARY, max_attempts=1, target="plan"),
    FeedbackRule(FailureKind.TIMEOUT, max_attempts=2),
    FeedbackRule(FailureKind.UNKNOWN, max_attempts=1),
)


class FeedbackOutcome(str, Enum):
    RETRY = "retry"
    REDIRECT = "redirect"
    REMEDIATE = "remediate"
    ESCALATE = "escalate"
    ABORT = "abort"


@dataclass(slots=True, frozen=True)
class FeedbackDecision:
    outcome: FeedbackOutcome
    stage: str
    failure_kind: FailureKind
    attempts: int
    max_attempts: int
    target: str
    reason: str

    @property
    def halts(self) -> bool:
        return self.outcome in {FeedbackOutcome.ESCALATE, FeedbackOutcome.ABORT}

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "stage": self.stage,
            "failure_kind": self.failure_kind.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "target": self.target,
            "reason": self.reason,
        }


class FeedbackResolver:
    """Looks up the rule for ``(stage, kind)`` and applies it to a run.

    ``attempts_by_stage[stage]`` counts consecutive failures of the kind in
    ``attempt_kinds[stage]`` since the stage last succeeded; review results in
    between do not break the streak, and a different kind restarts it. A
    failure is retried while that count is below the rule's ``max_attempts``;
    the next one escalates.
    """

    def __init__(
        self,
        rules: Iterable[FeedbackRule] = (),
        *,
        escalation_action: EscalationAction = EscalationAction.ESCALATE,
    ) -> None:
        self.rules = list(rules)
        self.escalation_action = EscalationAction(escalation_action)
        self._defaults = {rule.failure_kind: rule for rule in DEFAULT_RULES}

    def rule_for(self, stage: str, kind: FailureKind) -> FeedbackRule:
        for rule in self.rules:
            if rule.stage == stage and rule.failure_kind == kind:
                return rule
        for rule in self.rules:
            if rule.stage == "*" and rule.failure_kind == kind:
                return rule
        default = self._defaults[kind]
        return FeedbackRule(
            failure_kind=kind,
            max_attempts=default.max_attempts,
            target=default.target,
            escalation_action=self.escalation_action,
            stage=stage,
        )

    @staticmethod
    def _streak_kind(run: RunState, stage: str, current: StageResult) -> str | None:
        recorded = run.attempt_kinds.get(stage)
        if recorded is not None:
            return recorded
        # Runs saved before kinds were recorded: last failure of the stage.
        for result in reversed(run.results):
            if result is current or result.stage != stage:
                continue
            if result.status is StageStatus.FAILURE:
                return (result.failure_kind or FailureKind.UNKNOWN).value
        return None

    def _consecutive_attempts(self, run: RunState, result: StageResult, kind: FailureKind) -> int:
        streak_kind = self._streak_kind(run, result.stage, result)
        if streak_kind is not None and streak_kind != kind.value:
            return 0
        return run.attempts_by_stage.get(result.stage, 0)

    def decide(self, result: StageResult, run: RunState) -> FeedbackDecision:
        kind = result.failure_kind or FailureKind.UNKNOWN
        rule = self.rule_for(result.stage, kind)
        attempts = self._consecutive_attempts(run, result, kind)
        halt = (
            FeedbackOutcome.ABORT
            if rule.escalation_action is EscalationAction.ABORT
            else FeedbackOutcome.ESCALATE
        )

        affected = set(result.affected_stages)
        if kind is FailureKind.LAYER_BOUNDARY and len(affected) > 1:
            return FeedbackDecision(
                outcome=halt,
                stage=result.stage,
                failure_kind=kind,
                attempts=attempts,
                max_attempts=rule.max_attempts,
                target=rule.target,
                reason=(
                    "cross-stage inconsistency between "
                    + ", ".join(sorted(affected))
                    + " cannot be fixed by retrying one stage"
                ),
            )

        if attempts >= rule.max_attempts:
            return FeedbackDecision(
                outcome=halt,
                stage=result.stage,
                failure_kind=kind,
                attempts=attempts,
                max_attempts=rule.max_attempts,
                target=rule.target,
                reason=f"{kind.value} failure budget of {rule.max_attempts} exhausted",
            )

        target = rule.target or result.stage
        target_group = run.plan.group_of(target)
        current_group = run.plan.group_of(result.stage)
        if target == result.stage:
            outcome = FeedbackOutcome.RETRY
        elif target_group is None:
            outcome = FeedbackOutcome.REMEDIATE
        elif current_group is not None and target_group < current_group:
            outcome = FeedbackOutcome.REDIRECT
        else:
            outcome = FeedbackOutcome.RETRY
        return FeedbackDecision(
            outcome=outcome,
            stage=result.stage,
            failure_kind=kind,
            attempts=attempts + 1,
            max_attempts=rule.max_attempts,
            target=target,
            reason=f"{kind.value} failure {attempts + 1} of {rule.max_attempts}",
        )

    def apply(self, decisions: list[FeedbackDecision], run: RunState) -> list[FeedbackDecision]:
        """Apply the decisions for one group's failures to ``run``.

        A single halting decision halts the run. Otherwise counters are bumped
        and the run re-enters at the earliest redirect target, or retries only
        the failed stages of the current group. Returns the remediation
        decisions the caller must run before the retry.
        """

        halting = [decision for decision in decisions if decision.halts]
        if halting:
            first = halting[0]
            self.halt(run, first)
            return []

        for decision in decisions:
            run.attempts_by_stage[decision.stage] = decision.attempts
            run.attempt_kinds[decision.stage] = decision.failure_kind.value
            logger.info(
                "Run %s: %s on %s (%s -> %s)",
                run.run_id,
                decision.outcome.value,
                decision.stage,
                decision.reason,
                decision.target,
            )

        redirects = [
            decision for decision in decisions if decision.outcome is FeedbackOutcome.REDIRECT
        ]
        if redirects:
            run.group_index = min(
                group
                for decision in redirects
                if (group := run.plan.group_of(decision.target)) is not None
            )
            run.retry_stages = []
        else:
            retry: list[str] = []
            for decision in decisions:
                retry.append(decision.stage)
                same_group = run.plan.group_of(decision.target) == run.group_index
                if decision.target != decision.stage and same_group:
                    retry.append(decision.target)
            run.retry_stages = list(dict.fromkeys(retry))
        return [
            decision for decision in decisions if decision.outcome is FeedbackOutcome.REMEDIATE
        ]

    def halt(self, run: RunState, decision: FeedbackDecision) -> None:
        run.status = (
            RunStatus.ABORTED if decision.outcome is FeedbackOutcome.ABORT else RunStatus.ESCALATED
        )
        run.retry_stages = []
        run.escalation = {
            "stage": decision.stage,
            "failure_kind": decision.failure_kind.value,
            "reason": decision.reason,
            "attempts": decision.attempts,
            "max_attempts": decision.max_attempts,
            "action": decision.outcome.value,
            "at": utcnow_iso(),
            "results": [result.to_dict() for result in run.results],
        }
        logger.warning(
            "Run %s %s at stage %s: %s",
            run.run_id,
            run.status.value,
            decision.stage,
            decision.reason,
        )

    def resolve(self, failures: list[StageResult], run: RunState) -> list[FeedbackDecision]:
        """Decide and apply in one step; returns every decision taken."""

        decisions = [self.decide(result, run) for result in failures]
        self.apply(decisions, run)
        return decisions
