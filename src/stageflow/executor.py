"""Stage invocation, concurrent group fan-out and review gates."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from stageflow.agents.base import AgentRegistry, StageInput
from stageflow.errors import StageExecutionFailure
from stageflow.models import (
    FailureKind,
    ReviewAction,
    RunState,
    StageDefinition,
    StageResult,
    StageStatus,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ReviewDecision:
    action: ReviewAction
    note: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action.value, "note": self.note}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ReviewDecision:
        return cls(action=ReviewAction(payload["action"]), note=str(payload.get("note") or ""))


class ReviewHandler(ABC):
    @abstractmethod
    async def decide(self, run: RunState, result: StageResult) -> ReviewDecision | None:
        """Return a decision, or None to suspend the run until one is recorded."""


class DeferredReviewHandler(ReviewHandler):
    """Always defers to a decision recorded later through ``record_review``."""

    async def decide(self, run: RunState, result: StageResult) -> ReviewDecision | None:
        return None


class AutoApproveHandler(ReviewHandler):
    async def decide(self, run: RunState, result: StageResult) -> ReviewDecision | None:
        return ReviewDecision(ReviewAction.APPROVE, "auto-approved")


class ScriptedReviewHandler(ReviewHandler):
    """Replays queued decisions per stage, then defers."""

    def __init__(self, decisions: Mapping[str, Iterable[ReviewDecision]]) -> None:
        self._queues = {stage: list(items) for stage, items in decisions.items()}

    async def decide(self, run: RunState, result: StageResult) -> ReviewDecision | None:
        queue = self._queues.get(result.stage)
        if not queue:
            return None
        return queue.pop(0)


class StageExecutor:
    def __init__(
        self,
        agents: AgentRegistry,
        stages: Mapping[str, StageDefinition],
        *,
        review_mode: str = "manual",
        timeout_seconds: float = 0.0,
    ) -> None:
        self.agents = agents
        self.stages = dict(stages)
        self.review_mode = review_mode
        self.timeout_seconds = timeout_seconds

    def role_for(self, stage_or_role: str) -> str:
        definition = self.stages.get(stage_or_role)
        return definition.capability_ref if definition else stage_or_role

    async def invoke(self, stage_input: StageInput) -> StageResult:
        """Run one agent call; every exception becomes a failure result."""

        stage = stage_input.stage
        try:
            agent = self.agents.for_role(stage_input.role)
            call = agent.execute(stage_input)
            if self.timeout_seconds > 0:
                result = await asyncio.wait_for(call, timeout=self.timeout_seconds)
            else:
                result = await call
        except StageExecutionFailure as exc:
            result = StageResult.failure(stage, FailureKind(exc.kind), str(exc))
        except TimeoutError:
            result = StageResult.failure(
                stage,
                FailureKind.TIMEOUT,
                f"stage timed out after {self.timeout_seconds:.1f}s",
            )
        except Exception as exc:
            logger.warning("Stage %s raised %s: %s", stage, type(exc).__name__, exc)
            result = StageResult.failure(stage, FailureKind.UNKNOWN, f"{type(exc).__name__}: {exc}")
        result.stage = stage
        result.attempt = stage_input.attempt
        if result.status is StageStatus.FAILURE and result.failure_kind is None:
            result.failure_kind = FailureKind.UNKNOWN
        return result

    async def run_group(self, inputs: list[StageInput]) -> list[StageResult]:
        if not inputs:
            return []
        if len(inputs) == 1:
            return [await self.invoke(inputs[0])]
        return list(await asyncio.gather(*(self.invoke(stage_input) for stage_input in inputs)))

    def gated(self, result: StageResult) -> bool:
        """Whether ``result`` must pass a review decision before the plan advances."""

        if result.status is StageStatus.FAILURE:
            return False
        if self.review_mode == "always":
            return True
        if self.review_mode == "auto":
            return False
        return result.status is StageStatus.NEEDS_REVIEW

    def settle_ungated(self, result: StageResult) -> StageResult:
        """In ``auto`` mode a review request is approved on the spot."""

        if result.status is StageStatus.NEEDS_REVIEW and self.review_mode == "auto":
            result.status = StageStatus.SUCCESS
            result.review = ReviewAction.APPROVE.value
            result.review_note = "auto-approved"
        return result
