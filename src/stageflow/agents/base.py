from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from stageflow.errors import StageflowError
from stageflow.models import FailureKind, StageResult, StageStatus, Task, TaskType


@dataclass(slots=True)
class StageInput:
    """Everything a stage agent is told about one invocation."""

    run_id: str
    task: Task
    task_type: TaskType
    stage: str
    role: str
    attempt: int = 1
    hints: list[dict[str, Any]] = field(default_factory=list)
    amendment: str | None = None
    feedback: list[str] = field(default_factory=list)
    registry: dict[str, dict[str, Any]] = field(default_factory=dict)
    remediation_for: str | None = None

    def to_context(self) -> dict[str, Any]:
        context: dict[str, Any] = {
            "run_id": self.run_id,
            "task": self.task.to_dict(),
            "task_type": self.task_type.value,
            "stage": self.stage,
            "role": self.role,
            "attempt": self.attempt,
        }
        if self.hints:
            context["hints"] = list(self.hints)
        if self.amendment:
            context["amendment"] = self.amendment
        if self.feedback:
            context["feedback"] = list(self.feedback)
        if self.remediation_for:
            context["remediation_for"] = self.remediation_for
        if any(self.registry.values()):
            context["registry"] = self.registry
        return context


class StageAgent(ABC):
    @abstractmethod
    async def execute(self, stage_input: StageInput) -> StageResult:
        """Run one stage invocation and report its outcome."""


def coerce_result(stage: str, value: Any) -> StageResult:
    """Accept a ``StageResult``, a status mapping, or ``None`` (plain success)."""

    if isinstance(value, StageResult):
        return value
    if value is None:
        return StageResult.success(stage)
    if not isinstance(value, Mapping):
        raise TypeError(f"Stage '{stage}' returned unsupported result {type(value).__name__}")
    status = StageStatus(str(value.get("status", StageStatus.SUCCESS.value)).lower())
    kind_value = value.get("kind") or value.get("failure_kind")
    kind = FailureKind(str(kind_value).lower()) if kind_value else None
    if status is StageStatus.FAILURE and kind is None:
        kind = FailureKind.UNKNOWN
    diagnostics = value.get("diagnostics") or []
    if isinstance(diagnostics, str):
        diagnostics = [diagnostics]
    return StageResult(
        stage=stage,
        status=status,
        failure_kind=kind if status is StageStatus.FAILURE else None,
        artifacts=dict(value.get("artifacts") or {}),
        diagnostics=[str(item) for item in diagnostics],
        affected_stages=tuple(value.get("affected_stages") or ()),
    )


StageFunction = Callable[[StageInput], "StageResult | Mapping[str, Any] | None | Awaitable[Any]"]


class CallableAgent(StageAgent):
    """Adapts a plain sync or async function into a stage agent."""

    def __init__(self, func: StageFunction) -> None:
        self.func = func

    async def execute(self, stage_input: StageInput) -> StageResult:
        value = self.func(stage_input)
        if inspect.isawaitable(value):
            value = await value
        return coerce_result(stage_input.stage, value)


class AgentRegistry:
    """Resolves a stage's role to the agent that performs it."""

    def __init__(
        self,
        agents: Mapping[str, StageAgent] | None = None,
        *,
        default: StageAgent | None = None,
    ) -> None:
        self._agents: dict[str, StageAgent] = dict(agents or {})
        self.default = default

    def register(self, role: str, agent: StageAgent) -> None:
        self._agents[role] = agent

    def roles(self) -> list[str]:
        return sorted(self._agents)

    def for_role(self, role: str) -> StageAgent:
        agent = self._agents.get(role, self.default)
        if agent is None:
            raise StageflowError(f"No agent registered for role '{role}'.")
        return agent
