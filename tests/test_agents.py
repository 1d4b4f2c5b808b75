import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from stageflow.agents import (
    AgentRegistry,
    BackendStageAgent,
    CallableAgent,
    StageInput,
    coerce_result,
    interpret_output,
)
from stageflow.backends import AgentBackend, BackendExecutionError, BackendTimeoutError
from stageflow.errors import StageflowError
from stageflow.models import FailureKind, StageResult, StageStatus, Task, TaskType


class ScriptedBackend(AgentBackend):
    def __init__(self, output: str = "", error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        self.calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "context": context}
        )
        if self.error is not None:
            raise self.error
        for line in self.output.splitlines(keepends=True):
            yield line


def _input(**overrides: Any) -> StageInput:
    values: dict[str, Any] = {
        "run_id": "run-1",
        "task": Task(id="T-1", title="Fix crash on save", description="Stack trace attached."),
        "task_type": TaskType.BUG_FIX,
        "stage": "implement",
        "role": "coder",
    }
    values.update(overrides)
    return StageInput(**values)


def test_coerce_result_accepts_mappings_and_none() -> None:
    assert coerce_result("plan", None).status is StageStatus.SUCCESS

    failure = coerce_result("test", {"status": "FAILURE", "diagnostics": "1 failed"})
    assert failure.failure_kind is FailureKind.UNKNOWN
    assert failure.diagnostics == ["1 failed"]

    typed = coerce_result("lint", {"status": "failure", "kind": "lint", "affected_stages": ["a"]})
    assert typed.failure_kind is FailureKind.LINT
    assert typed.affected_stages == ("a",)

    success = coerce_result("plan", {"status": "success", "kind": "lint"})
    assert success.failure_kind is None

    with pytest.raises(TypeError):
        coerce_result("plan", ["not", "a", "result"])


def test_callable_agent_supports_sync_and_async_functions() -> None:
    async def async_func(stage_input: StageInput) -> StageResult:
        return StageResult.needs_review(stage_input.stage, "check naming")

    sync_result = asyncio.run(CallableAgent(lambda stage_input: None).execute(_input()))
    async_result = asyncio.run(CallableAgent(async_func).execute(_input(stage="review")))

    assert sync_result.status is StageStatus.SUCCESS
    assert async_result.status is StageStatus.NEEDS_REVIEW
    assert async_result.stage == "review"


def test_agent_registry_falls_back_to_default() -> None:
    coder = CallableAgent(lambda stage_input: None)
    fallback = CallableAgent(lambda stage_input: None)
    registry = AgentRegistry({"coder": coder})

    with pytest.raises(StageflowError, match="No agent registered for role 'critic'"):
        registry.for_role("critic")

    registry.register("tester", fallback)
    registry.default = fallback

    assert registry.for_role("coder") is coder
    assert registry.for_role("critic") is fallback
    assert registry.roles() == ["coder", "tester"]


def test_stage_input_context_omits_empty_fields() -> None:
    context = _input().to_context()

    assert context["stage"] == "implement"
    assert context["task"]["title"] == "Fix crash on save"
    assert "amendment" not in context
    assert "registry" not in context

    context = _input(amendment="rename x", registry={"modules": {"core": {}}}).to_context()
    assert context["amendment"] == "rename x"
    assert context["registry"] == {"modules": {"core": {}}}


def test_interpret_output_prefers_status_line() -> None:
    text = (
        "Ran the suite.\n"
        "tests failed earlier but fixed\n"
        '{"status": "success", "artifacts": {"files": 2}}'
    )

    result = interpret_output("test", text)

    assert result.status is StageStatus.SUCCESS
    assert result.artifacts["files"] == 2
    assert result.artifacts["output"].startswith("Ran the suite.")


@pytest.mark.parametrize(
    ("text", "kind"),
    [
        ("error: Compilation failed in module core", FailureKind.COMPILE),
        ("3 tests failed", FailureKind.TEST),
        ("Forbidden import from ui into domain", FailureKind.LAYER_BOUNDARY),
        ("Lint errors: 4", FailureKind.LINT),
        ("request timed out", FailureKind.TIMEOUT),
    ],
)
def test_interpret_output_phrase_tables(text: str, kind: FailureKind) -> None:
    result = interpret_output("implement", text)

    assert result.status is StageStatus.FAILURE
    assert result.failure_kind is kind


def test_interpret_output_review_and_empty() -> None:
    assert interpret_output("review", "One BLOCKER found").status is StageStatus.NEEDS_REVIEW
    assert interpret_output("plan", "All good").status is StageStatus.SUCCESS

    empty = interpret_output("plan", "   ")
    assert empty.failure_kind is FailureKind.UNKNOWN


def test_backend_agent_builds_prompts() -> None:
    backend = ScriptedBackend('done\n{"status": "success"}')
    agent = BackendStageAgent(backend, "coder", model="gpt-5-codex")

    result = asyncio.run(
        agent.execute(_input(attempt=2, feedback=["[implement] E: missing import"]))
    )

    assert result.status is StageStatus.SUCCESS
    call = backend.calls[0]
    assert call["system_prompt"].startswith("You are the Coder/Engineer specialist.")
    assert '"status"' in call["system_prompt"]
    assert "Stage: implement (attempt 2)" in call["user_prompt"]
    assert "- [implement] E: missing import" in call["user_prompt"]
    assert call["context"]["model"] == "gpt-5-codex"


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (BackendTimeoutError("too slow"), FailureKind.TIMEOUT),
        (BackendExecutionError("exit 1"), FailureKind.UNKNOWN),
    ],
)
def test_backend_agent_maps_backend_errors(error: Exception, kind: FailureKind) -> None:
    agent = BackendStageAgent(ScriptedBackend(error=error), "tester")

    result = asyncio.run(agent.execute(_input(stage="test", role="tester")))

    assert result.status is StageStatus.FAILURE
    assert result.failure_kind is kind
