import asyncio

from stageflow.agents import AgentRegistry, CallableAgent, StageInput
from stageflow.errors import StageExecutionFailure
from stageflow.executor import (
    AutoApproveHandler,
    ReviewDecision,
    ScriptedReviewHandler,
    StageExecutor,
)
from stageflow.models import (
    FailureKind,
    ReviewAction,
    RunState,
    StagePlan,
    StageResult,
    StageStatus,
    Task,
    TaskType,
)
from stageflow.router import STAGES_BY_NAME

TASK = Task(id="T-1", title="Add export button")


def _input(stage: str, role: str, attempt: int = 1) -> StageInput:
    return StageInput(
        run_id="run-1",
        task=TASK,
        task_type=TaskType.FEATURE,
        stage=stage,
        role=role,
        attempt=attempt,
    )


def test_invoke_records_stage_and_attempt() -> None:
    agents = AgentRegistry({"coder": CallableAgent(lambda stage_input: {"artifacts": {"ok": 1}})})
    executor = StageExecutor(agents, STAGES_BY_NAME)

    result = asyncio.run(executor.invoke(_input("implement", "coder", attempt=3)))

    assert result.status is StageStatus.SUCCESS
    assert result.stage == "implement"
    assert result.attempt == 3
    assert result.artifacts == {"ok": 1}
    assert executor.role_for("implement") == "coder"
    assert executor.role_for("security") == "security"


def test_agent_exception_becomes_unknown_failure() -> None:
    def explode(stage_input: StageInput) -> None:
        raise ValueError("bad input")

    executor = StageExecutor(AgentRegistry({"coder": CallableAgent(explode)}), STAGES_BY_NAME)

    result = asyncio.run(executor.invoke(_input("implement", "coder")))

    assert result.status is StageStatus.FAILURE
    assert result.failure_kind is FailureKind.UNKNOWN
    assert "ValueError: bad input" in result.diagnostics[0]


def test_raised_stage_failure_keeps_its_kind() -> None:
    def failing(stage_input: StageInput) -> None:
        raise StageExecutionFailure(
            stage_input.stage, FailureKind.COMPILE, "cannot find symbol Foo"
        )

    executor = StageExecutor(AgentRegistry({"coder": CallableAgent(failing)}), STAGES_BY_NAME)

    result = asyncio.run(executor.invoke(_input("implement", "coder")))

    assert result.failure_kind is FailureKind.COMPILE
    assert result.diagnostics == ["cannot find symbol Foo"]


def test_missing_agent_becomes_unknown_failure() -> None:
    executor = StageExecutor(AgentRegistry(), STAGES_BY_NAME)

    result = asyncio.run(executor.invoke(_input("implement", "coder")))

    assert result.failure_kind is FailureKind.UNKNOWN
    assert "No agent registered" in result.diagnostics[0]


def test_stage_timeout_becomes_timeout_failure() -> None:
    async def slow(stage_input: StageInput) -> None:
        await asyncio.sleep(1.0)

    executor = StageExecutor(
        AgentRegistry({"tester": CallableAgent(slow)}),
        STAGES_BY_NAME,
        timeout_seconds=0.05,
    )

    result = asyncio.run(executor.invoke(_input("test", "tester")))

    assert result.status is StageStatus.FAILURE
    assert result.failure_kind is FailureKind.TIMEOUT


def test_group_members_run_concurrently() -> None:
    async def scenario() -> list[StageResult]:
        tester_started = asyncio.Event()
        linter_started = asyncio.Event()

        async def tester(stage_input: StageInput) -> None:
            tester_started.set()
            await linter_started.wait()

        async def linter(stage_input: StageInput) -> None:
            linter_started.set()
            await tester_started.wait()

        executor = StageExecutor(
            AgentRegistry({"tester": CallableAgent(tester), "linter": CallableAgent(linter)}),
            STAGES_BY_NAME,
        )
        return await asyncio.wait_for(
            executor.run_group([_input("test", "tester"), _input("lint", "linter")]),
            timeout=2.0,
        )

    results = asyncio.run(scenario())

    assert [result.stage for result in results] == ["test", "lint"]
    assert all(result.status is StageStatus.SUCCESS for result in results)


def test_review_modes_gate_different_results() -> None:
    agents = AgentRegistry()
    success = StageResult.success("review")
    needs_review = StageResult.needs_review("review", "blocker")
    failure = StageResult.failure("review", FailureKind.LINT)

    manual = StageExecutor(agents, STAGES_BY_NAME, review_mode="manual")
    always = StageExecutor(agents, STAGES_BY_NAME, review_mode="always")
    auto = StageExecutor(agents, STAGES_BY_NAME, review_mode="auto")

    assert [manual.gated(r) for r in (success, needs_review, failure)] == [False, True, False]
    assert [always.gated(r) for r in (success, needs_review, failure)] == [True, True, False]
    assert [auto.gated(r) for r in (success, needs_review, failure)] == [False, False, False]

    settled = auto.settle_ungated(StageResult.needs_review("review", "blocker"))
    assert settled.status is StageStatus.SUCCESS
    assert settled.review == "approve"
    assert settled.review_note == "auto-approved"


def test_review_handlers() -> None:
    run = RunState(
        run_id="run-1",
        task=TASK,
        plan=StagePlan(task_id="T-1", task_type=TaskType.FEATURE, groups=[("review",)]),
    )
    pending = StageResult.needs_review("review", "blocker")
    scripted = ScriptedReviewHandler({"review": [ReviewDecision(ReviewAction.EDIT, "rename x")]})

    first = asyncio.run(scripted.decide(run, pending))
    second = asyncio.run(scripted.decide(run, pending))
    auto = asyncio.run(AutoApproveHandler().decide(run, pending))

    assert first == ReviewDecision(ReviewAction.EDIT, "rename x")
    assert second is None
    assert auto.action is ReviewAction.APPROVE
    assert ReviewDecision.from_dict(first.to_dict()) == first
