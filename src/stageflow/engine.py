"""Run orchestration: intake, classification, planning, execution and batches."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from stageflow.agents.base import AgentRegistry, StageInput
from stageflow.classifier import Classification, Classifier
from stageflow.config import StageflowConfig
from stageflow.errors import ClassificationAmbiguous, RunStateError, StageflowError
from stageflow.executor import (
    DeferredReviewHandler,
    ReviewDecision,
    ReviewHandler,
    StageExecutor,
)
from stageflow.feedback import FeedbackResolver
from stageflow.knowledge import KnowledgeStore
from stageflow.memory_writer import MemoryWriter
from stageflow.models import (
    EscalationAction,
    FailureKind,
    ReviewAction,
    RunState,
    RunStatus,
    StagePlan,
    StageResult,
    StageStatus,
    Task,
    TaskType,
    utcnow_iso,
)
from stageflow.registry import ContextRegistry
from stageflow.router import Router, split_batch
from stageflow.scheduler import TaskGraph, infer_dependencies
from stageflow.state import RunStore, StateStore

logger = logging.getLogger(__name__)

FEEDBACK_LINES = 10


@dataclass(slots=True)
class BatchReport:
    batch_id: str
    waves: list[list[str]]
    runs: dict[str, str]
    statuses: dict[str, str] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return all(status == RunStatus.COMPLETED.value for status in self.statuses.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "waves": [list(wave) for wave in self.waves],
            "runs": dict(self.runs),
            "statuses": dict(self.statuses),
            "completed": self.completed,
        }


class Orchestrator:
    def __init__(
        self,
        config: StageflowConfig,
        *,
        state: StateStore,
        knowledge: KnowledgeStore,
        agents: AgentRegistry,
        registry: ContextRegistry | None = None,
        classifier: Classifier | None = None,
        review_handler: ReviewHandler | None = None,
    ) -> None:
        self.config = config
        self.state = state
        self.runs = RunStore(state)
        self.knowledge = knowledge
        self.registry = registry or ContextRegistry(state)
        self.classifier = classifier or Classifier()
        self.router = Router(config, knowledge=knowledge, registry=self.registry)
        self.executor = StageExecutor(
            agents,
            self.router.stages,
            review_mode=config.project.review_mode,
            timeout_seconds=config.execution.stage_timeout_seconds,
        )
        self.feedback = FeedbackResolver(
            config.feedback.build_rules(),
            escalation_action=EscalationAction(config.feedback.escalation_action),
        )
        self.memory = MemoryWriter(knowledge, self.registry)
        self.review_handler = review_handler or DeferredReviewHandler()

    @classmethod
    def open(
        cls,
        root: Path,
        config: StageflowConfig,
        *,
        agents: AgentRegistry,
        review_handler: ReviewHandler | None = None,
    ) -> Orchestrator:
        state = StateStore(root)
        knowledge = KnowledgeStore(
            root,
            half_life_days=config.knowledge.half_life_days,
            default_limit=config.knowledge.default_limit,
        )
        return cls(
            config,
            state=state,
            knowledge=knowledge,
            agents=agents,
            review_handler=review_handler,
        )

    # ------------------------------------------------------------ intake

    def intake(self, payload: Task | Mapping[str, Any]) -> Task:
        if isinstance(payload, Task):
            return payload
        title = str(payload.get("title") or "").strip()
        if not title:
            raise StageflowError("Task intake requires a title.")
        type_value = payload.get("type_override") or payload.get("type")
        try:
            type_override = TaskType(str(type_value).strip().lower()) if type_value else None
        except ValueError as exc:
            raise StageflowError(f"Unknown task type: {type_value!r}") from exc
        overrides = {
            str(stage): str(value)
            for stage, value in (payload.get("stage_overrides") or {}).items()
        }
        for stage in payload.get("skip") or ():
            overrides[str(stage)] = "skip"
        for stage in payload.get("force") or ():
            overrides[str(stage)] = "run"
        return Task(
            id=str(payload.get("id") or f"task-{uuid4().hex[:8]}"),
            title=title,
            description=str(payload.get("description") or ""),
            links=tuple(str(link) for link in payload.get("links") or ()),
            type_override=type_override,
            stage_overrides=overrides,
            depends_on=tuple(str(dep) for dep in payload.get("depends_on") or ()),
        )

    def classify(
        self,
        task: Task,
        answer: str | None = None,
        *,
        exclude: Iterable[TaskType] = (),
    ) -> Classification:
        result = self.classifier.classify(task, exclude=exclude)
        if result.ambiguous:
            if not answer:
                raise ClassificationAmbiguous(result.candidates)
            result = self.classifier.disambiguate(result, answer)
        logger.info(
            "Classified %s as %s (confidence %.2f)",
            task.id,
            result.task_type.value if result.task_type else "?",
            result.confidence,
        )
        return result

    def build_plan(self, task: Task, classification: Classification) -> StagePlan:
        return self.router.build_plan(task, classification.require())

    def _new_run(
        self,
        task: Task,
        classification: Classification,
        plan: StagePlan,
        *,
        batch_id: str | None = None,
    ) -> RunState:
        return RunState(
            run_id=f"run-{uuid4().hex[:10]}",
            task=task,
            plan=plan,
            classification=classification.to_dict(),
            batch_id=batch_id,
        )

    # ------------------------------------------------------------- runs

    async def run_task(
        self,
        task_or_payload: Task | Mapping[str, Any],
        answer: str | None = None,
    ) -> RunState:
        task = self.intake(task_or_payload)
        classification = self.classify(task, answer)
        if classification.task_type is TaskType.SPRINT_BATCH:
            raise StageflowError(
                f"Task {task.id} is a sprint batch; submit it or run its tasks as a batch."
            )
        return await self._start(task, classification)

    async def submit(
        self,
        task_or_payload: Task | Mapping[str, Any],
        answer: str | None = None,
    ) -> RunState | BatchReport:
        """Run a single task, or fan a sprint task out into a batch of its list items."""

        task = self.intake(task_or_payload)
        classification = self.classify(task, answer)
        if classification.task_type is TaskType.SPRINT_BATCH:
            children = split_batch(task)
            if not children:
                raise StageflowError(f"Sprint task {task.id} does not list any child tasks.")
            return await self.run_batch(children)
        return await self._start(task, classification)

    async def _start(self, task: Task, classification: Classification) -> RunState:
        plan = self.build_plan(task, classification)
        run = self._new_run(task, classification, plan)
        self.runs.save(run)
        return await self._drive(run)

    @staticmethod
    def _runnable(run: RunState) -> bool:
        if run.status is RunStatus.AWAITING_REVIEW:
            return all(stage in run.review_decisions for stage in run.pending_reviews)
        return not run.status.settled

    async def _drive(self, run: RunState) -> RunState:
        run.status = RunStatus.RUNNING
        self.runs.save(run)
        while run.status is RunStatus.RUNNING:
            if run.current_group is None:
                run.status = RunStatus.COMPLETED
                break
            await self._execute_group(run)
            self.runs.save(run)

        if run.status in {RunStatus.COMPLETED, RunStatus.ESCALATED, RunStatus.ABORTED}:
            self.memory.record_run(run)
        self.runs.save(run)
        logger.info("Run %s for %s is %s", run.run_id, run.task.id, run.status.value)
        return run

    def _feedback_for(self, run: RunState, stage: str) -> list[str]:
        lines: list[str] = []
        for result in reversed(run.results):
            if result.stage == stage and result.status is StageStatus.SUCCESS:
                break
            if result.status is StageStatus.FAILURE:
                lines.extend(f"[{result.stage}] {line}" for line in result.diagnostics)
        return lines[:FEEDBACK_LINES]

    def _stage_input(
        self,
        run: RunState,
        stage: str,
        *,
        remediation_for: str | None = None,
    ) -> StageInput:
        previous = [result.attempt for result in run.results if result.stage == stage]
        return StageInput(
            run_id=run.run_id,
            task=run.task,
            task_type=run.plan.task_type,
            stage=stage,
            role=self.executor.role_for(stage),
            attempt=max(previous, default=0) + 1,
            hints=list(run.plan.hints),
            amendment=run.amendments.get(stage),
            feedback=self._feedback_for(run, stage),
            registry=self.registry.snapshot(),
            remediation_for=remediation_for,
        )

    def _apply_review(
        self,
        run: RunState,
        pending: StageResult,
        decision: ReviewDecision,
    ) -> StageResult | None:
        """Turn a recorded decision into a settled result, or None to re-invoke."""

        stage = pending.stage
        logger.info("Run %s: review %s on %s", run.run_id, decision.action.value, stage)
        if decision.action is ReviewAction.EDIT:
            run.amendments[stage] = decision.note
            return None
        if decision.action is ReviewAction.APPROVE:
            settled = StageResult(
                stage=stage,
                status=StageStatus.SUCCESS,
                artifacts=dict(pending.artifacts),
                diagnostics=list(pending.diagnostics),
                attempt=pending.attempt,
            )
        else:
            run.amendments.pop(stage, None)
            reason = "rejected by reviewer"
            settled = StageResult.failure(
                stage,
                FailureKind.UNKNOWN,
                f"{reason}: {decision.note}" if decision.note else reason,
            )
            settled.attempt = pending.attempt
        settled.review = decision.action.value
        settled.review_note = decision.note or None
        run.results.append(settled)
        return settled

    async def _execute_group(self, run: RunState) -> None:
        group = run.current_group
        if group is None:
            return
        group_index = run.group_index
        if run.retry_stages:
            targets = [stage for stage in group if stage in run.retry_stages]
        else:
            targets = list(group)
        run.retry_stages = []
        logger.info(
            "Run %s: group %d/%d running %s",
            run.run_id,
            group_index + 1,
            len(run.plan.groups),
            ", ".join(targets),
        )

        settled: dict[str, StageResult] = {}
        queue = targets
        while queue:
            to_invoke: list[str] = []
            for stage in queue:
                if stage not in run.pending_reviews:
                    to_invoke.append(stage)
                    continue
                raw_decision = run.review_decisions.pop(stage, None)
                if raw_decision is None:
                    continue
                pending = run.pending_reviews.pop(stage)
                outcome = self._apply_review(run, pending, ReviewDecision.from_dict(raw_decision))
                if outcome is None:
                    to_invoke.append(stage)
                else:
                    settled[stage] = outcome

            results = await self.executor.run_group(
                [self._stage_input(run, stage) for stage in to_invoke]
            )
            queue = []
            for result in results:
                run.results.append(result)
                if not self.executor.gated(result):
                    settled[result.stage] = self.executor.settle_ungated(result)
                    continue
                run.pending_reviews[result.stage] = result
                decision = await self.review_handler.decide(run, result)
                if decision is not None:
                    run.review_decisions[result.stage] = decision.to_dict()
                    queue.append(result.stage)

        for stage, result in settled.items():
            if result.status is StageStatus.SUCCESS:
                run.attempts_by_stage.pop(stage, None)
                run.attempt_kinds.pop(stage, None)
                run.amendments.pop(stage, None)
                self.memory.apply_registry(result)

        failures = [result for result in settled.values() if result.status is StageStatus.FAILURE]
        waiting = [stage for stage in group if stage in run.pending_reviews]
        if failures:
            decisions = [self.feedback.decide(result, run) for result in failures]
            remediations = self.feedback.apply(decisions, run)
            if run.status is not RunStatus.RUNNING:
                return
            if run.group_index != group_index:
                run.pending_reviews.clear()
                run.review_decisions.clear()
            else:
                run.retry_stages = list(dict.fromkeys([*run.retry_stages, *waiting]))
            for decision in remediations:
                await self._remediate(run, decision.target, decision.stage)
            return

        if waiting:
            run.status = RunStatus.AWAITING_REVIEW
            run.retry_stages = waiting
            logger.info("Run %s awaiting review of %s", run.run_id, ", ".join(waiting))
            return
        run.group_index += 1

    async def _remediate(self, run: RunState, target: str, failed_stage: str) -> None:
        """Invoke an out-of-plan stage or role once before retrying ``failed_stage``."""

        stage_input = self._stage_input(run, target, remediation_for=failed_stage)
        result = await self.executor.invoke(stage_input)
        result.artifacts.setdefault("remediation_for", failed_stage)
        run.results.append(result)
        if result.status is StageStatus.SUCCESS:
            self.memory.apply_registry(result)
        else:
            logger.warning(
                "Run %s: remediation by %s for %s did not succeed (%s)",
                run.run_id,
                target,
                failed_stage,
                result.status.value,
            )

    # ------------------------------------------------------ human input

    async def resume(self, run_id: str) -> RunState:
        run = self.runs.get(run_id)
        if run.status is RunStatus.AWAITING_REVIEW:
            missing = [stage for stage in run.pending_reviews if stage not in run.review_decisions]
            if missing:
                raise RunStateError(
                    f"Run {run_id} is still awaiting review of: {', '.join(sorted(missing))}"
                )
        elif run.status is RunStatus.ESCALATED:
            stage = (run.escalation or {}).get("stage")
            if stage:
                run.attempts_by_stage.pop(stage, None)
                run.attempt_kinds.pop(stage, None)
                group = run.current_group or ()
                run.retry_stages = [stage] if stage in group else []
            run.escalation = None
        elif run.status not in {RunStatus.PENDING, RunStatus.RUNNING}:
            raise RunStateError(f"Run {run_id} is {run.status.value}; nothing to resume.")
        logger.info("Resuming run %s", run_id)
        return await self._drive(run)

    def abort(self, run_id: str) -> RunState:
        run = self.runs.get(run_id)
        if run.status in {RunStatus.COMPLETED, RunStatus.ABORTED}:
            raise RunStateError(f"Run {run_id} is already {run.status.value}.")
        run.status = RunStatus.ABORTED
        run.retry_stages = []
        if run.escalation is None:
            run.escalation = {
                "stage": None,
                "reason": "aborted by operator",
                "action": "abort",
                "at": utcnow_iso(),
                "results": [result.to_dict() for result in run.results],
            }
        self.memory.record_run(run)
        self.runs.save(run)
        logger.info("Aborted run %s", run_id)
        return run

    def record_review(
        self,
        run_id: str,
        stage: str,
        action: ReviewAction | str,
        note: str = "",
    ) -> RunState:
        run = self.runs.get(run_id)
        if stage not in run.pending_reviews:
            raise RunStateError(f"Stage '{stage}' of run {run_id} is not awaiting review.")
        try:
            review_action = ReviewAction(action)
        except ValueError as exc:
            raise RunStateError(f"Unknown review action: {action!r}") from exc
        if review_action is ReviewAction.EDIT and not note.strip():
            raise RunStateError("An edit decision needs a note with the amended input.")
        run.review_decisions[stage] = ReviewDecision(review_action, note.strip()).to_dict()
        self.runs.save(run)
        return run

    # ----------------------------------------------------------- batches

    async def run_batch(
        self,
        payloads: Iterable[Task | Mapping[str, Any]],
        *,
        answers: Mapping[str, str] | None = None,
    ) -> BatchReport:
        """Validate and plan every task up front, then run them wave by wave."""

        tasks = [self.intake(payload) for payload in payloads]
        answers = answers or {}
        classifications = {
            task.id: self.classify(task, answers.get(task.id), exclude=(TaskType.SPRINT_BATCH,))
            for task in tasks
        }
        inferred = infer_dependencies(tasks) if self.config.execution.infer_dependencies else {}
        graph = TaskGraph.build(tasks, extra_dependencies=inferred)
        waves = graph.waves()
        plans = self.router.plan_batch(
            tasks, {task_id: result.require() for task_id, result in classifications.items()}
        )

        batch_id = f"batch-{uuid4().hex[:10]}"
        run_ids: dict[str, str] = {}
        for task in tasks:
            run = self._new_run(task, classifications[task.id], plans[task.id], batch_id=batch_id)
            self.runs.save(run)
            run_ids[task.id] = run.run_id
        self.runs.save_batch(
            batch_id,
            {
                "batch_id": batch_id,
                "tasks": [task.id for task in tasks],
                "edges": sorted([src, dst] for src, dst in graph.edges),
                "waves": waves,
                "runs": run_ids,
                "status": "running",
                "created_at": utcnow_iso(),
            },
        )
        logger.info("Batch %s: %d tasks in %d waves", batch_id, len(tasks), len(waves))
        return await self._drive_batch(batch_id)

    async def resume_batch(self, batch_id: str) -> BatchReport:
        return await self._drive_batch(batch_id)

    async def _drive_batch(self, batch_id: str) -> BatchReport:
        record = self.runs.get_batch(batch_id)
        run_ids: dict[str, str] = dict(record["runs"])
        predecessors: dict[str, set[str]] = {}
        for src, dst in record.get("edges", []):
            predecessors.setdefault(dst, set()).add(src)
        semaphore = asyncio.Semaphore(max(1, int(self.config.execution.max_parallel_tasks)))

        async def _guarded(run: RunState) -> RunState:
            async with semaphore:
                return await self._drive(run)

        for index, wave in enumerate(record["waves"], start=1):
            runnable: list[RunState] = []
            for task_id in wave:
                run = self.runs.get(run_ids[task_id])
                blockers = [
                    dep
                    for dep in sorted(predecessors.get(task_id, ()))
                    if self.runs.get(run_ids[dep]).status is not RunStatus.COMPLETED
                ]
                if blockers:
                    if run.status in {RunStatus.PENDING, RunStatus.BLOCKED}:
                        run.status = RunStatus.BLOCKED
                        run.escalation = {
                            "stage": None,
                            "reason": "waiting on " + ", ".join(blockers),
                            "blocked_by": blockers,
                            "at": utcnow_iso(),
                        }
                        self.runs.save(run)
                    continue
                if run.status is RunStatus.BLOCKED:
                    run.status = RunStatus.PENDING
                    run.escalation = None
                if self._runnable(run):
                    runnable.append(run)
            if runnable:
                logger.info(
                    "Batch %s wave %d: running %s",
                    batch_id,
                    index,
                    ", ".join(run.task.id for run in runnable),
                )
                await asyncio.gather(*(_guarded(run) for run in runnable))
            awaiting = [
                task_id
                for task_id in wave
                if self.runs.get(run_ids[task_id]).status is RunStatus.AWAITING_REVIEW
            ]
            if awaiting:
                logger.info(
                    "Batch %s halted in wave %d awaiting review of %s",
                    batch_id,
                    index,
                    ", ".join(awaiting),
                )
                record["awaiting_review"] = {"wave": index, "tasks": awaiting}
                break
        else:
            record.pop("awaiting_review", None)

        statuses = {
            task_id: self.runs.get(run_id).status.value for task_id, run_id in run_ids.items()
        }
        report = BatchReport(
            batch_id=batch_id,
            waves=[list(wave) for wave in record["waves"]],
            runs=run_ids,
            statuses=statuses,
        )
        record["status"] = "completed" if report.completed else "halted"
        record["updated_at"] = utcnow_iso()
        self.runs.save_batch(batch_id, record)
        return report

    # ------------------------------------------------------------ status

    @staticmethod
    def _run_summary(run: RunState, *, verbose: bool = False) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "run_id": run.run_id,
            "task_id": run.task.id,
            "title": run.task.title,
            "task_type": run.plan.task_type.value,
            "status": run.status.value,
            "groups": [list(group) for group in run.plan.groups],
            "group_index": run.group_index,
            "current_group": list(run.current_group or ()),
            "attempts_by_stage": dict(run.attempts_by_stage),
            "pending_reviews": sorted(run.pending_reviews),
            "batch_id": run.batch_id,
            "updated_at": run.updated_at,
        }
        if run.escalation:
            summary["escalation"] = {
                key: value for key, value in run.escalation.items() if key != "results"
            }
        if verbose:
            summary["plan"] = run.plan.to_dict()
            summary["classification"] = dict(run.classification)
            summary["results"] = [result.to_dict() for result in run.results]
            if run.escalation:
                summary["escalation"] = dict(run.escalation)
        return summary

    def status(self, run_id: str | None = None) -> dict[str, Any]:
        if run_id is not None:
            return self._run_summary(self.runs.get(run_id), verbose=True)
        return {
            "runs": [self._run_summary(run) for run in self.runs.list()],
            "batches": {
                batch_id: {
                    "status": record.get("status"),
                    "waves": record.get("waves", []),
                    "runs": record.get("runs", {}),
                }
                for batch_id, record in sorted(self.runs.list_batches().items())
            },
        }
