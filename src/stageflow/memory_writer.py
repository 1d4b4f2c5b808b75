"""Turns finished runs into knowledge entries and registry updates."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from stageflow.knowledge import KnowledgeStore
from stageflow.models import (
    MemoryCategory,
    MemoryEntry,
    RegistryKind,
    RunState,
    RunStatus,
    StageResult,
    StageStatus,
)
from stageflow.registry import ContextRegistry
from stageflow.resolver import TASK_FLAG_VALUES

logger = logging.getLogger(__name__)


class MemoryWriter:
    def __init__(self, knowledge: KnowledgeStore, registry: ContextRegistry | None = None) -> None:
        self.knowledge = knowledge
        self.registry = registry

    def apply_registry(self, result: StageResult) -> None:
        """Merge ``artifacts["registry"]`` of a successful stage into the registry."""

        if self.registry is None or result.status is not StageStatus.SUCCESS:
            return
        updates = result.artifacts.get("registry")
        if not isinstance(updates, Mapping):
            return
        for kind_name, records in updates.items():
            try:
                kind = RegistryKind(kind_name)
            except ValueError:
                logger.warning("Stage %s wrote unknown registry kind %r", result.stage, kind_name)
                continue
            if isinstance(records, Mapping):
                self.registry.merge(
                    kind,
                    {
                        str(key): dict(record) if isinstance(record, Mapping) else {"value": record}
                        for key, record in records.items()
                    },
                )

    @staticmethod
    def _base_tags(run: RunState) -> list[str]:
        return [f"task_type:{run.plan.task_type.value}", f"run:{run.run_id}"]

    def _decision(self, run: RunState) -> MemoryEntry:
        sequence = " -> ".join("+".join(group) for group in run.plan.groups) or "<empty>"
        body = (
            f"Task {run.task.id} ({run.task.title}) ran as {run.plan.task_type.value}.\n"
            f"Stages: {sequence}\n"
            f"Skipped: {', '.join(run.plan.skipped) or 'none'}\n"
            f"Outcome: {run.status.value}"
        )
        return MemoryEntry(
            category=MemoryCategory.DECISION,
            title=f"Plan for {run.task.title}",
            body=body,
            tags=(*self._base_tags(run), f"status:{run.status.value}"),
        )

    def _pattern(self, run: RunState) -> MemoryEntry:
        tags = self._base_tags(run)
        tags.extend(f"stage:{stage}" for stage in run.plan.stages)
        for stage, value in sorted(run.task.stage_overrides.items()):
            decision = TASK_FLAG_VALUES.get(value.strip().lower())
            if decision is not None:
                tags.append(f"{'enable' if decision.enabled else 'skip'}:{stage}")
        return MemoryEntry(
            category=MemoryCategory.PATTERN,
            title=f"{run.plan.task_type.value} sequence: " + " -> ".join(run.plan.stages),
            body=f"Completed without escalation for task {run.task.id}.",
            tags=tuple(tags),
        )

    def _learnings(self, run: RunState, results: list[StageResult]) -> list[MemoryEntry]:
        entries: list[MemoryEntry] = []
        failures: dict[str, list[StageResult]] = {}
        for result in results:
            if result.status is StageStatus.FAILURE:
                failures.setdefault(result.stage, []).append(result)
            elif result.status is StageStatus.SUCCESS and failures.get(result.stage):
                failed = failures.pop(result.stage)
                kinds = sorted(
                    {item.failure_kind.value if item.failure_kind else "unknown" for item in failed}
                )
                diagnostics = [line for item in failed for line in item.diagnostics][:10]
                entries.append(
                    MemoryEntry(
                        category=MemoryCategory.LEARNING,
                        title=f"{result.stage} recovered after {len(failed)} failure(s)",
                        body="\n".join(diagnostics),
                        author_stage=result.stage,
                        tags=(
                            *self._base_tags(run),
                            f"stage:{result.stage}",
                            *(f"kind:{kind}" for kind in kinds),
                        ),
                    )
                )
        return entries

    def _mistake(self, run: RunState) -> MemoryEntry:
        escalation = run.escalation or {}
        stage = escalation.get("stage") or "run"
        reason = escalation.get("reason") or f"run {run.status.value}"
        diagnostics = [
            line
            for result in run.results
            if result.status is StageStatus.FAILURE
            for line in result.diagnostics
        ][-10:]
        tags = [*self._base_tags(run), f"stage:{stage}", f"status:{run.status.value}"]
        if escalation.get("failure_kind"):
            tags.append(f"kind:{escalation['failure_kind']}")
        return MemoryEntry(
            category=MemoryCategory.MISTAKE,
            title=f"{run.status.value} at {stage}: {reason}",
            body="\n".join(diagnostics),
            author_stage=stage if stage != "run" else None,
            tags=tuple(tags),
        )

    @staticmethod
    def _authored(result: StageResult) -> list[MemoryEntry]:
        raw_entries = result.artifacts.get("memory")
        if not isinstance(raw_entries, list):
            return []
        authored: list[MemoryEntry] = []
        for raw in raw_entries:
            if not isinstance(raw, Mapping):
                continue
            try:
                authored.append(
                    MemoryEntry(
                        category=MemoryCategory(str(raw.get("category", "learning")).lower()),
                        title=str(raw["title"]),
                        body=str(raw.get("body") or ""),
                        author_stage=result.stage,
                        tags=tuple(str(tag) for tag in raw.get("tags") or ()),
                        related=tuple(str(ref) for ref in raw.get("related") or ()),
                    )
                )
            except (KeyError, ValueError) as exc:
                logger.warning("Ignoring malformed memory entry from %s: %s", result.stage, exc)
        return authored

    def record_run(self, run: RunState) -> list[MemoryEntry]:
        """Append entries for results not yet harvested from ``run``."""

        if run.status not in {RunStatus.COMPLETED, RunStatus.ESCALATED, RunStatus.ABORTED}:
            return []
        fresh = run.results[run.memory_cursor:]
        pending: list[MemoryEntry] = [self._decision(run)]
        if run.status is RunStatus.COMPLETED:
            pending.append(self._pattern(run))
        pending.extend(self._learnings(run, fresh))
        if run.status is not RunStatus.COMPLETED:
            pending.append(self._mistake(run))
        for result in fresh:
            pending.extend(self._authored(result))

        written = [self.knowledge.append(entry) for entry in pending]
        run.memory_cursor = len(run.results)
        logger.info("Recorded %d knowledge entries for run %s", len(written), run.run_id)
        return written

