"""Stage catalog, canonical sequences and stage plan construction."""

from __future__ import annotations

import logging
import re

from stageflow.classifier import has_design_link
from stageflow.config import StageflowConfig
from stageflow.errors import ConfigConflict, StageflowError
from stageflow.knowledge import KnowledgeStore
from stageflow.models import (
    Activation,
    MemoryCategory,
    RegistryKind,
    StageDefinition,
    StagePlan,
    Task,
    TaskType,
)
from stageflow.registry import ContextRegistry
from stageflow.resolver import ActivationTable, resolve_activation

logger = logging.getLogger(__name__)

STAGE_CATALOG: tuple[StageDefinition, ...] = (
    StageDefinition("diagnose", Activation.CONDITIONAL, "investigator"),
    StageDefinition("design_decomposition", Activation.CONDITIONAL, "designer", default_run=False),
    StageDefinition("plan", Activation.ALWAYS, "planner"),
    StageDefinition("scaffold", Activation.CONDITIONAL, "scaffolder", default_run=False),
    StageDefinition("implement", Activation.ALWAYS, "coder", requires=("plan",)),
    StageDefinition("test", Activation.CONDITIONAL, "tester", requires=("implement",)),
    StageDefinition("lint", Activation.CONDITIONAL, "linter", requires=("implement",)),
    StageDefinition("review", Activation.CONDITIONAL, "critic", requires=("implement",)),
    StageDefinition("document", Activation.CONDITIONAL, "documenter"),
    StageDefinition("release", Activation.CONDITIONAL, "releaser", requires=("test",)),
)

STAGES_BY_NAME: dict[str, StageDefinition] = {stage.name: stage for stage in STAGE_CATALOG}

CANONICAL_SEQUENCES: dict[TaskType, tuple[tuple[str, ...], ...]] = {
    TaskType.FEATURE: (
        ("plan",),
        ("scaffold",),
        ("implement",),
        ("test", "lint"),
        ("review",),
        ("document",),
    ),
    TaskType.BUG_FIX: (("diagnose",), ("implement",), ("test", "lint"), ("review",)),
    TaskType.REFACTOR: (("plan",), ("implement",), ("test", "lint"), ("review",)),
    TaskType.DESIGN_IMPLEMENTATION: (
        ("design_decomposition",),
        ("plan",),
        ("scaffold",),
        ("implement",),
        ("test", "lint"),
        ("review",),
        ("document",),
    ),
    TaskType.DEPENDENCY_UPDATE: (("implement",), ("test", "lint"), ("review",)),
    TaskType.REVIEW_RESPONSE: (("implement",), ("test", "lint"), ("review",)),
    TaskType.RELEASE: (("test", "lint"), ("release",), ("document",)),
    TaskType.DIAGNOSTIC_ONLY: (("diagnose",), ("document",)),
    TaskType.SPRINT_BATCH: (),
}

_NEW_MODULE_RE = re.compile(
    r"\bnew\s+(?:module|component|package|service|screen)\s+[`'\"]?([A-Za-z_][\w./-]*)",
    re.IGNORECASE,
)
_CHILD_LINE_RE = re.compile(r"^\s*(?:[-*]\s*(?:\[[ xX]\]\s*)?|\d+[.)]\s+)(.+?)\s*$", re.MULTILINE)


def new_module_names(task: Task) -> list[str]:
    return [match.group(1).rstrip(".,") for match in _NEW_MODULE_RE.finditer(task.text)]


def split_batch(task: Task) -> list[Task]:
    """Turn a sprint task's list items into child tasks ``<id>.<n>``."""

    children: list[Task] = []
    for index, match in enumerate(_CHILD_LINE_RE.finditer(task.description), start=1):
        title = match.group(1).strip()
        if not title:
            continue
        children.append(
            Task(
                id=f"{task.id}.{index}",
                title=title,
                links=task.links,
                stage_overrides=dict(task.stage_overrides),
            )
        )
    return children


class Router:
    def __init__(
        self,
        config: StageflowConfig,
        *,
        knowledge: KnowledgeStore | None = None,
        registry: ContextRegistry | None = None,
        catalog: tuple[StageDefinition, ...] = STAGE_CATALOG,
    ) -> None:
        self.config = config
        self.knowledge = knowledge
        self.registry = registry
        self.catalog = catalog
        self.stages = {stage.name: stage for stage in catalog}

    def task_signals(self, task: Task, task_type: TaskType) -> dict[str, bool]:
        signals: dict[str, bool] = {}
        if has_design_link(task):
            signals["design_decomposition"] = True
        known_modules = set(self.registry.keys(RegistryKind.MODULES)) if self.registry else set()
        introduced = new_module_names(task)
        if any(name not in known_modules for name in introduced):
            signals["scaffold"] = True
        elif not known_modules and task_type in {
            TaskType.FEATURE,
            TaskType.DESIGN_IMPLEMENTATION,
        }:
            signals["scaffold"] = True
        return signals

    def learned_defaults(self, task_type: TaskType) -> dict[str, bool]:
        """Stage toggles from Pattern entries for ``task_type``; newest entry wins per stage."""

        if self.knowledge is None:
            return {}
        learned: dict[str, bool] = {}
        entries = self.knowledge.query(
            category=MemoryCategory.PATTERN,
            tags=[f"task_type:{task_type.value}"],
            limit=0,
        )
        for entry in entries:
            for tag in entry.tags:
                prefix, _, stage = tag.partition(":")
                if stage not in self.stages or stage in learned:
                    continue
                if prefix == "enable":
                    learned[stage] = True
                elif prefix == "skip":
                    learned[stage] = False
        return learned

    def plan_hints(self, task: Task, task_type: TaskType) -> list[dict[str, str]]:
        if self.knowledge is None:
            return []
        limit = self.config.knowledge.plan_hint_limit
        if limit <= 0:
            return []
        ranked = self.knowledge.query(task.text, limit=limit)
        if len(ranked) < limit:
            ranked += self.knowledge.query(tags=[f"task_type:{task_type.value}"], limit=limit)
        hints: list[dict[str, str]] = []
        seen: set[str] = set()
        for entry in ranked:
            entry_id = str(entry.entry_id)
            if entry_id in seen:
                continue
            seen.add(entry_id)
            hints.append({"id": entry_id, "category": entry.category.value, "title": entry.title})
        return hints[:limit]

    def resolve(self, task: Task, task_type: TaskType) -> ActivationTable:
        return resolve_activation(
            self.catalog,
            task=task,
            project_stages=self.config.stages,
            context=self.config.project.context,
            task_signals=self.task_signals(task, task_type),
            learned=self.learned_defaults(task_type),
        )

    def check_conflicts(self, task_type: TaskType, table: ActivationTable) -> None:
        sequence = {stage for group in CANONICAL_SEQUENCES[task_type] for stage in group}
        conflicts: list[tuple[str, str]] = []
        for stage in sorted(sequence):
            if not table.enabled(stage):
                continue
            for upstream in self.stages[stage].requires:
                if upstream in sequence and not table.enabled(upstream):
                    conflicts.append((stage, upstream))
        if conflicts:
            details = ", ".join(
                f"{upstream}={table[upstream].decision.value} via {table[upstream].source}"
                for _, upstream in conflicts
            )
            raise ConfigConflict(conflicts, details=details)

    def build_plan(self, task: Task, task_type: TaskType) -> StagePlan:
        if task_type is TaskType.SPRINT_BATCH:
            raise StageflowError(
                f"Task {task.id} is a sprint batch; plan each child task separately."
            )
        table = self.resolve(task, task_type)
        self.check_conflicts(task_type, table)

        groups: list[tuple[str, ...]] = []
        skipped: list[str] = []
        for group in CANONICAL_SEQUENCES[task_type]:
            kept = tuple(stage for stage in group if table.enabled(stage))
            skipped.extend(stage for stage in group if not table.enabled(stage))
            if kept:
                groups.append(kept)
        plan = StagePlan(
            task_id=task.id,
            task_type=task_type,
            groups=groups,
            decisions=table.decisions(),
            skipped=skipped,
            hints=self.plan_hints(task, task_type),
        )
        logger.info(
            "Built %s plan for %s: %s (skipped: %s)",
            task_type.value,
            task.id,
            " -> ".join("+".join(group) for group in groups) or "<empty>",
            ", ".join(skipped) or "none",
        )
        return plan

    def plan_batch(
        self, tasks: list[Task], task_types: dict[str, TaskType]
    ) -> dict[str, StagePlan]:
        return {task.id: self.build_plan(task, task_types[task.id]) for task in tasks}
