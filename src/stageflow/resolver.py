"""Per-stage activation resolution over precedence-ordered inputs.

Highest precedence first: explicit per-task flag, project ``[stages]``
setting, context-derived default, built-in default. Context-derived defaults
themselves come from task signals, then the project context string, then
learned patterns.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from stageflow.errors import ConfigError
from stageflow.models import Activation, StageDecision, StageDefinition, Task

TASK_FLAG_VALUES: dict[str, StageDecision] = {
    "always": StageDecision.ALWAYS,
    "never": StageDecision.NEVER,
    "run": StageDecision.RUN_THIS_TIME,
    "force": StageDecision.RUN_THIS_TIME,
    "on": StageDecision.RUN_THIS_TIME,
    "skip": StageDecision.SKIP_THIS_TIME,
    "off": StageDecision.SKIP_THIS_TIME,
}

_CONTEXT_RULES: tuple[tuple[tuple[str, ...], dict[str, bool]], ...] = (
    (("no tests", "without tests", "untested"), {"test": False}),
    (("no lint", "without lint"), {"lint": False}),
    (("prototype", "spike", "proof of concept", "poc"), {"review": False, "document": False}),
    (("library", "sdk", "public api"), {"document": True}),
    (("production", "regulated", "strict review"), {"review": True}),
)


@dataclass(slots=True, frozen=True)
class ResolvedStage:
    decision: StageDecision
    source: str

    @property
    def enabled(self) -> bool:
        return self.decision.enabled


class ActivationTable(dict[str, ResolvedStage]):
    """Total map from catalog stage name to its resolved decision."""

    def enabled(self, stage: str) -> bool:
        return self[stage].enabled

    def decisions(self) -> dict[str, str]:
        return {stage: resolved.decision.value for stage, resolved in sorted(self.items())}

    def sources(self) -> dict[str, str]:
        return {stage: resolved.source for stage, resolved in sorted(self.items())}


def context_defaults(context: str) -> dict[str, bool]:
    """Stage defaults implied by the free-form project context descriptor."""

    haystack = context.lower()
    derived: dict[str, bool] = {}
    for phrases, effects in _CONTEXT_RULES:
        if any(re.search(rf"\b{re.escape(phrase)}\b", haystack) for phrase in phrases):
            derived.update(effects)
    return derived


def parse_task_flag(stage: str, value: str) -> StageDecision:
    decision = TASK_FLAG_VALUES.get(str(value).strip().lower())
    if decision is None:
        raise ConfigError(
            f"Unsupported override {value!r} for stage {stage!r}; "
            f"expected one of {sorted(TASK_FLAG_VALUES)}"
        )
    return decision


def _builtin_default(definition: StageDefinition) -> StageDecision:
    if definition.activation is Activation.ALWAYS:
        return StageDecision.ALWAYS
    if definition.activation is Activation.NEVER:
        return StageDecision.NEVER
    return StageDecision.RUN_THIS_TIME if definition.default_run else StageDecision.SKIP_THIS_TIME


def _first_derived(
    stage: str, derived: list[tuple[str, Mapping[str, bool]]]
) -> tuple[str | None, bool]:
    for source, defaults in derived:
        if stage in defaults:
            return source, bool(defaults[stage])
    return None, False


def resolve_activation(
    catalog: Iterable[StageDefinition],
    *,
    task: Task,
    project_stages: Mapping[str, str] | None = None,
    context: str = "",
    task_signals: Mapping[str, bool] | None = None,
    learned: Mapping[str, bool] | None = None,
) -> ActivationTable:
    definitions = {definition.name: definition for definition in catalog}
    project_stages = dict(project_stages or {})
    for stage in project_stages:
        if stage not in definitions:
            raise ConfigError(f"Unknown stage in [stages]: {stage!r}")
    for stage in task.stage_overrides:
        if stage not in definitions:
            raise ConfigError(f"Unknown stage in task overrides: {stage!r}")

    derived: list[tuple[str, Mapping[str, bool]]] = [
        ("task_signal", task_signals or {}),
        ("context", context_defaults(context)),
        ("learned", learned or {}),
    ]

    table = ActivationTable()
    for name in sorted(definitions):
        definition = definitions[name]
        if name in task.stage_overrides:
            table[name] = ResolvedStage(parse_task_flag(name, task.stage_overrides[name]), "task")
            continue
        setting = project_stages.get(name, "per-task")
        if setting == "always":
            table[name] = ResolvedStage(StageDecision.ALWAYS, "project")
            continue
        if setting == "never":
            table[name] = ResolvedStage(StageDecision.NEVER, "project")
            continue
        # Derived defaults only pick between run and skip for conditional stages.
        if definition.activation is Activation.CONDITIONAL:
            source, enabled = _first_derived(name, derived)
            if source is not None:
                decision = StageDecision.RUN_THIS_TIME if enabled else StageDecision.SKIP_THIS_TIME
                table[name] = ResolvedStage(decision, source)
                continue
        table[name] = ResolvedStage(_builtin_default(definition), "default")
    return table
