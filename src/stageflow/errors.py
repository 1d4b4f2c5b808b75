from __future__ import annotations

from collections.abc import Iterable, Sequence


class StageflowError(RuntimeError):
    """Base class for engine errors surfaced to callers."""


class ConfigError(StageflowError, ValueError):
    """Raised when a configuration value is malformed."""


class StateStoreError(StageflowError):
    """Raised when shared-state operations fail."""


class RunStateError(StageflowError):
    """Raised on an unknown run or an illegal lifecycle transition."""


class ClassificationAmbiguous(StageflowError):
    """Raised when a task needs a one-line clarification before routing."""

    def __init__(self, candidates: Sequence[object], *, question: str | None = None) -> None:
        self.candidates = list(candidates)
        names = ", ".join(str(getattr(item, "value", item)) for item in self.candidates)
        self.question = question or f"Which kind of task is this? ({names})"
        super().__init__(f"Task classification is ambiguous between: {names}")


class ConfigConflict(StageflowError):
    """Raised when stage activation leaves a required upstream stage disabled."""

    def __init__(self, conflicts: Iterable[tuple[str, str]], *, details: str = "") -> None:
        self.conflicts = list(conflicts)
        rendered = "; ".join(
            f"'{downstream}' requires '{upstream}'" for downstream, upstream in self.conflicts
        )
        message = f"Contradictory stage configuration: {rendered}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


class StageExecutionFailure(StageflowError):
    """A stage reported a failure of a known kind."""

    def __init__(self, stage: str, kind: object, message: str = "") -> None:
        self.stage = stage
        self.kind = kind
        kind_name = getattr(kind, "value", kind)
        super().__init__(message or f"Stage '{stage}' failed ({kind_name})")


class DependencyGraphInvalid(StageflowError):
    """Raised when a batch dependency graph has cycles or unknown references."""

    def __init__(
        self,
        *,
        cycle_edges: Iterable[tuple[str, str]] = (),
        unknown_refs: Iterable[tuple[str, str]] = (),
    ) -> None:
        self.cycle_edges = sorted(set(cycle_edges))
        self.unknown_refs = sorted(set(unknown_refs))
        parts: list[str] = []
        if self.cycle_edges:
            parts.append(
                "cycle through edges "
                + ", ".join(f"{src}->{dst}" for src, dst in self.cycle_edges)
            )
        if self.unknown_refs:
            parts.append(
                "unknown dependencies "
                + ", ".join(f"{task}->{ref}" for task, ref in self.unknown_refs)
            )
        super().__init__("Invalid task graph: " + "; ".join(parts or ["empty graph"]))


class MemoryIndexInconsistent(StageflowError):
    """Raised when a knowledge index no longer matches its log."""

    def __init__(self, category: object, reason: str) -> None:
        self.category = category
        self.reason = reason
        super().__init__(
            f"Knowledge index for '{getattr(category, 'value', category)}' "
            f"is inconsistent: {reason}"
        )
