"""Domain models shared by the classifier, router, executor and stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def utcnow_iso() -> str:
    return utcnow().replace(microsecond=0).isoformat()


def parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class TaskType(str, Enum):
    FEATURE = "feature"
    BUG_FIX = "bug_fix"
    REFACTOR = "refactor"
    DESIGN_IMPLEMENTATION = "design_implementation"
    SPRINT_BATCH = "sprint_batch"
    DEPENDENCY_UPDATE = "dependency_update"
    REVIEW_RESPONSE = "review_response"
    RELEASE = "release"
    DIAGNOSTIC_ONLY = "diagnostic_only"


class Activation(str, Enum):
    """Static activation of a stage definition."""

    ALWAYS = "always"
    NEVER = "never"
    CONDITIONAL = "conditional"


class StageDecision(str, Enum):
    """Resolved activation of a stage for one task."""

    ALWAYS = "always"
    NEVER = "never"
    RUN_THIS_TIME = "run"
    SKIP_THIS_TIME = "skip"

    @property
    def enabled(self) -> bool:
        return self in {StageDecision.ALWAYS, StageDecision.RUN_THIS_TIME}


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NEEDS_REVIEW = "needs_review"


class FailureKind(str, Enum):
    COMPILE = "compile"
    TEST = "test"
    LINT = "lint"
    LAYER_BOUNDARY = "layer_boundary"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ReviewAction(str, Enum):
    APPROVE = "approve"
    EDIT = "edit"
    REJECT = "reject"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    ABORTED = "aborted"
    BLOCKED = "blocked"

    @property
    def settled(self) -> bool:
        """True once automatic progress has stopped for this run."""

        return self in {
            RunStatus.AWAITING_REVIEW,
            RunStatus.COMPLETED,
            RunStatus.ESCALATED,
            RunStatus.ABORTED,
            RunStatus.BLOCKED,
        }


class EscalationAction(str, Enum):
    ESCALATE = "escalate"
    ABORT = "abort"


class MemoryCategory(str, Enum):
    DECISION = "decision"
    LEARNING = "learning"
    MISTAKE = "mistake"
    PATTERN = "pattern"


class RegistryKind(str, Enum):
    CAPABILITIES = "capabilities"
    COMPONENTS = "components"
    DEPENDENCIES = "dependencies"
    MODULES = "modules"
    CONVENTIONS = "conventions"
    ENTITIES = "entities"


@dataclass(slots=True, frozen=True)
class Task:
    """Unit of work accepted at intake. Never mutated after acceptance."""

    id: str
    title: str
    description: str = ""
    links: tuple[str, ...] = ()
    type_override: TaskType | None = None
    stage_overrides: dict[str, str] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.description}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "links": list(self.links),
            "type_override": self.type_override.value if self.type_override else None,
            "stage_overrides": dict(self.stage_overrides),
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        override = payload.get("type_override")
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            links=tuple(str(link) for link in payload.get("links") or ()),
            type_override=TaskType(override) if override else None,
            stage_overrides={
                str(key): str(value)
                for key, value in (payload.get("stage_overrides") or {}).items()
            },
            depends_on=tuple(str(dep) for dep in payload.get("depends_on") or ()),
        )


@dataclass(slots=True, frozen=True)
class StageDefinition:
    name: str
    activation: Activation
    capability_ref: str
    requires: tuple[str, ...] = ()
    default_run: bool = True


@dataclass(slots=True)
class StagePlan:
    """Ordered stage groups for one task; members of a group may run concurrently."""

    task_id: str
    task_type: TaskType
    groups: list[tuple[str, ...]]
    decisions: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    hints: list[dict[str, Any]] = field(default_factory=list)

    @property
    def stages(self) -> list[str]:
        return [stage for group in self.groups for stage in group]

    def group_of(self, stage: str) -> int | None:
        for index, group in enumerate(self.groups):
            if stage in group:
                return index
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_type": self.task_type.value,
            "groups": [list(group) for group in self.groups],
            "decisions": dict(self.decisions),
            "skipped": list(self.skipped),
            "hints": list(self.hints),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StagePlan:
        return cls(
            task_id=str(payload["task_id"]),
            task_type=TaskType(payload["task_type"]),
            groups=[tuple(group) for group in payload.get("groups", [])],
            decisions=dict(payload.get("decisions", {})),
            skipped=list(payload.get("skipped", [])),
            hints=list(payload.get("hints", [])),
        )


@dataclass(slots=True)
class StageResult:
    stage: str
    status: StageStatus
    failure_kind: FailureKind | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)
    affected_stages: tuple[str, ...] = ()
    attempt: int = 0
    review: str | None = None
    review_note: str | None = None
    finished_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def success(cls, stage: str, **artifacts: Any) -> StageResult:
        return cls(stage=stage, status=StageStatus.SUCCESS, artifacts=dict(artifacts))

    @classmethod
    def failure(
        cls,
        stage: str,
        kind: FailureKind,
        *diagnostics: str,
        affected_stages: tuple[str, ...] = (),
    ) -> StageResult:
        return cls(
            stage=stage,
            status=StageStatus.FAILURE,
            failure_kind=kind,
            diagnostics=list(diagnostics),
            affected_stages=affected_stages,
        )

    @classmethod
    def needs_review(cls, stage: str, *diagnostics: str, **artifacts: Any) -> StageResult:
        return cls(
            stage=stage,
            status=StageStatus.NEEDS_REVIEW,
            artifacts=dict(artifacts),
            diagnostics=list(diagnostics),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "artifacts": dict(self.artifacts),
            "diagnostics": list(self.diagnostics),
            "affected_stages": list(self.affected_stages),
            "attempt": self.attempt,
            "review": self.review,
            "review_note": self.review_note,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageResult:
        kind = payload.get("failure_kind")
        return cls(
            stage=str(payload["stage"]),
            status=StageStatus(payload["status"]),
            failure_kind=FailureKind(kind) if kind else None,
            artifacts=dict(payload.get("artifacts") or {}),
            diagnostics=[str(item) for item in payload.get("diagnostics") or []],
            affected_stages=tuple(payload.get("affected_stages") or ()),
            attempt=int(payload.get("attempt", 0)),
            review=payload.get("review"),
            review_note=payload.get("review_note"),
            finished_at=str(payload.get("finished_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class RunState:
    """Mutable execution state of one task's plan."""

    run_id: str
    task: Task
    plan: StagePlan
    classification: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    group_index: int = 0
    attempts_by_stage: dict[str, int] = field(default_factory=dict)
    attempt_kinds: dict[str, str] = field(default_factory=dict)
    results: list[StageResult] = field(default_factory=list)
    retry_stages: list[str] = field(default_factory=list)
    pending_reviews: dict[str, StageResult] = field(default_factory=dict)
    review_decisions: dict[str, dict[str, str]] = field(default_factory=dict)
    amendments: dict[str, str] = field(default_factory=dict)
    escalation: dict[str, Any] | None = None
    batch_id: str | None = None
    memory_cursor: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def current_group(self) -> tuple[str, ...] | None:
        if self.group_index >= len(self.plan.groups):
            return None
        return self.plan.groups[self.group_index]

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task": self.task.to_dict(),
            "plan": self.plan.to_dict(),
            "classification": dict(self.classification),
            "status": self.status.value,
            "group_index": self.group_index,
            "attempts_by_stage": dict(self.attempts_by_stage),
            "attempt_kinds": dict(self.attempt_kinds),
            "results": [result.to_dict() for result in self.results],
            "retry_stages": list(self.retry_stages),
            "pending_reviews": {
                stage: result.to_dict() for stage, result in self.pending_reviews.items()
            },
            "review_decisions": {
                stage: dict(decision) for stage, decision in self.review_decisions.items()
            },
            "amendments": dict(self.amendments),
            "escalation": self.escalation,
            "batch_id": self.batch_id,
            "memory_cursor": self.memory_cursor,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunState:
        return cls(
            run_id=str(payload["run_id"]),
            task=Task.from_dict(payload["task"]),
            plan=StagePlan.from_dict(payload["plan"]),
            classification=dict(payload.get("classification") or {}),
            status=RunStatus(payload.get("status", RunStatus.PENDING.value)),
            group_index=int(payload.get("group_index", 0)),
            attempts_by_stage={
                str(key): int(value)
                for key, value in (payload.get("attempts_by_stage") or {}).items()
            },
            attempt_kinds={
                str(key): str(value)
                for key, value in (payload.get("attempt_kinds") or {}).items()
            },
            results=[StageResult.from_dict(item) for item in payload.get("results") or []],
            retry_stages=list(payload.get("retry_stages") or []),
            pending_reviews={
                str(stage): StageResult.from_dict(item)
                for stage, item in (payload.get("pending_reviews") or {}).items()
            },
            review_decisions={
                str(stage): dict(item)
                for stage, item in (payload.get("review_decisions") or {}).items()
            },
            amendments=dict(payload.get("amendments") or {}),
            escalation=payload.get("escalation"),
            batch_id=payload.get("batch_id"),
            memory_cursor=int(payload.get("memory_cursor", 0)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True, frozen=True)
class MemoryEntry:
    """Immutable knowledge record. ``entry_id`` and ``timestamp`` are set on append."""

    category: MemoryCategory
    title: str
    body: str = ""
    author_stage: str | None = None
    tags: tuple[str, ...] = ()
    related: tuple[str, ...] = ()
    timestamp: datetime | None = None
    entry_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "category": self.category.value,
            "author_stage": self.author_stage,
            "tags": list(self.tags),
            "title": self.title,
            "body": self.body,
            "related": list(self.related),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MemoryEntry:
        timestamp = payload.get("timestamp")
        return cls(
            category=MemoryCategory(payload["category"]),
            title=str(payload["title"]),
            body=str(payload.get("body") or ""),
            author_stage=payload.get("author_stage"),
            tags=tuple(str(tag) for tag in payload.get("tags") or ()),
            related=tuple(str(ref) for ref in payload.get("related") or ()),
            timestamp=parse_timestamp(timestamp) if timestamp else None,
            entry_id=payload.get("id"),
        )


@dataclass(slots=True, frozen=True)
class FeedbackRule:
    """Retry policy for one ``(stage, failure_kind)``; ``stage='*'`` matches any stage.

    An empty ``target`` retries the failing stage itself.
    """

    failure_kind: FailureKind
    max_attempts: int
    target: str = ""
    escalation_action: EscalationAction = EscalationAction.ESCALATE
    stage: str = "*"
