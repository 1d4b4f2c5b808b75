"""Deterministic scored-keyword classification of incoming tasks."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from stageflow.errors import ClassificationAmbiguous
from stageflow.models import Task, TaskType

CLASSIFIER_VERSION = 1
MARGIN = 1.0

_KEYWORDS: dict[TaskType, tuple[tuple[str, float], ...]] = {
    TaskType.FEATURE: (
        ("feature", 2.0),
        ("add", 1.5),
        ("implement", 1.5),
        ("introduce", 1.5),
        ("new", 1.0),
        ("support", 1.0),
        ("create", 1.0),
        ("allow", 1.0),
        ("enable", 1.0),
    ),
    TaskType.BUG_FIX: (
        ("fix", 2.0),
        ("bug", 2.0),
        ("crash", 2.0),
        ("crashes", 2.0),
        ("regression", 2.0),
        ("broken", 1.5),
        ("error", 1.0),
        ("fails", 1.0),
        ("incorrect", 1.0),
        ("wrong", 1.0),
    ),
    TaskType.REFACTOR: (
        ("refactor", 3.0),
        ("cleanup", 2.0),
        ("clean up", 2.0),
        ("restructure", 2.0),
        ("reorganize", 2.0),
        ("tech debt", 2.0),
        ("extract", 1.5),
        ("rename", 1.5),
        ("simplify", 1.5),
        ("deduplicate", 1.5),
    ),
    TaskType.DESIGN_IMPLEMENTATION: (
        ("figma", 3.0),
        ("mockup", 2.0),
        ("wireframe", 2.0),
        ("acceptance criteria", 1.5),
        ("design", 1.0),
        ("pixel", 1.0),
    ),
    TaskType.SPRINT_BATCH: (
        ("sprint", 3.0),
        ("batch", 2.0),
        ("epic", 1.5),
        ("milestone", 1.5),
        ("backlog", 1.5),
    ),
    TaskType.DEPENDENCY_UPDATE: (
        ("bump", 2.5),
        ("dependabot", 3.0),
        ("renovate", 3.0),
        ("upgrade", 2.0),
        ("dependency", 2.0),
        ("dependencies", 2.0),
        ("deps", 2.0),
        ("sdk version", 1.5),
    ),
    TaskType.REVIEW_RESPONSE: (
        ("review comments", 3.0),
        ("address review", 3.0),
        ("requested changes", 3.0),
        ("pr feedback", 3.0),
        ("reviewer", 2.0),
        ("code review", 2.0),
        ("address", 1.0),
    ),
    TaskType.RELEASE: (
        ("release", 2.5),
        ("publish", 2.0),
        ("changelog", 1.5),
        ("ship", 1.5),
        ("deploy", 1.5),
        ("tag", 1.0),
    ),
    TaskType.DIAGNOSTIC_ONLY: (
        ("investigate", 2.5),
        ("diagnose", 2.5),
        ("root cause", 2.0),
        ("reproduce", 1.5),
        ("analyze", 1.5),
        ("why", 1.0),
        ("profile", 1.0),
    ),
}

ALIASES: dict[str, TaskType] = {
    "feature": TaskType.FEATURE,
    "bug": TaskType.BUG_FIX,
    "bugfix": TaskType.BUG_FIX,
    "fix": TaskType.BUG_FIX,
    "refactor": TaskType.REFACTOR,
    "refactoring": TaskType.REFACTOR,
    "design": TaskType.DESIGN_IMPLEMENTATION,
    "sprint": TaskType.SPRINT_BATCH,
    "batch": TaskType.SPRINT_BATCH,
    "dependency": TaskType.DEPENDENCY_UPDATE,
    "dependencies": TaskType.DEPENDENCY_UPDATE,
    "upgrade": TaskType.DEPENDENCY_UPDATE,
    "review": TaskType.REVIEW_RESPONSE,
    "release": TaskType.RELEASE,
    "diagnostic": TaskType.DIAGNOSTIC_ONLY,
    "diagnose": TaskType.DIAGNOSTIC_ONLY,
    "investigate": TaskType.DIAGNOSTIC_ONLY,
}

DESIGN_LINK_PATTERNS: tuple[str, ...] = (
    "figma.com",
    "sketch.cloud",
    "zeplin.io",
    ".fig",
    ".sketch",
    "/design",
)

_ISSUE_REF_RE = re.compile(r"(?<![\w/])#\d+\b|\b[A-Z][A-Z0-9]+-\d+\b")
_CHECKLIST_RE = re.compile(r"^\s*[-*]\s*\[[ xX]\]", re.MULTILINE)
_PR_REF_RE = re.compile(r"/pull/\d+|\bPR\s*#?\d+|\bpull request\b", re.IGNORECASE)
_SEMVER_RE = re.compile(r"\bv?\d+\.\d+\.\d+(?:-[0-9A-Za-z.]+)?\b")


@dataclass(slots=True, frozen=True)
class Classification:
    """Classifier output. ``task_type`` is None when the result is ambiguous."""

    task_type: TaskType | None
    confidence: float
    scores: dict[TaskType, float] = field(default_factory=dict)
    candidates: tuple[TaskType, ...] = ()
    signals: tuple[str, ...] = ()
    overridden: bool = False

    @property
    def ambiguous(self) -> bool:
        return self.task_type is None

    def require(self) -> TaskType:
        if self.task_type is None:
            raise ClassificationAmbiguous(self.candidates)
        return self.task_type

    def to_dict(self) -> dict[str, Any]:
        return {
            "classifier_version": CLASSIFIER_VERSION,
            "task_type": self.task_type.value if self.task_type else None,
            "confidence": round(self.confidence, 4),
            "scores": {task_type.value: score for task_type, score in self.scores.items()},
            "candidates": [candidate.value for candidate in self.candidates],
            "signals": list(self.signals),
            "overridden": self.overridden,
        }


def _contains(haystack: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", haystack) is not None


def _keyword_scores(
    text: str, allowed: Iterable[TaskType]
) -> tuple[dict[TaskType, float], list[str]]:
    haystack = text.lower()
    scores: dict[TaskType, float] = {}
    matched: list[str] = []
    for task_type in allowed:
        total = 0.0
        for phrase, weight in _KEYWORDS[task_type]:
            if _contains(haystack, phrase):
                total += weight
                matched.append(f"{task_type.value}:{phrase}")
        scores[task_type] = total
    return scores, matched


def has_design_link(task: Task) -> bool:
    haystack = " ".join((*task.links, task.description)).lower()
    return any(pattern in haystack for pattern in DESIGN_LINK_PATTERNS)


def subtask_refs(task: Task) -> list[str]:
    refs = _ISSUE_REF_RE.findall(task.description)
    refs.extend(match.group(0) for match in _CHECKLIST_RE.finditer(task.description))
    return refs


class Classifier:
    """Scores every task type and picks the winner when it clears ``margin``."""

    def __init__(self, *, margin: float = MARGIN) -> None:
        self.margin = margin

    def score(
        self, task: Task, *, exclude: Iterable[TaskType] = ()
    ) -> tuple[dict[TaskType, float], list[str]]:
        excluded = set(exclude)
        allowed = [task_type for task_type in TaskType if task_type not in excluded]
        scores, signals = _keyword_scores(task.text, allowed)

        def bump(task_type: TaskType, amount: float, signal: str) -> None:
            if task_type in scores:
                scores[task_type] += amount
                signals.append(signal)

        if has_design_link(task):
            bump(TaskType.DESIGN_IMPLEMENTATION, 4.0, "design_link")
        refs = subtask_refs(task)
        if len(refs) >= 2:
            bump(TaskType.SPRINT_BATCH, 4.0, "subtask_refs")
        elif len(refs) == 1:
            bump(TaskType.BUG_FIX, 1.0, "issue_ref")
        pr_text = " ".join((task.text, *task.links))
        if _PR_REF_RE.search(pr_text):
            bump(TaskType.REVIEW_RESPONSE, 2.0, "pr_ref")
        if _SEMVER_RE.search(task.text):
            bump(TaskType.RELEASE, 2.0, "semver")
            bump(TaskType.DEPENDENCY_UPDATE, 1.0, "semver")
        return scores, signals

    def classify(self, task: Task, *, exclude: Iterable[TaskType] = ()) -> Classification:
        if task.type_override is not None:
            return Classification(
                task_type=task.type_override,
                confidence=1.0,
                candidates=(task.type_override,),
                signals=("override",),
                overridden=True,
            )
        scores, signals = self.score(task, exclude=exclude)
        return self._decide(scores, signals)

    def _decide(self, scores: dict[TaskType, float], signals: list[str]) -> Classification:
        ranked = sorted(scores.items(), key=lambda item: (-item[1], list(TaskType).index(item[0])))
        if not ranked:
            raise ClassificationAmbiguous([])
        top_type, top_score = ranked[0]
        runner_up = ranked[1][1] if len(ranked) > 1 else 0.0
        total = sum(scores.values())
        if top_score <= 0:
            return Classification(
                task_type=None,
                confidence=0.0,
                scores=scores,
                candidates=tuple(task_type for task_type, _ in ranked),
                signals=tuple(signals),
            )
        confidence = min(max(top_score / total, 0.0), 1.0) if total else 0.0
        if top_score - runner_up < self.margin:
            candidates = tuple(
                task_type for task_type, score in ranked if top_score - score < self.margin
            )
            return Classification(
                task_type=None,
                confidence=confidence,
                scores=scores,
                candidates=candidates,
                signals=tuple(signals),
            )
        return Classification(
            task_type=top_type,
            confidence=confidence,
            scores=scores,
            candidates=(top_type,),
            signals=tuple(signals),
        )

    def disambiguate(self, result: Classification, answer: str) -> Classification:
        """Resolve an ambiguous result from a one-line human answer."""

        if not result.ambiguous:
            return result
        normalized = answer.strip().lower()
        named = _named_type(normalized)
        if named is not None:
            return Classification(
                task_type=named,
                confidence=1.0,
                scores=result.scores,
                candidates=(named,),
                signals=(*result.signals, f"answer:{normalized}"),
                overridden=True,
            )

        candidates = result.candidates or tuple(TaskType)
        answer_scores, answer_signals = _keyword_scores(normalized, candidates)
        resolved = self._decide(answer_scores, answer_signals)
        if resolved.ambiguous:
            raise ClassificationAmbiguous(
                candidates,
                question=f"Still ambiguous after {answer!r}; please name one of: "
                + ", ".join(candidate.value for candidate in candidates),
            )
        return Classification(
            task_type=resolved.task_type,
            confidence=resolved.confidence,
            scores=result.scores,
            candidates=resolved.candidates,
            signals=(*result.signals, *answer_signals),
        )


def _named_type(answer: str) -> TaskType | None:
    compact = answer.replace("-", "_").replace(" ", "_")
    for task_type in TaskType:
        if compact == task_type.value:
            return task_type
    return ALIASES.get(compact)
