"""Stage agents backed by a text-generation backend."""

from __future__ import annotations

import json
import logging
from typing import Any

from stageflow.agents.base import StageAgent, StageInput, coerce_result
from stageflow.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from stageflow.models import FailureKind, StageResult

logger = logging.getLogger(__name__)

STATUS_LINE_INSTRUCTIONS = """
Finish your answer with a single JSON line of the form
{"status": "success" | "failure" | "needs_review", "kind": "compile" | "test" | "lint" |
"layer_boundary" | "timeout" | "unknown", "artifacts": {...}, "diagnostics": [...]}.
""".strip()

ROLE_PROMPTS: dict[str, str] = {
    "investigator": """
You are the Investigator specialist.
Reproduce the reported problem, locate its root cause, and describe the fix.
You do not change code.
""",
    "designer": """
You are the Design Decomposition specialist.
Break the linked design into screens, components and states.
List every component the implementation will need.
""",
    "planner": """
You are the Planner/Architect specialist.
Analyze requirements, define interfaces, propose implementation steps,
and provide risks with alternatives.
You produce plans, not code.
""",
    "scaffolder": """
You are the Scaffolding specialist.
Create the module structure, entry points and empty interfaces the plan calls for.
Report every new module under artifacts.registry.modules.
""",
    "coder": """
You are the Coder/Engineer specialist.
Implement exactly what was planned.
Match repository conventions and keep commits atomic.
""",
    "tester": """
You are the Tester/QA specialist.
Design and run tests for happy path, edge cases, and failures.
Report clear pass/fail outcomes.
""",
    "linter": """
You are the Static Analysis specialist.
Run the project's linters and layer-boundary checks and report every violation.
""",
    "critic": """
You are the Critic/Code Reviewer specialist.
Find correctness, maintainability, and security issues.
Classify findings as BLOCKER, MAJOR, MINOR, or SUGGESTION.
""",
    "documenter": """
You are the Documenter/Technical Writer specialist.
Maintain concise and accurate technical documentation and changelog quality.
""",
    "releaser": """
You are the Release specialist.
Bump the version, assemble the changelog and prepare the release artifacts.
""",
}

GENERIC_PROMPT = "You are a software specialist."

_FAILURE_PATTERNS: tuple[tuple[FailureKind, tuple[str, ...]], ...] = (
    (
        FailureKind.COMPILE,
        (
            "compilation failed",
            "compile error",
            "build failed",
            "syntaxerror",
            "cannot find symbol",
            "unresolved reference",
        ),
    ),
    (
        FailureKind.LAYER_BOUNDARY,
        (
            "layer boundary",
            "layer violation",
            "architecture violation",
            "forbidden import",
        ),
    ),
    (
        FailureKind.TEST,
        (
            "tests failed",
            "test failed",
            "failing test",
            "assertionerror",
        ),
    ),
    (
        FailureKind.LINT,
        (
            "lint failed",
            "lint errors",
            "linting failed",
            "style violations",
        ),
    ),
    (
        FailureKind.TIMEOUT,
        (
            "timed out",
            "deadline exceeded",
        ),
    ),
)
_REVIEW_PATTERNS: tuple[str, ...] = (
    "needs review",
    "needs human",
    "requires approval",
    "blocker",
)


def _status_line(text: str) -> dict[str, Any] | None:
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and "status" in payload:
            return payload
    return None


def interpret_output(stage: str, text: str) -> StageResult:
    """Map raw backend output to a stage result.

    A trailing JSON status line wins; otherwise fixed phrase tables decide.
    """

    text = text.strip()
    if not text:
        return StageResult.failure(stage, FailureKind.UNKNOWN, "backend produced no output")

    payload = _status_line(text)
    if payload is not None:
        try:
            result = coerce_result(stage, payload)
        except ValueError:
            logger.warning("Ignoring malformed status line from stage %s", stage)
        else:
            result.artifacts.setdefault("output", text[:4000])
            return result

    haystack = text.lower()
    for kind, patterns in _FAILURE_PATTERNS:
        matched = next((pattern for pattern in patterns if pattern in haystack), None)
        if matched is not None:
            return StageResult.failure(stage, kind, f"matched '{matched}'", text[:2000])
    matched = next((pattern for pattern in _REVIEW_PATTERNS if pattern in haystack), None)
    if matched is not None:
        return StageResult.needs_review(stage, f"matched '{matched}'", output=text[:4000])
    return StageResult.success(stage, output=text[:4000])


class BackendStageAgent(StageAgent):
    def __init__(
        self,
        backend: AgentBackend,
        role: str,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.role = role
        self.model = model
        base_prompt = system_prompt or ROLE_PROMPTS.get(role, GENERIC_PROMPT)
        self.system_prompt = f"{base_prompt.strip()}\n\n{STATUS_LINE_INSTRUCTIONS}"

    @staticmethod
    def build_instruction(stage_input: StageInput) -> str:
        lines = [
            f"Stage: {stage_input.stage} (attempt {stage_input.attempt})",
            f"Task: {stage_input.task.title}",
        ]
        if stage_input.task.description:
            lines.append(stage_input.task.description)
        if stage_input.remediation_for:
            lines.append(
                f"Remediate the failure reported by stage '{stage_input.remediation_for}'."
            )
        if stage_input.amendment:
            lines.append(f"Reviewer amendment: {stage_input.amendment}")
        if stage_input.feedback:
            lines.append("Address these diagnostics from the previous attempt:")
            lines.extend(f"- {item}" for item in stage_input.feedback)
        return "\n".join(lines)

    async def execute(self, stage_input: StageInput) -> StageResult:
        context = stage_input.to_context()
        if self.model:
            context["model"] = self.model
        chunks: list[str] = []
        try:
            async for chunk in self.backend.execute(
                system_prompt=self.system_prompt,
                user_prompt=self.build_instruction(stage_input),
                context=context,
            ):
                chunks.append(chunk)
        except BackendTimeoutError as exc:
            return StageResult.failure(stage_input.stage, FailureKind.TIMEOUT, str(exc))
        except BackendExecutionError as exc:
            return StageResult.failure(stage_input.stage, FailureKind.UNKNOWN, str(exc))
        return interpret_output(stage_input.stage, "".join(chunks))
