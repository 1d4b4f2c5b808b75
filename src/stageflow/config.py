from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from stageflow.errors import ConfigError
from stageflow.models import EscalationAction, FailureKind, FeedbackRule

BackendName = Literal["claude", "codex", "openai"]
ReviewMode = Literal["manual", "auto", "always"]
StageSetting = Literal["always", "never", "per-task"]

BACKEND_NAMES = ("claude", "codex", "openai")
REVIEW_MODES = ("manual", "auto", "always")
STAGE_SETTINGS = ("always", "never", "per-task")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    context: str = ""
    review_mode: ReviewMode = "manual"


@dataclass(slots=True)
class FeedbackConfig:
    default_max_attempts: int = 2
    escalation_action: str = "escalate"
    rules: list[dict[str, Any]] = field(default_factory=list)

    def build_rules(self) -> list[FeedbackRule]:
        rules: list[FeedbackRule] = []
        for raw in self.rules:
            try:
                rules.append(
                    FeedbackRule(
                        failure_kind=FailureKind(str(raw["failure_kind"]).strip().lower()),
                        max_attempts=int(raw.get("max_attempts", self.default_max_attempts)),
                        target=str(raw.get("target") or "").strip(),
                        escalation_action=EscalationAction(
                            str(raw.get("escalation_action") or self.escalation_action)
                        ),
                        stage=str(raw.get("stage") or "*").strip(),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid feedback rule {raw!r}: {exc}") from exc
        return rules


@dataclass(slots=True)
class ExecutionConfig:
    max_parallel_tasks: int = 4
    stage_timeout_seconds: float = 0.0
    infer_dependencies: bool = True


@dataclass(slots=True)
class KnowledgeConfig:
    half_life_days: float = 30.0
    default_limit: int = 10
    plan_hint_limit: int = 5


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class StateConfig:
    root: str = ".stageflow"


@dataclass(slots=True)
class StageflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    stages: dict[str, str] = field(default_factory=dict)
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> StageflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> StageflowConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                stages={str(key): str(value) for key, value in data.get("stages", {}).items()},
                feedback=FeedbackConfig(**data.get("feedback", {})),
                execution=ExecutionConfig(**data.get("execution", {})),
                knowledge=KnowledgeConfig(**data.get("knowledge", {})),
                backend=BackendConfig(**data.get("backend", {})),
                agents=AgentsConfig(**data.get("agents", {})),
                state=StateConfig(**data.get("state", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.project.review_mode not in REVIEW_MODES:
            raise ConfigError(
                f"project.review_mode must be one of {REVIEW_MODES}, "
                f"got {self.project.review_mode!r}"
            )
        for stage, setting in self.stages.items():
            if setting not in STAGE_SETTINGS:
                raise ConfigError(
                    f"stages.{stage} must be one of {STAGE_SETTINGS}, got {setting!r}"
                )
        for slot in ("primary", "fallback"):
            name = getattr(self.backend, slot)
            if name not in BACKEND_NAMES:
                raise ConfigError(f"backend.{slot} must be one of {BACKEND_NAMES}, got {name!r}")
        if self.feedback.default_max_attempts < 0:
            raise ConfigError("feedback.default_max_attempts must be >= 0")
        try:
            EscalationAction(self.feedback.escalation_action)
        except ValueError as exc:
            raise ConfigError(
                f"feedback.escalation_action must be 'escalate' or 'abort', "
                f"got {self.feedback.escalation_action!r}"
            ) from exc
        self.feedback.build_rules()
        if self.execution.max_parallel_tasks < 1:
            raise ConfigError("execution.max_parallel_tasks must be >= 1")
        if self.knowledge.half_life_days <= 0:
            raise ConfigError("knowledge.half_life_days must be > 0")

    def state_root(self, repo_root: Path) -> Path:
        path = Path(self.state.root)
        return path if path.is_absolute() else repo_root / path

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "context": self.project.context,
                "review_mode": self.project.review_mode,
            },
            "stages": dict(self.stages),
            "feedback": {
                "default_max_attempts": self.feedback.default_max_attempts,
                "escalation_action": self.feedback.escalation_action,
                "rules": [dict(rule) for rule in self.feedback.rules],
            },
            "execution": {
                "max_parallel_tasks": self.execution.max_parallel_tasks,
                "stage_timeout_seconds": self.execution.stage_timeout_seconds,
                "infer_dependencies": self.execution.infer_dependencies,
            },
            "knowledge": {
                "half_life_days": self.knowledge.half_life_days,
                "default_limit": self.knowledge.default_limit,
                "plan_hint_limit": self.knowledge.plan_hint_limit,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
            },
            "state": {
                "root": self.state.root,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        pairs = ", ".join(f"{_toml_key(key)} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + pairs + " }" if pairs else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: object) -> str:
    text = str(key)
    if text and all(char.isalnum() or char in "-_" for char in text):
        return text
    return json.dumps(text, ensure_ascii=False)


def dumps_toml(config: StageflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "stages",
        "feedback",
        "execution",
        "knowledge",
        "backend",
        "agents",
        "state",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> StageflowConfig:
    if not path.exists():
        return StageflowConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return StageflowConfig.from_dict(data)


def save_config(path: Path, config: StageflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
