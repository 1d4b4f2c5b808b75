from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import click

from stageflow.agents import ROLE_PROMPTS, AgentRegistry, BackendStageAgent
from stageflow.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from stageflow.config import BACKEND_NAMES, BackendName, StageflowConfig, load_config, save_config
from stageflow.engine import BatchReport, Orchestrator
from stageflow.errors import ClassificationAmbiguous, StageflowError
from stageflow.knowledge import KnowledgeStore
from stageflow.models import MemoryCategory, MemoryEntry, RegistryKind, RunState, utcnow_iso
from stageflow.state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "stageflow.toml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: StageflowConfig
    state: StateStore
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    if backend_name == "openai":
        return OpenAIBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_backend_event(state: StateStore, event: dict[str, Any]) -> None:
    logger.info("Backend event: %s", event.get("event"))
    event_payload = dict(event)
    event_payload["at"] = utcnow_iso()

    def _updater(current: Any) -> dict[str, Any]:
        metrics = current if isinstance(current, dict) else {}
        events = metrics.get("backend_events", [])
        if not isinstance(events, list):
            events = []
        events.append(event_payload)
        metrics["backend_events"] = events[-200:]
        if event.get("event") == "backend_retry":
            metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
        if event.get("event") == "backend_fallback_success":
            metrics["backend_fallback_count"] = int(metrics.get("backend_fallback_count", 0)) + 1
        return metrics

    state.update_json("metrics", _updater, default={})


def _build_backend(config: StageflowConfig, repo_root: Path, state: StateStore) -> AgentBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(state, event),
    )


def _build_agents(backend: AgentBackend, config: StageflowConfig) -> AgentRegistry:
    registry = AgentRegistry()
    for role in ROLE_PROMPTS:
        registry.register(role, BackendStageAgent(backend, role, model=config.agents.model))
    return registry


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    root = config.state_root(repo_root)
    state = StateStore(root)
    backend = _build_backend(config, repo_root, state)
    knowledge = KnowledgeStore(
        root,
        half_life_days=config.knowledge.half_life_days,
        default_limit=config.knowledge.default_limit,
    )
    orchestrator = Orchestrator(
        config,
        state=state,
        knowledge=knowledge,
        agents=_build_agents(backend, config),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _task_payload(
    title: str,
    *,
    description: str = "",
    links: tuple[str, ...] = (),
    task_type: str | None = None,
    skip: tuple[str, ...] = (),
    force: tuple[str, ...] = (),
    task_id: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": title,
        "description": description,
        "links": list(links),
        "skip": list(skip),
        "force": list(force),
    }
    if task_type:
        payload["type"] = task_type
    if task_id:
        payload["id"] = task_id
    return payload


def _load_batch_file(path: Path) -> list[dict[str, Any]]:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".toml":
            data: Any = tomllib.loads(text).get("tasks", [])
        else:
            data = json.loads(text)
            if isinstance(data, dict):
                data = data.get("tasks", [])
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not parse {path}: {exc}") from exc
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise click.ClickException(f"{path} must contain a list of task objects.")
    return data


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _echo_run(run: RunState) -> None:
    click.echo(f"Run ID: {run.run_id}")
    click.echo(f"Task: {run.task.id} ({run.plan.task_type.value})")
    click.echo(f"Status: {run.status.value}")
    if run.pending_reviews:
        click.echo(f"Awaiting review: {', '.join(sorted(run.pending_reviews))}")
    if run.escalation and run.escalation.get("reason"):
        click.echo(f"Escalation: {run.escalation['reason']}")


def _echo_batch(report: BatchReport) -> None:
    click.echo(f"Batch ID: {report.batch_id}")
    for index, wave in enumerate(report.waves, start=1):
        click.echo(f"Wave {index}: {', '.join(wave)}")
    for task_id, status in report.statuses.items():
        click.echo(f"{task_id} {report.runs[task_id]} {status}")


def _ambiguous(exc: ClassificationAmbiguous) -> click.ClickException:
    return click.ClickException(f"{exc.question} Re-run with --answer <type>.")


task_options = [
    click.option("--description", "-d", default="", help="Task description."),
    click.option("--link", "links", multiple=True, help="Reference link; repeatable."),
    click.option("--type", "task_type", default=None, help="Explicit task type override."),
]


def _with_task_options(func):
    for option in reversed(task_options):
        func = option(func)
    return func


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Stageflow CLI."""

    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    root = config.state_root(repo_root)
    StateStore(root)
    KnowledgeStore(root)

    click.echo(f"Initialized Stageflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State: {root}")


@cli.command("classify")
@click.argument("title")
@_with_task_options
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def classify_command(
    title: str,
    description: str,
    links: tuple[str, ...],
    task_type: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    orchestrator = runtime.orchestrator
    try:
        task = orchestrator.intake(
            _task_payload(title, description=description, links=links, task_type=task_type)
        )
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(orchestrator.classifier.classify(task).to_dict())


@cli.command("plan")
@click.argument("title")
@_with_task_options
@click.option("--skip", multiple=True, help="Skip a stage this time; repeatable.")
@click.option("--force", multiple=True, help="Run a stage this time; repeatable.")
@click.option("--answer", default=None, help="Clarification when classification is ambiguous.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_command(
    title: str,
    description: str,
    links: tuple[str, ...],
    task_type: str | None,
    skip: tuple[str, ...],
    force: tuple[str, ...],
    answer: str | None,
    config_value: str,
) -> None:
    orchestrator = _runtime(config_value).orchestrator
    payload = _task_payload(
        title, description=description, links=links, task_type=task_type, skip=skip, force=force
    )
    try:
        task = orchestrator.intake(payload)
        classification = orchestrator.classify(task, answer)
        plan = orchestrator.build_plan(task, classification)
    except ClassificationAmbiguous as exc:
        raise _ambiguous(exc) from exc
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(plan.to_dict())


@cli.command("run")
@click.argument("title")
@_with_task_options
@click.option("--id", "task_id", default=None, help="Task identifier.")
@click.option("--skip", multiple=True, help="Skip a stage this time; repeatable.")
@click.option("--force", multiple=True, help="Run a stage this time; repeatable.")
@click.option("--answer", default=None, help="Clarification when classification is ambiguous.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    title: str,
    description: str,
    links: tuple[str, ...],
    task_type: str | None,
    task_id: str | None,
    skip: tuple[str, ...],
    force: tuple[str, ...],
    answer: str | None,
    config_value: str,
) -> None:
    orchestrator = _runtime(config_value).orchestrator
    payload = _task_payload(
        title,
        description=description,
        links=links,
        task_type=task_type,
        skip=skip,
        force=force,
        task_id=task_id,
    )
    try:
        outcome = asyncio.run(orchestrator.submit(payload, answer))
    except ClassificationAmbiguous as exc:
        raise _ambiguous(exc) from exc
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if isinstance(outcome, BatchReport):
        _echo_batch(outcome)
    else:
        _echo_run(outcome)


@cli.command("batch")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def batch_command(tasks_file: Path, config_value: str) -> None:
    orchestrator = _runtime(config_value).orchestrator
    payloads = _load_batch_file(tasks_file)
    try:
        report = asyncio.run(orchestrator.run_batch(payloads))
    except ClassificationAmbiguous as exc:
        raise _ambiguous(exc) from exc
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_batch(report)


@cli.command("status")
@click.argument("run_id", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(run_id: str | None, config_value: str) -> None:
    orchestrator = _runtime(config_value).orchestrator
    try:
        payload = orchestrator.status(run_id)
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@cli.command("review")
@click.argument("run_id")
@click.argument("stage")
@click.argument("action", type=click.Choice(["approve", "edit", "reject"]))
@click.option("--note", default="", help="Reviewer note; required for edit.")
@click.option("--resume/--no-resume", "resume_run", default=False, show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def review_command(
    run_id: str,
    stage: str,
    action: str,
    note: str,
    resume_run: bool,
    config_value: str,
) -> None:
    orchestrator = _runtime(config_value).orchestrator
    try:
        run = orchestrator.record_review(run_id, stage, action, note)
        click.echo(f"Recorded {action} for {stage} on {run.run_id}")
        if resume_run and not [s for s in run.pending_reviews if s not in run.review_decisions]:
            _echo_run(asyncio.run(orchestrator.resume(run_id)))
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("resume")
@click.argument("run_id", required=False)
@click.option("--batch", "batch_id", default=None, help="Re-drive a whole batch.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(run_id: str | None, batch_id: str | None, config_value: str) -> None:
    if not run_id and not batch_id:
        raise click.UsageError("Pass a RUN_ID or --batch BATCH_ID.")
    orchestrator = _runtime(config_value).orchestrator
    try:
        if batch_id:
            _echo_batch(asyncio.run(orchestrator.resume_batch(batch_id)))
        else:
            _echo_run(asyncio.run(orchestrator.resume(run_id)))
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("abort")
@click.argument("run_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def abort_command(run_id: str, config_value: str) -> None:
    orchestrator = _runtime(config_value).orchestrator
    try:
        run = orchestrator.abort(run_id)
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Aborted {run.run_id}")


@cli.group("memory")
def memory_group() -> None:
    """Inspect and extend the knowledge store."""


@memory_group.command("add")
@click.argument("category", type=click.Choice([item.value for item in MemoryCategory]))
@click.argument("title")
@click.option("--body", default="")
@click.option("--tag", "tags", multiple=True)
@click.option("--stage", default=None, help="Authoring stage.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def memory_add_command(
    category: str,
    title: str,
    body: str,
    tags: tuple[str, ...],
    stage: str | None,
    config_value: str,
) -> None:
    knowledge = _runtime(config_value).orchestrator.knowledge
    entry = knowledge.append(
        MemoryEntry(
            category=MemoryCategory(category),
            title=title,
            body=body,
            author_stage=stage,
            tags=tags,
        )
    )
    click.echo(f"Added {entry.entry_id}")


@memory_group.command("query")
@click.argument("text", required=False, default="")
@click.option(
    "--category", type=click.Choice([item.value for item in MemoryCategory]), default=None
)
@click.option("--tag", "tags", multiple=True)
@click.option("--stage", default=None)
@click.option("--days", type=float, default=None, help="Only entries from the last N days.")
@click.option("--limit", type=int, default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def memory_query_command(
    text: str,
    category: str | None,
    tags: tuple[str, ...],
    stage: str | None,
    days: float | None,
    limit: int | None,
    config_value: str,
) -> None:
    knowledge = _runtime(config_value).orchestrator.knowledge
    try:
        scored = knowledge.query_scored(
            text,
            category=MemoryCategory(category) if category else None,
            tags=tags or None,
            stage=stage,
            recency_window=timedelta(days=days) if days is not None else None,
            limit=limit,
        )
    except StageflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if not scored:
        click.echo("No entries found.")
        return
    for item in scored:
        click.echo(f"{item.entry.entry_id} {item.score:.3f} {item.entry.title}")


@memory_group.command("rebuild")
@click.option(
    "--category", type=click.Choice([item.value for item in MemoryCategory]), default=None
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def memory_rebuild_command(category: str | None, config_value: str) -> None:
    knowledge = _runtime(config_value).orchestrator.knowledge
    categories = [MemoryCategory(category)] if category else list(MemoryCategory)
    for item in categories:
        count = knowledge.rebuild_index(item)
        click.echo(f"{item.value}: {count} entries indexed")


@cli.group("registry")
def registry_group() -> None:
    """Read and write the shared context registry."""


_registry_kind = click.Choice([item.value for item in RegistryKind])


@registry_group.command("get")
@click.argument("kind", type=_registry_kind)
@click.argument("key")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def registry_get_command(kind: str, key: str, config_value: str) -> None:
    registry = _runtime(config_value).orchestrator.registry
    record = registry.get(RegistryKind(kind), key)
    if record is None:
        raise click.ClickException(f"No {kind} record for '{key}'.")
    _echo_json(record)


@registry_group.command("set")
@click.argument("kind", type=_registry_kind)
@click.argument("key")
@click.argument("record_json")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def registry_set_command(kind: str, key: str, record_json: str, config_value: str) -> None:
    try:
        record = json.loads(record_json)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Record is not valid JSON: {exc}") from exc
    if not isinstance(record, dict):
        raise click.ClickException("Record must be a JSON object.")
    registry = _runtime(config_value).orchestrator.registry
    registry.merge(RegistryKind(kind), {key: record})
    click.echo(f"Merged {kind}/{key}")


@registry_group.command("list")
@click.argument("kind", type=_registry_kind)
@click.option("--prefix", default="")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def registry_list_command(kind: str, prefix: str, config_value: str) -> None:
    registry = _runtime(config_value).orchestrator.registry
    records = registry.prefix(RegistryKind(kind), prefix)
    if not records:
        click.echo("No records found.")
        return
    for key in records:
        click.echo(key)
