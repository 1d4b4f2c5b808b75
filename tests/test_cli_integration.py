import json
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from stageflow.backends.base import AgentBackend
from stageflow.cli import _record_backend_event, cli
from stageflow.config import load_config, save_config
from stageflow.state import StateStore


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context, tools
        if user_prompt.startswith("Stage: review"):
            yield "Looked at the diff.\n"
            yield '{"status": "needs_review", "diagnostics": ["BLOCKER: helper naming"]}'
            return
        yield "done\n"
        yield '{"status": "success"}'


@pytest.fixture
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        "stageflow.cli._build_backend", lambda config, repo_root, state: FakeBackend()
    )
    return CliRunner()


def _run_id(output: str) -> str:
    match = re.search(r"Run ID: (run-[0-9a-f]{10})", output)
    assert match, output
    return match.group(1)


def test_cli_review_lifecycle(runner: CliRunner, tmp_path: Path) -> None:
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "stageflow.toml").exists()
    assert (tmp_path / ".stageflow" / "knowledge").is_dir()

    plan_result = runner.invoke(cli, ["plan", "Fix crash on save", "--skip", "lint"])
    assert plan_result.exit_code == 0
    plan = json.loads(plan_result.output)
    assert plan["groups"] == [["diagnose"], ["implement"], ["test"], ["review"]]

    run_result = runner.invoke(cli, ["run", "Fix crash on save", "--id", "T-1"])
    assert run_result.exit_code == 0
    assert "Status: awaiting_review" in run_result.output
    assert "Awaiting review: review" in run_result.output
    run_id = _run_id(run_result.output)

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert json.loads(status_result.output)["runs"][0]["status"] == "awaiting_review"

    early_resume = runner.invoke(cli, ["resume", run_id])
    assert early_resume.exit_code != 0
    assert "still awaiting review" in early_resume.output

    review_result = runner.invoke(cli, ["review", run_id, "review", "approve", "--resume"])
    assert review_result.exit_code == 0
    assert "Recorded approve for review" in review_result.output
    assert "Status: completed" in review_result.output

    detail = json.loads(runner.invoke(cli, ["status", run_id]).output)
    assert detail["status"] == "completed"
    assert detail["results"][-1]["review"] == "approve"

    query_result = runner.invoke(cli, ["memory", "query", "--category", "pattern"])
    assert query_result.exit_code == 0
    expected = "bug_fix sequence: diagnose -> implement -> test -> lint -> review"
    assert expected in query_result.output

    abort_result = runner.invoke(cli, ["abort", run_id])
    assert abort_result.exit_code != 0
    assert "already completed" in abort_result.output


def test_cli_batch_with_auto_review(runner: CliRunner, tmp_path: Path) -> None:
    assert runner.invoke(cli, ["init"]).exit_code == 0
    config_path = tmp_path / "stageflow.toml"
    config = load_config(config_path)
    config.project.review_mode = "auto"
    save_config(config_path, config)

    tasks_file = tmp_path / "sprint.toml"
    tasks_file.write_text(
        "\n".join(
            [
                "[[tasks]]",
                'id = "A"',
                'title = "Fix login crash"',
                "",
                "[[tasks]]",
                'id = "B"',
                'title = "Fix logout crash"',
                'depends_on = ["A"]',
            ]
        ),
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["batch", str(tasks_file)])

    assert result.exit_code == 0
    assert "Wave 1: A" in result.output
    assert "Wave 2: B" in result.output
    assert re.search(r"^B run-[0-9a-f]{10} completed$", result.output, re.MULTILINE)


def test_cli_reports_ambiguity_and_bad_input(runner: CliRunner, tmp_path: Path) -> None:
    ambiguous = runner.invoke(cli, ["run", "Update things"])
    assert ambiguous.exit_code != 0
    assert "Re-run with --answer" in ambiguous.output

    answered = runner.invoke(cli, ["plan", "Update things", "--answer", "refactor"])
    assert answered.exit_code == 0
    assert json.loads(answered.output)["task_type"] == "refactor"

    bad_batch = tmp_path / "tasks.json"
    bad_batch.write_text(json.dumps({"tasks": "nope"}), encoding="utf-8")
    batch_result = runner.invoke(cli, ["batch", str(bad_batch)])
    assert batch_result.exit_code != 0
    assert "must contain a list of task objects" in batch_result.output

    resume_result = runner.invoke(cli, ["resume"])
    assert resume_result.exit_code != 0


def test_cli_memory_and_registry_commands(runner: CliRunner) -> None:
    added = runner.invoke(
        cli,
        ["memory", "add", "learning", "Use csv.writer", "--tag", "csv", "--stage", "implement"],
    )
    assert added.exit_code == 0
    assert "Added learning-" in added.output

    found = runner.invoke(cli, ["memory", "query", "csv.writer", "--days", "1"])
    assert "Use csv.writer" in found.output
    missing = runner.invoke(cli, ["memory", "query", "--category", "mistake"])
    assert "No entries found." in missing.output

    rebuilt = runner.invoke(cli, ["memory", "rebuild", "--category", "learning"])
    assert "learning: 1 entries indexed" in rebuilt.output

    merged = runner.invoke(cli, ["registry", "set", "modules", "core", '{"path": "src/core"}'])
    assert merged.output.strip() == "Merged modules/core"
    record = runner.invoke(cli, ["registry", "get", "modules", "core"])
    assert json.loads(record.output) == {"path": "src/core"}
    listing = runner.invoke(cli, ["registry", "list", "modules"])
    assert listing.output.strip() == "core"
    bad = runner.invoke(cli, ["registry", "set", "modules", "x", "[1]"])
    assert bad.exit_code != 0


def test_backend_events_are_counted(tmp_path: Path) -> None:
    state = StateStore(tmp_path)

    _record_backend_event(state, {"event": "backend_retry", "backend": "claude"})
    _record_backend_event(state, {"event": "backend_retry", "backend": "claude"})
    _record_backend_event(state, {"event": "backend_fallback_success", "backend": "codex"})

    metrics = state.get_json("metrics")
    assert metrics["backend_retry_count"] == 2
    assert metrics["backend_fallback_count"] == 1
    assert [event["event"] for event in metrics["backend_events"]][-1] == "backend_fallback_success"
