import json
from pathlib import Path

import pytest

from stageflow.errors import RunStateError, StateStoreError
from stageflow.models import (
    FailureKind,
    RunState,
    RunStatus,
    StagePlan,
    StageResult,
    Task,
    TaskType,
)
from stageflow.state import RunStore, StateStore


def _run_state(run_id: str = "run-1") -> RunState:
    task = Task(id="T-1", title="Fix crash on save", links=("https://example.com/1",))
    plan = StagePlan(
        task_id="T-1",
        task_type=TaskType.BUG_FIX,
        groups=[("diagnose",), ("implement",), ("test", "lint")],
        decisions={"diagnose": "run"},
        skipped=["review"],
    )
    return RunState(run_id=run_id, task=task, plan=plan)


def test_state_store_roundtrip(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    payload = {"auth": {"owner": "core"}}
    store.set_json("modules", payload)

    assert store.get_json("modules") == payload
    assert (tmp_path / "state" / "modules.json").exists()


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    local_path = tmp_path / "state" / "conventions.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("conventions") == {"legacy": True}

    store.set_json("conventions", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("runs", {"count": 1})
    first = store.get_envelope("runs")

    updated = store.update_json("runs", lambda current: {"count": current["count"] + 1})
    second = store.get_envelope("runs")

    assert updated == {"count": 2}
    assert second["revision"] == first["revision"] + 1


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("batches", {"a": 1})
    revision = store.get_envelope("batches")["revision"]
    store.set_json("batches", {"a": 2})

    with pytest.raises(StateStoreError, match="Concurrent state update"):
        store.set_json("batches", {"a": 3}, expected_revision=revision)


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError, match="Unsupported namespace"):
        store.get_json("secrets")


def test_run_store_roundtrip_keeps_results_and_reviews(tmp_path: Path) -> None:
    runs = RunStore(StateStore(tmp_path))
    run = _run_state()
    run.status = RunStatus.AWAITING_REVIEW
    run.attempts_by_stage["implement"] = 1
    run.results.append(StageResult.failure("implement", FailureKind.COMPILE, "missing symbol"))
    pending = StageResult.needs_review("diagnose", "needs human", output="trace")
    run.pending_reviews["diagnose"] = pending
    run.review_decisions["diagnose"] = {"action": "approve", "note": ""}
    run.memory_cursor = 1
    runs.save(run)

    loaded = runs.get("run-1")

    assert loaded.task == run.task
    assert loaded.plan.groups == [("diagnose",), ("implement",), ("test", "lint")]
    assert loaded.status is RunStatus.AWAITING_REVIEW
    assert loaded.attempts_by_stage == {"implement": 1}
    assert loaded.results[0].failure_kind is FailureKind.COMPILE
    assert loaded.pending_reviews["diagnose"].artifacts == {"output": "trace"}
    assert loaded.review_decisions == {"diagnose": {"action": "approve", "note": ""}}
    assert loaded.memory_cursor == 1


def test_run_store_lists_by_status_and_rejects_unknown(tmp_path: Path) -> None:
    runs = RunStore(StateStore(tmp_path))
    first = _run_state("run-1")
    second = _run_state("run-2")
    second.status = RunStatus.COMPLETED
    runs.save(first)
    runs.save(second)

    assert [run.run_id for run in runs.list()] == ["run-1", "run-2"]
    assert [run.run_id for run in runs.list(RunStatus.COMPLETED)] == ["run-2"]
    with pytest.raises(RunStateError):
        runs.get("run-404")


def test_batch_records_roundtrip(tmp_path: Path) -> None:
    runs = RunStore(StateStore(tmp_path))
    runs.save_batch("batch-1", {"waves": [["A"], ["B"]], "runs": {"A": "run-a"}})

    assert runs.get_batch("batch-1")["waves"] == [["A"], ["B"]]
    assert list(runs.list_batches()) == ["batch-1"]
    with pytest.raises(RunStateError):
        runs.get_batch("batch-2")
