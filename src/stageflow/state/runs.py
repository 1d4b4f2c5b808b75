from __future__ import annotations

from typing import Any

from stageflow.errors import RunStateError
from stageflow.models import RunState, RunStatus
from stageflow.state.store import StateStore


class RunStore:
    """Durable run and batch records. Runs stay queryable until explicitly aborted."""

    def __init__(self, state: StateStore) -> None:
        self.state = state

    def save(self, run: RunState) -> None:
        run.touch()
        payload = run.to_dict()

        def _updater(current: Any) -> dict[str, Any]:
            runs = current if isinstance(current, dict) else {}
            runs[run.run_id] = payload
            return runs

        self.state.update_json("runs", _updater, default={})

    def get(self, run_id: str) -> RunState:
        runs = self.state.get_json("runs", default={})
        payload = runs.get(run_id) if isinstance(runs, dict) else None
        if not isinstance(payload, dict):
            raise RunStateError(f"Unknown run: {run_id}")
        return RunState.from_dict(payload)

    def list(self, status: RunStatus | None = None) -> list[RunState]:
        runs = self.state.get_json("runs", default={})
        if not isinstance(runs, dict):
            return []
        states = [RunState.from_dict(item) for item in runs.values() if isinstance(item, dict)]
        if status is not None:
            states = [run for run in states if run.status == status]
        return sorted(states, key=lambda run: (run.created_at, run.run_id))

    def save_batch(self, batch_id: str, record: dict[str, Any]) -> None:
        def _updater(current: Any) -> dict[str, Any]:
            batches = current if isinstance(current, dict) else {}
            batches[batch_id] = record
            return batches

        self.state.update_json("batches", _updater, default={})

    def get_batch(self, batch_id: str) -> dict[str, Any]:
        batches = self.state.get_json("batches", default={})
        record = batches.get(batch_id) if isinstance(batches, dict) else None
        if not isinstance(record, dict):
            raise RunStateError(f"Unknown batch: {batch_id}")
        return record

    def list_batches(self) -> dict[str, dict[str, Any]]:
        batches = self.state.get_json("batches", default={})
        return batches if isinstance(batches, dict) else {}
