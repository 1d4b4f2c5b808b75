from stageflow.state.runs import RunStore
from stageflow.state.store import StateStore

__all__ = ["RunStore", "StateStore"]
