from stageflow.agents.backend_agent import ROLE_PROMPTS, BackendStageAgent, interpret_output
from stageflow.agents.base import (
    AgentRegistry,
    CallableAgent,
    StageAgent,
    StageInput,
    coerce_result,
)

__all__ = [
    "ROLE_PROMPTS",
    "AgentRegistry",
    "BackendStageAgent",
    "CallableAgent",
    "StageAgent",
    "StageInput",
    "coerce_result",
    "interpret_output",
]
