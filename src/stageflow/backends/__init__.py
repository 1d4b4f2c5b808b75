from stageflow.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from stageflow.backends.cli import ClaudeCodeBackend, CodexBackend, CommandBackend
from stageflow.backends.openai_sdk import OpenAIBackend
from stageflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
