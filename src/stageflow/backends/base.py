from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


def render_user_prompt(
    user_prompt: str,
    context: dict[str, Any],
    tools: list[str] | None = None,
) -> str:
    parts = [user_prompt]
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    if visible:
        parts.append("Context JSON:")
        parts.append(json.dumps(visible, ensure_ascii=False, indent=2, default=str))
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


def extract_event_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        msg_content = message.get("content")
        if isinstance(msg_content, str):
            return msg_content

    result = event.get("result")
    if isinstance(result, str) and event.get("type") == "result":
        return result
    return ""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""
