"""Responses API backend; drops to the codex CLI when no client can be built."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import openai

from stageflow.backends.base import AgentBackend, BackendExecutionError, render_user_prompt
from stageflow.backends.cli import CodexBackend

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-codex"


def response_text(payload: Any) -> str:
    """Concatenate the ``output_text`` parts of a Responses API payload."""

    if payload is None:
        return ""
    direct = payload.get("output_text") if isinstance(payload, dict) else None
    if direct is None:
        direct = getattr(payload, "output_text", None)
    if isinstance(direct, str):
        return direct

    if isinstance(payload, dict):
        output = payload.get("output")
    else:
        output = getattr(payload, "output", None)
    parts: list[str] = []
    for item in output or ():
        content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
        for part in content or ():
            kind = part.get("type") if isinstance(part, dict) else getattr(part, "type", None)
            text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if kind == "output_text" and isinstance(text, str):
                parts.append(text)
    return "".join(parts)


def _retriable(exc: Exception) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return True


class OpenAIBackend(AgentBackend):
    name = "openai"

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        working_directory: Path | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client = client
        if self._client is None:
            try:
                self._client = openai.AsyncOpenAI()
            except openai.OpenAIError as exc:
                logger.info("OpenAI client unavailable (%s); using the codex CLI", exc)

    @property
    def uses_sdk(self) -> bool:
        return self._client is not None

    def _model_for(self, context: dict[str, Any]) -> str:
        requested = context.get("model")
        if isinstance(requested, str) and requested.strip():
            return requested.strip()
        return self.model

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        if self._client is None:
            fallback = self.cli_fallback.execute(system_prompt, user_prompt, context, tools)
            async for chunk in fallback:
                yield chunk
            return

        try:
            payload = await self._client.responses.create(
                model=self._model_for(context),
                instructions=system_prompt,
                input=render_user_prompt(user_prompt, context, tools),
            )
        except Exception as exc:
            raise BackendExecutionError(
                f"OpenAI request failed: {exc}",
                backend=self.name,
                retriable=_retriable(exc),
            ) from exc

        text = response_text(payload).strip()
        if text:
            yield text
