"""Backends that drive a coding-agent CLI emitting JSON lines on stdout."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from stageflow.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    appears_partial_json,
    extract_event_content,
    render_user_prompt,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


class CommandBackend(AgentBackend):
    """Runs ``build_command(...)`` and yields the text content of each JSON event.

    Non-JSON stdout lines are passed through unless ``passthrough_text`` is off.
    """

    name = "command"
    passthrough_text = True

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        raise NotImplementedError

    def build_env(self, system_prompt_file: str) -> dict[str, str] | None:
        return None

    def _cwd(self, context: dict[str, Any]) -> str | None:
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            return cwd_override
        return str(self.working_directory) if self.working_directory else None

    async def _spawn(
        self, command: list[str], cwd: str | None, env: dict[str, str] | None
    ) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} process has no stdout pipe",
                backend=self.name,
                retriable=False,
            )
        return process

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Kill a child whose output is no longer being read, then reap it."""

        if process.returncode is not None:
            return
        logger.warning("%s: killing unfinished process %s", self.name, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    def _frame(self, pending: str, line: str) -> tuple[str, list[str]]:
        """Feed one stdout line; return the new pending buffer and any text to yield."""

        candidate = pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if appears_partial_json(candidate):
                return candidate, []
            if self.passthrough_text:
                return "", [line]
            logger.debug("%s: skipped non-JSON output %r", self.name, line[:200])
            return "", []
        content = extract_event_content(event) if isinstance(event, dict) else None
        return "", [content] if content else []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as prompt_file:
            prompt_file.write(system_prompt)
            prompt_file.flush()

            self._emit(
                {
                    "event": f"{self.name}_cli_start",
                    "command": command[:4],
                    "has_context": bool(context),
                    "model": context.get("model"),
                }
            )
            env = self.build_env(prompt_file.name)
            process = await self._spawn(command, self._cwd(context), env)

            pending = ""
            drained = False
            try:
                async for raw in process.stdout:
                    line = raw.decode("utf-8", errors="replace").strip()
                    if line:
                        pending, texts = self._frame(pending, line)
                        for text in texts:
                            yield text
                drained = True
            finally:
                if not drained:
                    await self._terminate(process)
            if pending and self.passthrough_text:
                yield pending

            exit_code = await process.wait()
            stderr = b"" if process.stderr is None else await process.stderr.read()
            self._emit({"event": f"{self.name}_cli_exit", "exit_code": exit_code})
            if exit_code:
                detail = stderr.decode("utf-8", errors="replace").strip()
                raise BackendExecutionError(
                    f"{self.name} exited with code {exit_code}: {detail}",
                    backend=self.name,
                    exit_code=exit_code,
                    retriable=True,
                )


class ClaudeCodeBackend(CommandBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_user_prompt(user_prompt, context, tools),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["--model", requested_model.strip()])
        return command

    def build_env(self, system_prompt_file: str) -> dict[str, str] | None:
        env = os.environ.copy()
        env["CLAUDE_MD"] = system_prompt_file
        return env


class CodexBackend(CommandBackend):
    name = "codex"
    passthrough_text = False

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        command.append(render_user_prompt(user_prompt, context, tools))
        return command
