import asyncio
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from stageflow.backends import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    ClaudeCodeBackend,
    CodexBackend,
    CommandBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from stageflow.backends.openai_sdk import response_text


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "ok"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        await asyncio.sleep(1.0)
        yield "late"


def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context=context or {}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def _fake_process(monkeypatch: pytest.MonkeyPatch, lines: list[bytes], exit_code: int = 0) -> list:
    calls: list[tuple[Any, ...]] = []

    class FakeStdout:
        def __init__(self) -> None:
            self._lines = list(lines)

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if not self._lines:
                raise StopAsyncIteration
            return self._lines.pop(0)

    class FakeStderr:
        async def read(self) -> bytes:
            return b"stderr text"

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout()
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return exit_code

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        calls.append(args)
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return calls


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"stage": "implement", "model": "gpt-5-codex"},
        tools=["read", "write"],
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--output-format" not in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {"_working_directory": "/x"})

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert "--model" not in command
    assert "_working_directory" not in command[2]


def test_codex_backend_drops_non_json_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    _fake_process(
        monkeypatch,
        [
            b'{"type":"response.output_text.delta","content":"hello"}\n',
            b"noise-before-json\n",
            b'{"type":"response.completed"}\n',
        ],
    )

    output = _collect(CodexBackend(event_hook=events.append))

    assert output == "hello"
    assert [event["event"] for event in events] == ["codex_cli_start", "codex_cli_exit"]


def test_claude_backend_passes_text_through(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_process(
        monkeypatch,
        [
            b'{"type":"assistant","message":{"content":"part one "}}\n',
            b"plain text\n",
            b'{"type":"result","result":"done"}\n',
        ],
    )

    assert _collect(ClaudeCodeBackend()) == "part one plain textdone"


def test_nonzero_exit_raises_retriable_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_process(monkeypatch, [b'{"content":"partial"}\n'], exit_code=2)

    with pytest.raises(BackendExecutionError) as excinfo:
        _collect(CodexBackend())

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable
    assert "stderr text" in str(excinfo.value)


class SleepingBackend(CommandBackend):
    name = "sleeper"

    def __init__(self) -> None:
        super().__init__(sys.executable)
        self.processes: list[asyncio.subprocess.Process] = []

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        return [self.binary, "-c", "import time; time.sleep(30)"]

    async def _spawn(self, command, cwd, env):
        process = await super()._spawn(command, cwd, env)
        self.processes.append(process)
        return process


def test_timed_out_command_process_is_killed() -> None:
    sleeper = SleepingBackend()
    backend = ResilientBackend(
        primary_name="sleeper",
        primary_backend=sleeper,
        fallback_name="sleeper",
        fallback_backend=sleeper,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=0.5),
    )

    with pytest.raises(BackendTimeoutError):
        _collect(backend)

    assert len(sleeper.processes) == 2
    assert all(process.returncode is not None for process in sleeper.processes)


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend)

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_attempt_failed") == 2
    assert "backend_retry" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_non_retriable_error_skips_to_fallback() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert _collect(backend) == "ok"
    assert primary.calls == 1


def test_resilient_backend_reports_exhaustion() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="fallback",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        _collect(backend)


def test_resilient_backend_timeout_only_raises_timeout() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=SlowBackend(),
        fallback_name="primary",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
    )

    with pytest.raises(BackendTimeoutError):
        _collect(backend)


def _fake_client(create: Any) -> SimpleNamespace:
    return SimpleNamespace(responses=SimpleNamespace(create=create))


def test_openai_backend_uses_context_model() -> None:
    requests: list[dict[str, Any]] = []

    async def create(**kwargs: Any) -> SimpleNamespace:
        requests.append(kwargs)
        return SimpleNamespace(output_text="  answer  ")

    backend = OpenAIBackend(model="default-model", client=_fake_client(create))

    output = _collect(backend, {"model": "gpt-5-codex", "stage": "plan"})

    assert backend.uses_sdk
    assert output == "answer"
    assert requests[0]["model"] == "gpt-5-codex"
    assert requests[0]["instructions"] == "system"
    assert "Context JSON:" in requests[0]["input"]


def test_openai_response_text_reads_output_items() -> None:
    payload = {
        "output": [
            {"type": "reasoning", "content": []},
            {
                "type": "message",
                "content": [
                    {"type": "output_text", "text": "first "},
                    {"type": "refusal", "text": "ignored"},
                    {"type": "output_text", "text": "second"},
                ],
            },
        ]
    }

    assert response_text(payload) == "first second"
    assert response_text(None) == ""


@pytest.mark.parametrize(("status", "retriable"), [(429, True), (503, True), (400, False)])
def test_openai_backend_classifies_client_errors(status: int, retriable: bool) -> None:
    class StatusError(Exception):
        status_code = status

    async def create(**kwargs: Any) -> None:
        raise StatusError("request rejected")

    with pytest.raises(BackendExecutionError, match="request rejected") as excinfo:
        _collect(OpenAIBackend(client=_fake_client(create)))

    assert excinfo.value.retriable is retriable


def test_retry_policy_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(backoff_seconds=1.0, max_backoff_seconds=3.0)

    assert [policy.delay_for(retry) for retry in range(4)] == [0.0, 1.0, 2.0, 3.0]
