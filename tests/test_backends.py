import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from consultancy.backends import RetryPolicy
from consultancy.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    GenerationBackend,
)
from consultancy.backends.claude import ClaudeCodeBackend
from consultancy.backends.codex import CodexBackend
from consultancy.backends.process import StreamingProcessBackend, render_user_prompt
from consultancy.backends.resilient import ResilientBackend


class AlwaysFailBackend(GenerationBackend):
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


class SlowBackend(GenerationBackend):
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


class SuccessBackend(GenerationBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "ok"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self.payload = payload

    async def read(self) -> bytes:
        return self.payload


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.return_code = return_code
        self.returncode: int | None = None
        self.killed = False

    async def wait(self) -> int:
        self.returncode = self.return_code
        return self.return_code

    def kill(self) -> None:
        self.killed = True
        self.return_code = -9


class HangingStdout(FakeStdout):
    async def __anext__(self) -> bytes:
        await asyncio.sleep(60)
        raise StopAsyncIteration


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> dict[str, Any]:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["kwargs"] = kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return captured


def _drain(backend: GenerationBackend) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context={}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def _resilient(
    primary: GenerationBackend,
    fallback: GenerationBackend,
    events: list[dict[str, Any]],
    *,
    timeout_seconds: float = 5.0,
) -> ResilientBackend:
    return ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(
            max_retries=1, backoff_seconds=0.0, timeout_seconds=timeout_seconds
        ),
        event_hook=events.append,
    )


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="size the market",
        context={"phase": "execution", "model": "gpt-5-codex"},
        tools=["search"],
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--output-format" not in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert any(part.startswith("instructions=") for part in command)
    assert "size the market" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "size the market", {"model": "sonnet"})

    assert command[0:2] == ["claude", "-p"]
    assert "size the market" in command[2]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--model") + 1] == "sonnet"


def test_rendered_prompt_hides_private_context_keys() -> None:
    rendered = render_user_prompt("Brief", {"phase": "review", "_internal": "x"}, None)

    assert '"phase": "review"' in rendered
    assert "_internal" not in rendered
    assert "Allowed tools:" not in rendered
    assert render_user_prompt("Brief", {}, None) == "Brief"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()

    output = _drain(_resilient(primary, SuccessBackend(), events))

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names == [
        "backend_attempt_failed",
        "backend_retry",
        "backend_attempt_failed",
        "backend_fallback_success",
    ]


def test_non_retriable_failure_skips_straight_to_fallback() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend(retriable=False)

    output = _drain(_resilient(primary, SuccessBackend(), events))

    assert output == "ok"
    assert primary.calls == 1
    assert "backend_retry" not in [event["event"] for event in events]


def test_slow_attempts_time_out_and_fail_over() -> None:
    events: list[dict[str, Any]] = []

    output = _drain(_resilient(SlowBackend(), SuccessBackend(), events, timeout_seconds=0.01))

    assert output == "ok"
    failures = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert len(failures) == 2
    assert all("timed out" in failure["error"] for failure in failures)


def test_all_attempts_failing_raises_non_retriable_error() -> None:
    events: list[dict[str, Any]] = []
    backend = _resilient(AlwaysFailBackend(), AlwaysFailBackend(), events)

    with pytest.raises(BackendExecutionError) as exc_info:
        _drain(backend)

    assert "All backend attempts failed" in str(exc_info.value)
    assert exc_info.value.retriable is False
    assert [event["event"] for event in events].count("backend_attempt_failed") == 4


def test_codex_stream_joins_split_json_and_drops_status_lines(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = FakeProcess(
        [
            b'{"type":"response.output_text.delta","content":"hello"}\n',
            b"noise-before-json\n",
            b'{"type":"response.output_text.delta",\n',
            b'"delta":" world"}\n',
            b'{"type":"response.completed"}\n',
        ]
    )
    captured = _patch_process(monkeypatch, process)

    output = _drain(CodexBackend())

    assert output == "hello world"
    assert captured["args"][0:2] == ("codex", "exec")


def test_claude_stream_passes_plain_lines_and_reports_exit_code(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = FakeProcess(
        [b'{"type":"assistant","message":{"content":"partial"}}\n', b"plain text\n"],
        return_code=2,
        stderr=b"bad auth",
    )
    captured = _patch_process(monkeypatch, process)

    async def _run() -> list[str]:
        chunks: list[str] = []
        async for chunk in ClaudeCodeBackend().execute("system", "user", context={}):
            chunks.append(chunk)
        return chunks

    with pytest.raises(BackendExecutionError) as exc_info:
        asyncio.run(_run())

    assert exc_info.value.exit_code == 2
    assert exc_info.value.retriable is True
    assert "bad auth" in str(exc_info.value)
    assert "CLAUDE_MD" in captured["kwargs"]["env"]


def test_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("codex")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendProcessError) as exc_info:
        _drain(CodexBackend(binary="missing-codex"))

    assert exc_info.value.retriable is False
    assert "missing-codex" in str(exc_info.value)


def test_abandoned_generation_kills_the_child_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([])
    process.stdout = HangingStdout([])
    _patch_process(monkeypatch, process)

    async def _run() -> list[str]:
        return [chunk async for chunk in CodexBackend().execute("system", "user", context={})]

    async def _give_up() -> None:
        await asyncio.wait_for(_run(), timeout=0.05)

    with pytest.raises(TimeoutError):
        asyncio.run(_give_up())

    assert process.killed is True
    assert process.returncode == -9


def test_process_backend_requires_a_command_builder() -> None:
    with pytest.raises(TypeError):
        StreamingProcessBackend("some-cli")
