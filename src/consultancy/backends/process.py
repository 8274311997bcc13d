from __future__ import annotations

import asyncio
import json
from abc import abstractmethod
from collections.abc import AsyncIterator
from contextlib import suppress
from pathlib import Path
from typing import Any

import structlog

from consultancy.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    GenerationBackend,
)

logger = structlog.get_logger()


def extract_event_text(event: dict[str, Any]) -> str:
    """Pull the text payload out of one streamed JSON event."""
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    result = event.get("result")
    if isinstance(result, str):
        return result
    return ""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def render_user_prompt(
    user_prompt: str,
    context: dict[str, Any],
    tools: list[str] | None,
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


class StreamingProcessBackend(GenerationBackend):
    """Runs a generation CLI and decodes its JSON-lines stdout into text chunks."""

    name = "process"
    binary_label = "CLI"
    passthrough_plain_lines = True

    def __init__(self, binary: str, working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    @abstractmethod
    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        raise NotImplementedError

    def process_env(self, system_prompt: str) -> dict[str, str] | None:
        return None

    async def _spawn(self, command: list[str], env: dict[str, str] | None):
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.binary_label} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

    async def _stream(
        self, command: list[str], env: dict[str, str] | None
    ) -> AsyncIterator[str]:
        logger.debug("backend_process_start", backend=self.name, command=command[:3])
        process = await self._spawn(command, env)
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.binary_label} backend did not expose stdout.",
                backend=self.name,
                retriable=False,
            )

        try:
            async for chunk in self._decode_stdout(process.stdout):
                yield chunk
            return_code = await process.wait()
        finally:
            if process.returncode is None:
                # consumer gave up; the child must not outlive the generation
                logger.debug("backend_process_abandoned", backend=self.name)
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.binary_label} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        logger.debug("backend_process_exit", backend=self.name, exit_code=return_code)

    async def _decode_stdout(self, stdout: AsyncIterator[bytes]) -> AsyncIterator[str]:
        parse_buffer = ""
        async for raw_line in stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                if self.passthrough_plain_lines:
                    yield line
                continue

            if not isinstance(event, dict):
                continue
            text = extract_event_text(event)
            if text:
                yield text

        if parse_buffer and self.passthrough_plain_lines:
            yield parse_buffer

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        async for chunk in self._stream(command, self.process_env(system_prompt)):
            yield chunk
