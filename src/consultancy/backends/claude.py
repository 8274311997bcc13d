from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from consultancy.backends.process import StreamingProcessBackend, render_user_prompt


class ClaudeCodeBackend(StreamingProcessBackend):
    name = "claude"
    binary_label = "Claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        super().__init__(binary, working_directory)

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
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()

            env = os.environ.copy()
            env["CLAUDE_MD"] = temp_file.name
            async for chunk in self._stream(command, env):
                yield chunk
