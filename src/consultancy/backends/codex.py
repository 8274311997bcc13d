from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from consultancy.backends.process import StreamingProcessBackend, render_user_prompt


class CodexBackend(StreamingProcessBackend):
    name = "codex"
    binary_label = "Codex"
    # codex exec interleaves status lines with JSON events
    passthrough_plain_lines = False

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
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
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_user_prompt(user_prompt, context, tools))
        return command
