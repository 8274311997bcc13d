from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a generation backend fails to produce text."""

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
    """Raised when generation exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend CLI process cannot be started or read."""


class GenerationBackend(ABC):
    """Opaque text generation capability used by every role agent."""

    name: str = "backend"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Stream textual chunks for one prompt."""

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any] | None = None,
        tools: list[str] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context or {}, tools):
            chunks.append(chunk)
        return "".join(chunks).strip()
