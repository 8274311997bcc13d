from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from consultancy.backends.base import GenerationBackend
from consultancy.roles import CAPABILITIES, Role, RoleCapability


@dataclass(slots=True)
class SpecialistResponse:
    role: Role
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    """A team member that speaks through the shared generation backend."""

    role: Role = Role.ASSOCIATE
    fallback_prompt: str = "You are a management consultant."

    def __init__(self, backend: GenerationBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._build_system_prompt()

    @property
    def capability(self) -> RoleCapability:
        return CAPABILITIES[self.role]

    def _build_system_prompt(self) -> str:
        capability = self.capability
        return "\n".join(
            [
                self.fallback_prompt.strip(),
                f"Skills: {', '.join(capability.skills)}.",
                f"Communication style: {capability.communication_style}.",
            ]
        )

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> SpecialistResponse:
        run_context = dict(context)
        run_context.setdefault("role", str(self.role))
        if self.model:
            run_context["model"] = self.model

        content = await self.backend.generate(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
            tools=tools,
        )
        return SpecialistResponse(
            role=self.role,
            content=content,
            metadata={"instruction": instruction, "model": self.model},
        )
