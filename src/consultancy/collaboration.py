"""Turn-based team collaboration over a shared working document.

Contributions may carry two inline markers:

``TEAM_COMPLETE``
    the contributor considers the work finished; the session ends at once.
``HANDOFF_TO: <name> - <reason>``
    asks for a specific teammate to take the next turn.

Markers come from generated free text, so parsing is total and falls back to
"no signal" on anything it cannot read.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from consultancy.errors import CollaborationError
from consultancy.roles import CAPABILITIES, Role
from consultancy.specialists.base import SpecialistAgent

logger = structlog.get_logger()

COMPLETE_MARKER = "TEAM_COMPLETE"
HANDOFF_PATTERN = re.compile(r"HANDOFF_TO:\s*([^-\n]+)(?:\s*-\s*(.+))?", re.IGNORECASE)
REFERENCE_PHRASES = ("building on", "adding to", "expanding", "agree with", "complement")
NEEDS_WORK_PHRASES = ("needs more work", "incomplete")
HIGH_QUALITY_PHRASES = ("looks good", "comprehensive", "complete")

PHASE_ANALYSIS = "analysis"
PHASE_BUILDING = "collaborative_building"
PHASE_POLISH = "final_polish"


@dataclass(frozen=True, slots=True)
class ControlSignals:
    complete: bool = False
    handoff_to: str | None = None
    handoff_reason: str | None = None
    quality: str | None = None


NO_SIGNAL = ControlSignals()


def parse_control_signals(text: Any) -> ControlSignals:
    """Extract completion, handoff and quality hints from a contribution."""
    if not isinstance(text, str) or not text:
        return NO_SIGNAL

    complete = COMPLETE_MARKER in text
    handoff_to: str | None = None
    handoff_reason: str | None = None
    match = HANDOFF_PATTERN.search(text)
    if match:
        target = match.group(1).strip().strip("[]").strip()
        handoff_to = target or None
        if handoff_to and match.group(2):
            handoff_reason = match.group(2).strip() or None

    lowered = text.lower()
    quality: str | None = None
    if any(phrase in lowered for phrase in NEEDS_WORK_PHRASES):
        quality = "needs_improvement"
    elif any(phrase in lowered for phrase in HIGH_QUALITY_PHRASES):
        quality = "high"

    return ControlSignals(
        complete=complete,
        handoff_to=handoff_to,
        handoff_reason=handoff_reason,
        quality=quality,
    )


def estimate_quality(text: str, prior_contributions: int, signals: ControlSignals) -> float:
    score = 0.5
    if len(text) > 300:
        score += 0.1
    if len(text) > 600:
        score += 0.1
    lowered = text.lower()
    if prior_contributions > 1 and any(phrase in lowered for phrase in REFERENCE_PHRASES):
        score += 0.2
    if signals.quality == "high":
        score += 0.2
    if signals.complete:
        score += 0.1
    return min(1.0, round(score, 4))


def phase_for_turn(turn: int) -> str:
    if turn >= 4:
        return PHASE_POLISH
    if turn >= 2:
        return PHASE_BUILDING
    return PHASE_ANALYSIS


@dataclass(slots=True)
class Participant:
    name: str
    role: Role
    agent: SpecialistAgent
    specialty: str = ""
    communication_style: str = ""

    def __post_init__(self) -> None:
        capability = CAPABILITIES[self.role]
        if not self.specialty:
            self.specialty = capability.specialty
        if not self.communication_style:
            self.communication_style = capability.communication_style


@dataclass(frozen=True, slots=True)
class Contribution:
    sequence: int
    participant: str
    role: Role
    content: str
    signals: ControlSignals
    quality: float
    phase: str
    created_at: str = field(
        default_factory=lambda: datetime.now(UTC).replace(microsecond=0).isoformat()
    )


@dataclass(slots=True)
class CollaborationResult:
    contributions: list[Contribution]
    working_document: str
    completion_reason: str
    completion_signals: int
    final_phase: str
    collaboration_type: str = "dynamic_team"

    @property
    def turns(self) -> int:
        return len(self.contributions)

    @property
    def discussion_rounds(self) -> int:
        return self.turns

    @property
    def responses(self) -> list[dict[str, Any]]:
        return [
            {
                "participant": contribution.participant,
                "role": str(contribution.role),
                "content": contribution.content,
                "round": contribution.sequence,
            }
            for contribution in self.contributions
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "responses": self.responses,
            "discussion_rounds": self.discussion_rounds,
            "collaboration_type": self.collaboration_type,
            "final_working_document": self.working_document,
            "completion_reason": self.completion_reason,
            "completion_signals": self.completion_signals,
            "final_phase": self.final_phase,
            "turns": self.turns,
        }


class CollaborationProtocol:
    def __init__(
        self,
        *,
        quality_threshold: float = 0.8,
        completion_signals_required: int = 2,
        preview_chars: int = 200,
    ) -> None:
        self.quality_threshold = quality_threshold
        self.completion_signals_required = max(1, completion_signals_required)
        self.preview_chars = preview_chars

    @staticmethod
    def resolve_handoff(
        target: str | None,
        participants: Sequence[Participant],
        current: Participant,
    ) -> Participant | None:
        if not target:
            return None
        wanted = target.lower()
        for participant in participants:
            if participant is current:
                continue
            name = participant.name.lower()
            if wanted in name or name in wanted or wanted == str(participant.role):
                return participant
        return None

    def _preview(self, content: str) -> str:
        if len(content) <= self.preview_chars:
            return content
        return f"{content[: self.preview_chars]}..."

    def build_turn_prompt(
        self,
        message: str,
        contributor: Participant,
        contributions: Sequence[Contribution],
        phase: str,
    ) -> str:
        lines: list[str] = []
        if contributions:
            lines.extend(["TEAM COLLABORATION IN PROGRESS", "", f"Original Request: {message}", ""])
            lines.append("Team Progress So Far:")
            for index, contribution in enumerate(contributions, start=1):
                lines.append(
                    f"{index}. {contribution.participant} ({contribution.role}): "
                    f"{self._preview(contribution.content)}"
                )
            lines.append("")
        else:
            lines.extend([message, ""])

        lines.extend(
            [
                f"Your Role: You are {contributor.name}, specializing in {contributor.specialty}. "
                f"Your communication style should be {contributor.communication_style}.",
                "",
                f"Current Phase: {phase}",
                "",
                "Team Instructions:",
                "- Build on what your teammates have already contributed",
                f"- Focus on your area of expertise: {contributor.specialty}",
                "- Be concise if others have covered the basics well",
                f'- If you think the work is complete, end with "{COMPLETE_MARKER}"',
                "- If you want a specific teammate to contribute next, end with "
                '"HANDOFF_TO: [Name] - [reason]"',
                "",
                f"Your Contribution (#{len(contributions) + 1}):",
            ]
        )
        return "\n".join(lines)

    async def run(
        self,
        message: str,
        participants: Sequence[Participant],
        max_turns: int = 8,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> CollaborationResult:
        if not participants:
            raise CollaborationError("Collaboration requires at least one participant.")

        team = list(participants)
        turn_limit = max(1, min(max_turns, len(team) * 2))
        contributions: list[Contribution] = []
        document_parts: list[str] = []
        phase = PHASE_ANALYSIS
        signals_count = 0
        override: Participant | None = None
        reason = "contribution_limit"
        turn = 0

        while True:
            if should_stop is not None and should_stop():
                reason = "cancelled"
                break

            turn += 1
            contributor = override or team[(turn - 1) % len(team)]
            override = None
            prompt = self.build_turn_prompt(message, contributor, contributions, phase)
            try:
                response = await contributor.agent.run(
                    prompt,
                    {"phase": phase, "turn": turn, "participant": contributor.name},
                )
            except Exception as exc:
                logger.warning(
                    "collaboration_turn_failed",
                    participant=contributor.name,
                    turn=turn,
                    error=str(exc),
                )
                reason = "generation_failure"
                break

            content = response.content
            signals = parse_control_signals(content)
            quality = estimate_quality(content, len(contributions), signals)
            contributions.append(
                Contribution(
                    sequence=turn,
                    participant=contributor.name,
                    role=contributor.role,
                    content=content,
                    signals=signals,
                    quality=quality,
                    phase=phase,
                )
            )
            document_parts.append(f"### {contributor.name}:\n{content}")
            logger.debug(
                "collaboration_turn",
                participant=contributor.name,
                turn=turn,
                quality=quality,
                complete=signals.complete,
                handoff_to=signals.handoff_to,
            )

            if signals.complete:
                signals_count = self.completion_signals_required
                reason = "explicit_completion"
                break
            if quality >= self.quality_threshold:
                signals_count += 1

            phase = phase_for_turn(turn)
            override = self.resolve_handoff(signals.handoff_to, team, contributor)

            if signals_count >= self.completion_signals_required:
                reason = "quality_threshold"
                break
            if turn >= turn_limit:
                reason = "contribution_limit"
                break

        logger.info(
            "collaboration_finished",
            turns=len(contributions),
            completion_reason=reason,
            completion_signals=signals_count,
        )
        return CollaborationResult(
            contributions=contributions,
            working_document="\n\n".join(document_parts),
            completion_reason=reason,
            completion_signals=signals_count,
            final_phase=phase,
        )
