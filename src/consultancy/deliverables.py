from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from consultancy.models import WorkModule
from consultancy.roles import CAPABILITIES, Role
from consultancy.specialists.base import SpecialistAgent
from consultancy.structured import extract_first_json_object, first_key, string_list, text_field

logger = structlog.get_logger()

FALLBACK_QUALITY_SCORE = 0.3

REQUIRED_SECTIONS: tuple[str, ...] = (
    "executive summary",
    "key findings",
    "detailed analysis",
    "evidence",
    "insights",
    "recommendations",
    "next steps",
    "quality self-assessment",
)

QUALITY_LADDER: tuple[tuple[tuple[str, ...], float], ...] = (
    (("excellent", "outstanding"), 0.95),
    (("very good", "high quality"), 0.90),
    (("good", "solid"), 0.85),
    (("adequate", "satisfactory"), 0.75),
    (("needs improvement", "below"), 0.65),
)
DEFAULT_SELF_ASSESSMENT_SCORE = 0.80


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _humanize(task_type: str) -> str:
    return task_type.replace("_", " ")


@dataclass(slots=True)
class Deliverable:
    module_id: str
    role: Role
    task_type: str
    title: str
    executive_summary: str
    findings: list[str]
    detailed_analysis: str
    evidence: list[str]
    insights: list[str]
    recommendations: list[str]
    next_steps: list[str]
    quality_score: float
    quality_assessment: str = ""
    completed_at: str = field(default_factory=_utcnow_iso)
    estimated_hours: float = 0.0
    actual_hours: float = 0.0
    fallback: bool = False
    fallback_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["role"] = str(self.role)
        return payload


def quality_from_assessment(text: str | None) -> float:
    """Map free-text self-assessment onto the fixed keyword ladder."""
    if not isinstance(text, str):
        return DEFAULT_SELF_ASSESSMENT_SCORE
    lowered = text.lower()
    for keywords, score in QUALITY_LADDER:
        if any(keyword in lowered for keyword in keywords):
            return score
    return DEFAULT_SELF_ASSESSMENT_SCORE


def _numeric_quality(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if 0.0 <= float(value) <= 1.0:
        return float(value)
    return None


def deliverable_from_payload(
    payload: Mapping[str, Any],
    module: WorkModule,
    *,
    actual_hours: float = 0.0,
) -> Deliverable:
    topic = _humanize(module.task_type)
    assessment = first_key(
        payload, "quality_self_assessment", "quality_assessment", "self_assessment"
    )
    assessment_text = assessment if isinstance(assessment, str) else ""
    quality = _numeric_quality(first_key(payload, "quality_score", "qualityScore"))
    if quality is None:
        quality = quality_from_assessment(assessment_text)

    return Deliverable(
        module_id=module.id,
        role=module.role,
        task_type=module.task_type,
        title=text_field(payload.get("title"), module.title or f"{topic.title()} Report"),
        executive_summary=text_field(
            first_key(payload, "executive_summary", "executiveSummary", "summary"),
            f"Summary of {topic} for the engagement.",
        ),
        findings=string_list(
            first_key(payload, "key_findings", "findings"),
            f"Analysis completed for {topic}",
        ),
        detailed_analysis=text_field(
            first_key(payload, "detailed_analysis", "analysis"),
            f"Detailed analysis for {topic}.",
        ),
        evidence=string_list(
            first_key(payload, "evidence", "data"),
            f"Supporting evidence gathered for {topic}",
        ),
        insights=string_list(payload.get("insights"), f"Key insights generated for {topic}"),
        recommendations=string_list(
            payload.get("recommendations"),
            f"Recommendations provided for {topic}",
        ),
        next_steps=string_list(
            first_key(payload, "next_steps", "nextSteps"),
            f"Review {topic} results with the engagement team",
        ),
        quality_score=quality,
        quality_assessment=assessment_text,
        estimated_hours=module.estimated_hours,
        actual_hours=actual_hours,
    )


def fallback_deliverable(
    module: WorkModule,
    reason: str,
    *,
    actual_hours: float = 0.0,
) -> Deliverable:
    topic = _humanize(module.task_type)
    summary = f"Template-only output for {topic}; structured analysis was unavailable."
    return Deliverable(
        module_id=module.id,
        role=module.role,
        task_type=module.task_type,
        title=f"{module.title or topic.title()} (fallback)",
        executive_summary=summary,
        findings=[f"{topic.capitalize()} analysis could not be completed automatically"],
        detailed_analysis=summary,
        evidence=["No evidence collected"],
        insights=[f"{topic.capitalize()} requires manual follow-up"],
        recommendations=[f"Re-run {topic} once generation is available"],
        next_steps=[f"Assign {topic} for manual review"],
        quality_score=FALLBACK_QUALITY_SCORE,
        quality_assessment="fallback",
        estimated_hours=module.estimated_hours,
        actual_hours=actual_hours,
        fallback=True,
        fallback_reason=reason,
    )


def build_module_prompt(module: WorkModule, brief: str) -> str:
    capability = CAPABILITIES[module.role]
    sections = "\n".join(f"- {section}" for section in REQUIRED_SECTIONS)
    return (
        f"You are the {capability.title} on this engagement.\n"
        f"Work module: {module.title or _humanize(module.task_type)} ({module.task_type})\n"
        f"Estimated effort: {module.estimated_hours}h, complexity {module.complexity}\n"
        f"Your skills: {', '.join(capability.skills)}\n\n"
        f"Engagement brief:\n{brief}\n\n"
        f"Cover every required section:\n{sections}\n\n"
        "Respond with one JSON object using the keys: title, executive_summary, "
        "key_findings, detailed_analysis, evidence, insights, recommendations, "
        "next_steps, quality_self_assessment. List-valued keys hold arrays of strings."
    )


class DeliverableSynthesizer:
    """Turns a completed module into a Deliverable; never raises on generation errors."""

    def __init__(self, agents: Mapping[Role, SpecialistAgent], brief: str = "") -> None:
        self.agents = agents
        self.brief = brief

    async def synthesize(self, module: WorkModule, *, actual_hours: float = 0.0) -> Deliverable:
        agent = self.agents.get(module.role)
        if agent is None:
            return fallback_deliverable(
                module, f"No agent registered for role '{module.role}'.", actual_hours=actual_hours
            )

        prompt = build_module_prompt(module, self.brief or "No brief provided.")
        context = {
            "module_id": module.id,
            "task_type": module.task_type,
            "skills": list(CAPABILITIES[module.role].skills),
        }
        try:
            response = await agent.run(prompt, context)
        except Exception as exc:
            logger.warning(
                "deliverable_generation_failed",
                module_id=module.id,
                role=str(module.role),
                error=str(exc),
            )
            return fallback_deliverable(
                module, f"generation failed: {exc}", actual_hours=actual_hours
            )

        payload = extract_first_json_object(response.content)
        if payload is None:
            logger.warning("deliverable_unstructured", module_id=module.id, role=str(module.role))
            return fallback_deliverable(
                module, "no structured JSON object in response", actual_hours=actual_hours
            )
        try:
            return deliverable_from_payload(payload, module, actual_hours=actual_hours)
        except (TypeError, ValueError) as exc:
            logger.warning("deliverable_parse_failed", module_id=module.id, error=str(exc))
            return fallback_deliverable(module, f"parse failed: {exc}", actual_hours=actual_hours)


@dataclass(slots=True)
class FinalReport:
    project_id: str
    title: str
    executive_summary: str
    key_findings: list[str]
    recommendations: list[str]
    next_steps: list[str]
    module_deliverables: list[dict[str, Any]]
    quality_score: float
    team_synthesis: str | None = None
    validation: dict[str, Any] | None = None
    generated_at: str = field(default_factory=_utcnow_iso)

    @property
    def metrics(self) -> dict[str, Any]:
        fallbacks = sum(1 for item in self.module_deliverables if item.get("fallback"))
        return {
            "total_deliverables": len(self.module_deliverables),
            "fallback_deliverables": fallbacks,
            "average_quality_score": self.quality_score,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["metrics"] = self.metrics
        return payload


def _ordered_union(groups: list[list[str]]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        merged.extend(item for item in group if item not in merged)
    return merged


def integrate_deliverables(
    project_id: str,
    deliverables: list[Deliverable],
    *,
    scope: str,
    quality_score: float,
    team_synthesis: str | None = None,
) -> FinalReport:
    """Assemble module deliverables into one report without another generation call.

    Findings, recommendations and next steps are carried over verbatim in module
    order; exact duplicates across modules are listed once.
    """
    summaries = [item.executive_summary for item in deliverables if item.executive_summary]
    overview = f"Engagement scope: {scope}" if scope else "Engagement overview"
    executive_summary = "\n\n".join([overview, *summaries])
    return FinalReport(
        project_id=project_id,
        title=f"Consulting Report: {scope[:80]}" if scope else "Consulting Report",
        executive_summary=executive_summary,
        key_findings=_ordered_union([item.findings for item in deliverables]),
        recommendations=_ordered_union([item.recommendations for item in deliverables]),
        next_steps=_ordered_union([item.next_steps for item in deliverables]),
        module_deliverables=[item.to_dict() for item in deliverables],
        quality_score=quality_score,
        team_synthesis=team_synthesis,
    )
