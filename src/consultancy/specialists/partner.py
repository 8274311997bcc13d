from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from consultancy.errors import RequirementsError
from consultancy.models import ClientRequest, Requirements
from consultancy.roles import Role
from consultancy.specialists.base import SpecialistAgent
from consultancy.structured import extract_first_json_object, first_key, string_list

logger = structlog.get_logger()

CONSULTING_TYPE_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("strategy", "strategic"), "strategic_planning"),
    (("market", "competitive"), "market_analysis"),
    (("technical", "architecture"), "technical_assessment"),
    (("acquire", "merger"), "mergers_acquisitions"),
    (("organization", "change"), "organizational_change"),
)

COMPLEXITY_WORDS = {"low": 4, "medium": 7, "high": 8, "very high": 9}

SPECIAL_REQUIREMENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "technical_analysis": ("technical", "architecture", "platform"),
    "regulatory_compliance": ("regulatory", "compliance", "regulation"),
    "change_management": ("change management", "transformation"),
}


def infer_consulting_type(query: str) -> str:
    lowered = (query or "").lower()
    for keywords, consulting_type in CONSULTING_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return consulting_type
    return "general_consulting"


def infer_special_requirements(query: str) -> list[str]:
    lowered = (query or "").lower()
    return [
        requirement
        for requirement, keywords in SPECIAL_REQUIREMENT_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]


def coerce_complexity(value: Any, default: int = 7) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return max(1, min(10, int(round(value))))
    if isinstance(value, str):
        return COMPLEXITY_WORDS.get(value.strip().lower(), default)
    return default


def request_constraints(request: ClientRequest) -> list[str]:
    return [f"Budget: {request.budget}", f"Urgency: {request.urgency}"]


@dataclass(slots=True)
class ValidationOutcome:
    approved: bool
    quality_assessment: str
    client_ready: bool
    feedback: str
    quality_issues: list[str] = field(default_factory=list)
    required_improvements: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PartnerAgent(SpecialistAgent):
    role = Role.PARTNER
    fallback_prompt = """
You are the Senior Partner of a management consulting firm.
Own the client relationship: structure requirements, set the strategic frame
and sign off deliverables before they reach the client.
""".strip()

    @staticmethod
    def _requirements_prompt(request: ClientRequest) -> str:
        return (
            "Analyze this client request and structure detailed requirements.\n\n"
            f"Client: {request.client_name}\n"
            f"Request: {request.message}\n"
            f"Urgency: {request.urgency}\nBudget: {request.budget}\n\n"
            "Respond with a JSON object containing: consulting_type (strategic_planning, "
            "market_analysis, technical_assessment, mergers_acquisitions, "
            "organizational_change or general_consulting), scope, objectives, constraints, "
            "success_criteria, deliverables, complexity (1-10), clarification_needed."
        )

    @staticmethod
    def fallback_requirements(request: ClientRequest) -> Requirements:
        vague = len(request.message.strip()) < 30
        return Requirements(
            consulting_type=request.project_type or infer_consulting_type(request.message),
            scope=request.message or "Business consulting engagement",
            objectives=["Complete requested analysis", "Provide actionable recommendations"],
            constraints=request_constraints(request),
            success_criteria=["Client satisfaction", "Actionable deliverables"],
            deliverables=["Professional report with executive summary"],
            urgency=request.urgency,
            budget=request.budget,
            client_tier=request.client_tier,
            special_requirements=_merge(
                request.special_requirements, infer_special_requirements(request.message)
            ),
            clarification_needed=(
                [
                    "What specific outcomes are you looking for?",
                    "What is your target timeline?",
                    "What is your budget range?",
                ]
                if vague
                else []
            ),
        )

    @classmethod
    def parse_requirements(cls, content: str, request: ClientRequest) -> Requirements:
        payload = extract_first_json_object(content)
        if payload is None:
            logger.info("requirements_fallback", reason="no structured response")
            return cls.fallback_requirements(request)

        scope = payload.get("scope") if isinstance(payload.get("scope"), str) else None
        clarification = payload.get("clarification_needed")
        if isinstance(clarification, bool):
            clarification = [] if not clarification else ["Clarification requested by partner"]
        return Requirements(
            consulting_type=str(
                first_key(payload, "consulting_type", "consultingType")
                or request.project_type
                or infer_consulting_type(request.message)
            ),
            scope=scope or request.message or "Business consulting engagement",
            objectives=string_list(
                payload.get("objectives"), scope or "Complete the requested analysis"
            ),
            constraints=string_list(payload.get("constraints")) or request_constraints(request),
            success_criteria=string_list(
                first_key(payload, "success_criteria", "successCriteria"),
                "Deliverables meet client expectations",
            ),
            deliverables=string_list(payload.get("deliverables")),
            complexity=coerce_complexity(payload.get("complexity")),
            urgency=request.urgency,
            budget=request.budget,
            client_tier=request.client_tier,
            special_requirements=_merge(
                request.special_requirements,
                string_list(payload.get("special_requirements"))
                or infer_special_requirements(request.message),
            ),
            clarification_needed=string_list(clarification),
        )

    async def gather_requirements(self, request: ClientRequest) -> Requirements:
        try:
            response = await self.run(
                self._requirements_prompt(request),
                {"phase": "requirements_gathering", "client": request.client_name},
            )
        except Exception as exc:
            raise RequirementsError(f"Requirements gathering failed: {exc}") from exc
        return self.parse_requirements(response.content, request)

    @staticmethod
    def fallback_validation(report: dict[str, Any]) -> ValidationOutcome:
        quality = float(report.get("quality_score") or 0.0)
        has_recommendations = bool(report.get("recommendations"))
        has_summary = len(str(report.get("executive_summary") or "")) > 50
        approved = quality >= 0.7 and has_recommendations and has_summary
        if quality >= 0.9:
            assessment = "excellent"
        elif quality >= 0.7:
            assessment = "good"
        else:
            assessment = "poor"
        return ValidationOutcome(
            approved=approved,
            quality_assessment=assessment,
            client_ready=approved,
            feedback=(
                "Deliverables meet all requirements and are ready for client presentation"
                if approved
                else "Deliverables need improvement before client presentation"
            ),
            quality_issues=[] if approved else ["Insufficient depth in analysis"],
            required_improvements=(
                [] if approved else ["Enhance analysis depth", "Add more supporting data"]
            ),
        )

    @classmethod
    def parse_validation(cls, content: str, report: dict[str, Any]) -> ValidationOutcome:
        payload = extract_first_json_object(content)
        if payload is None:
            return cls.fallback_validation(report)
        approved = payload.get("approved") is not False
        return ValidationOutcome(
            approved=approved,
            quality_assessment=str(
                first_key(payload, "quality_assessment", "qualityAssessment") or "good"
            ),
            client_ready=first_key(payload, "client_ready", "clientReadiness") is not False,
            feedback=str(
                payload.get("feedback")
                or "Deliverables meet all requirements and are ready for client presentation"
            ),
            quality_issues=string_list(first_key(payload, "quality_issues", "qualityIssues")),
            required_improvements=string_list(
                first_key(payload, "required_improvements", "requiredImprovements")
            ),
        )

    async def validate_deliverables(self, report: dict[str, Any]) -> ValidationOutcome:
        prompt = (
            "Validate these project deliverables for client readiness.\n\n"
            f"FINAL REPORT:\n{json.dumps(report, ensure_ascii=False, indent=2, default=str)}\n\n"
            "Respond with a JSON object containing: approved, quality_assessment, "
            "client_ready, feedback, quality_issues, required_improvements."
        )
        try:
            response = await self.run(prompt, {"phase": "final_validation"})
        except Exception as exc:
            logger.warning("validation_generation_failed", error=str(exc))
            return self.fallback_validation(report)
        return self.parse_validation(response.content, report)


def _merge(first: list[str], second: list[str]) -> list[str]:
    merged = list(first)
    merged.extend(item for item in second if item not in merged)
    return merged
