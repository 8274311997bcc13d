from __future__ import annotations

import json

import structlog

from consultancy.errors import FeasibilityError
from consultancy.models import FeasibilityVerdict, Requirements
from consultancy.roles import Role
from consultancy.specialists.base import SpecialistAgent
from consultancy.structured import extract_first_json_object, first_key, string_list

logger = structlog.get_logger()


class PrincipalAgent(SpecialistAgent):
    role = Role.PRINCIPAL
    fallback_prompt = """
You are a Principal at a management consulting firm.
Judge whether engagements can be delivered, break them into work modules,
coordinate associates and hold the quality bar on every deliverable.
""".strip()

    @staticmethod
    def _feasibility_prompt(requirements: Requirements) -> str:
        return (
            "Analyze the feasibility of this consulting engagement.\n\n"
            f"REQUIREMENTS:\n{json.dumps(requirements.to_dict(), ensure_ascii=False, indent=2)}\n\n"
            "Respond with a JSON object containing: feasible (true/false), reason, "
            "suggested_alternative, risks (array), confidence (0-1).\n"
            "Market, strategy and comparative analyses are normally feasible."
        )

    @staticmethod
    def parse_feasibility(content: str) -> FeasibilityVerdict:
        payload = extract_first_json_object(content)
        if payload is None:
            logger.info("feasibility_fallback", reason="no structured response")
            return FeasibilityVerdict(
                feasible=True,
                reason="Feasibility assumed; no structured assessment returned.",
                risks=["Standard project risks apply"],
            )

        reason = payload.get("reason")
        alternative = first_key(payload, "suggested_alternative", "suggestedAlternative")
        confidence = payload.get("confidence")
        return FeasibilityVerdict(
            # only an explicit false rejects the engagement
            feasible=payload.get("feasible") is not False,
            reason=reason if isinstance(reason, str) and reason else None,
            suggested_alternative=(
                alternative if isinstance(alternative, str) and alternative else None
            ),
            risks=string_list(first_key(payload, "risks", "keyRisks", "riskAssessment")),
            confidence=(
                float(confidence)
                if isinstance(confidence, (int, float)) and not isinstance(confidence, bool)
                else None
            ),
        )

    async def analyze_feasibility(self, requirements: Requirements) -> FeasibilityVerdict:
        try:
            response = await self.run(
                self._feasibility_prompt(requirements),
                {"phase": "feasibility_analysis", "consulting_type": requirements.consulting_type},
            )
        except Exception as exc:
            raise FeasibilityError(f"Feasibility analysis failed: {exc}") from exc
        return self.parse_feasibility(response.content)
