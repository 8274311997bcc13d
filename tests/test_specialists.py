import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from consultancy.backends.base import BackendExecutionError, GenerationBackend
from consultancy.errors import ErrorCategory, ErrorHandler, FeasibilityError, RequirementsError
from consultancy.models import ClientRequest, Requirements
from consultancy.roles import CAPABILITIES, Role
from consultancy.specialists import AssociateAgent, PartnerAgent, PrincipalAgent
from consultancy.specialists.partner import coerce_complexity, infer_consulting_type


class FakeBackend(GenerationBackend):
    def __init__(self, reply: str = "ok", *, fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.execute_calls = 0
        self.last_system_prompt: str | None = None
        self.last_context: dict[str, Any] | None = None
        self.last_tools: list[str] | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = user_prompt
        self.last_system_prompt = system_prompt
        self.last_context = context
        self.last_tools = tools
        self.execute_calls += 1
        if self.fail:
            raise BackendExecutionError("backend offline", backend="fake", retriable=False)
        yield self.reply


def _requirements() -> Requirements:
    return Requirements(consulting_type="market_analysis", scope="Japan retail entry")


def test_specialist_run_tags_role_and_model() -> None:
    backend = FakeBackend("drafted")
    associate = AssociateAgent(backend, model="associate-model")

    response = asyncio.run(associate.run("Gather sources", {"phase": "execution"}, tools=["web"]))

    assert response.role is Role.ASSOCIATE
    assert response.content == "drafted"
    assert backend.last_context == {
        "phase": "execution",
        "role": "associate",
        "model": "associate-model",
    }
    assert backend.last_tools == ["web"]
    assert "Skills:" in backend.last_system_prompt
    assert backend.execute_calls == 1


def test_parse_requirements_reads_structured_reply() -> None:
    request = ClientRequest(
        message="Review our platform architecture", urgency="high", special_requirements=["x"]
    )
    content = "Sure.\n" + json.dumps(
        {
            "consultingType": "technical_assessment",
            "scope": "Platform review",
            "objectives": ["Find bottlenecks"],
            "complexity": "high",
            "clarification_needed": False,
        }
    )

    requirements = PartnerAgent.parse_requirements(content, request)

    assert requirements.consulting_type == "technical_assessment"
    assert requirements.scope == "Platform review"
    assert requirements.complexity == 8
    assert requirements.urgency == "high"
    assert requirements.constraints == ["Budget: medium", "Urgency: high"]
    assert requirements.special_requirements == ["x", "technical_analysis"]
    assert requirements.clarification_needed == []


def test_vague_request_falls_back_with_clarifying_questions() -> None:
    request = ClientRequest(message="Help us grow")

    requirements = PartnerAgent.parse_requirements("no json here", request)

    assert requirements.consulting_type == "general_consulting"
    assert requirements.scope == "Help us grow"
    assert len(requirements.clarification_needed) == 3


def test_consulting_type_and_complexity_inference() -> None:
    assert infer_consulting_type("Plan a merger with a rival") == "mergers_acquisitions"
    assert infer_consulting_type("Our market share is shrinking") == "market_analysis"
    assert infer_consulting_type("") == "general_consulting"
    assert coerce_complexity(14) == 10
    assert coerce_complexity("very high") == 9
    assert coerce_complexity(True) == 7
    assert coerce_complexity(None, default=5) == 5


def test_gather_requirements_wraps_backend_failures() -> None:
    partner = PartnerAgent(FakeBackend(fail=True))

    with pytest.raises(RequirementsError):
        asyncio.run(partner.gather_requirements(ClientRequest(message="Grow in Japan")))


def test_feasibility_only_rejects_on_explicit_false() -> None:
    rejected = PrincipalAgent.parse_feasibility(
        json.dumps({"feasible": False, "reason": "Illegal", "suggestedAlternative": "Lobby"})
    )
    assert rejected.feasible is False
    assert rejected.reason == "Illegal"
    assert rejected.suggested_alternative == "Lobby"

    assert PrincipalAgent.parse_feasibility(json.dumps({"feasible": "maybe"})).feasible is True
    assert PrincipalAgent.parse_feasibility(json.dumps({"confidence": True})).confidence is None
    assumed = PrincipalAgent.parse_feasibility("I think this is fine")
    assert assumed.feasible is True
    assert assumed.risks


def test_analyze_feasibility_wraps_backend_failures() -> None:
    principal = PrincipalAgent(FakeBackend(fail=True))

    with pytest.raises(FeasibilityError) as exc_info:
        asyncio.run(principal.analyze_feasibility(_requirements()))

    assert ErrorHandler.categorize(exc_info.value) is ErrorCategory.REQUIREMENTS_FAILURE


def test_validation_falls_back_to_report_heuristics() -> None:
    report = {
        "quality_score": 0.92,
        "recommendations": ["Enter via partner"],
        "executive_summary": "A" * 60,
    }
    partner = PartnerAgent(FakeBackend(fail=True))

    outcome = asyncio.run(partner.validate_deliverables(report))

    assert outcome.approved is True
    assert outcome.quality_assessment == "excellent"
    assert outcome.required_improvements == []

    weak = PartnerAgent.fallback_validation({"quality_score": 0.5})
    assert weak.approved is False
    assert weak.quality_assessment == "poor"
    assert weak.required_improvements


def test_validation_reads_structured_verdict() -> None:
    reply = json.dumps(
        {"approved": False, "qualityAssessment": "fair", "qualityIssues": ["Thin evidence"]}
    )
    partner = PartnerAgent(FakeBackend(reply))

    outcome = asyncio.run(partner.validate_deliverables({"quality_score": 0.9}))

    assert outcome.approved is False
    assert outcome.quality_assessment == "fair"
    assert outcome.quality_issues == ["Thin evidence"]


def test_agent_capability_matches_role_table() -> None:
    partner = PartnerAgent(FakeBackend())

    assert partner.capability is CAPABILITIES[Role.PARTNER]
    assert ", ".join(partner.capability.skills) in partner.system_prompt
