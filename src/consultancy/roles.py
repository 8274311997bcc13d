from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    """Team roles in declared priority order; iteration order breaks scoring ties."""

    PARTNER = "partner"
    PRINCIPAL = "principal"
    ASSOCIATE = "associate"


@dataclass(frozen=True, slots=True)
class ComplexityBand:
    min: int
    max: int
    optimal: int

    def contains(self, complexity: float) -> bool:
        return self.min <= complexity <= self.max


@dataclass(frozen=True, slots=True)
class Bandwidth:
    max: int
    optimal: int

    @property
    def efficiency(self) -> float:
        return self.optimal / self.max


@dataclass(frozen=True, slots=True)
class RoleCapability:
    role: Role
    title: str
    complexity: ComplexityBand
    domains: tuple[str, ...]
    responsibilities: tuple[str, ...]
    bandwidth: Bandwidth
    hourly_rate: int
    skills: tuple[str, ...]
    specialty: str
    communication_style: str


CAPABILITIES: dict[Role, RoleCapability] = {
    Role.PARTNER: RoleCapability(
        role=Role.PARTNER,
        title="Senior Partner",
        complexity=ComplexityBand(min=7, max=10, optimal=9),
        domains=("strategy", "executive_relations", "business_development", "risk_assessment"),
        responsibilities=(
            "strategic_assessment",
            "client_presentation",
            "final_recommendations",
        ),
        bandwidth=Bandwidth(max=3, optimal=2),
        hourly_rate=1000,
        skills=(
            "Strategic Analysis",
            "Client Relations",
            "Business Development",
            "Requirements Gathering",
        ),
        specialty="high-level planning, complex reasoning, strategic decisions",
        communication_style=(
            "comprehensive and analytical, focuses on big picture and implications"
        ),
    ),
    Role.PRINCIPAL: RoleCapability(
        role=Role.PRINCIPAL,
        title="Principal",
        complexity=ComplexityBand(min=5, max=9, optimal=7),
        domains=(
            "financial_analysis",
            "market_research",
            "project_management",
            "technical_analysis",
        ),
        responsibilities=("detailed_analysis", "project_coordination", "quality_assurance"),
        bandwidth=Bandwidth(max=5, optimal=3),
        hourly_rate=600,
        skills=(
            "Project Management",
            "Work Breakdown",
            "Quality Assurance",
            "Deliverable Integration",
        ),
        specialty="balanced analysis, implementation, problem-solving",
        communication_style="balanced and practical, covers all important aspects thoroughly",
    ),
    Role.ASSOCIATE: RoleCapability(
        role=Role.ASSOCIATE,
        title="Associate",
        complexity=ComplexityBand(min=1, max=7, optimal=4),
        domains=("data_analysis", "research", "documentation", "preliminary_analysis"),
        responsibilities=("data_gathering", "basic_analysis", "report_preparation"),
        bandwidth=Bandwidth(max=8, optimal=5),
        hourly_rate=300,
        skills=("Research", "Data Analysis", "Documentation", "Report Preparation"),
        specialty="data analysis, insights, detailed research",
        communication_style="detailed and precise, covers specifics and edge cases",
    ),
}


def capability(role: Role) -> RoleCapability:
    return CAPABILITIES[role]
