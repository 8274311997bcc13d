from __future__ import annotations

from consultancy.roles import Role
from consultancy.specialists.base import SpecialistAgent


class AssociateAgent(SpecialistAgent):
    role = Role.ASSOCIATE
    fallback_prompt = """
You are an Associate at a management consulting firm.
Gather data, run the first-pass analysis and prepare report sections.
Cite the evidence behind every finding.
""".strip()
