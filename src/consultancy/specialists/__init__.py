from consultancy.specialists.associate import AssociateAgent
from consultancy.specialists.base import SpecialistAgent, SpecialistResponse
from consultancy.specialists.partner import PartnerAgent, ValidationOutcome
from consultancy.specialists.principal import PrincipalAgent

__all__ = [
    "AssociateAgent",
    "PartnerAgent",
    "PrincipalAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "ValidationOutcome",
]
