from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from consultancy.deliverables import Deliverable

REQUIRED_ACTIONS: tuple[str, ...] = (
    "Improve research depth",
    "Add more analysis",
    "Strengthen recommendations",
)


@dataclass(slots=True)
class QualityGateResult:
    score: float
    threshold: float
    passed: bool
    required_actions: list[str] = field(default_factory=list)


def aggregate_quality(deliverables: Sequence[Deliverable]) -> float:
    """Arithmetic mean of deliverable scores; an empty set scores 0.0."""
    if not deliverables:
        return 0.0
    return sum(deliverable.quality_score for deliverable in deliverables) / len(deliverables)


def evaluate_quality_gate(
    deliverables: Sequence[Deliverable], threshold: float
) -> QualityGateResult:
    score = aggregate_quality(deliverables)
    passed = score >= threshold
    return QualityGateResult(
        score=round(score, 4),
        threshold=threshold,
        passed=passed,
        required_actions=[] if passed else list(REQUIRED_ACTIONS),
    )
