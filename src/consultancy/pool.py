"""Bounded-capacity assignment pool with simulated progress.

Progress is a heuristic clock, not an execution trace: an assignment's
percentage is derived from elapsed time against its estimated duration plus
bounded jitter. Nothing observes real sub-steps of the work.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

import structlog

from consultancy.deliverables import Deliverable, DeliverableSynthesizer, fallback_deliverable
from consultancy.models import Assignment, AssignmentStatus, ModuleStatus, WorkModule
from consultancy.roles import Role

logger = structlog.get_logger()

PROGRESS_CAP = 95.0
NOT_AVAILABLE = "not available"


class ProgressModel(Protocol):
    def now(self) -> float: ...

    def duration_for(self, hours: float) -> float: ...

    def advance(self, assignment: Assignment) -> float: ...


class SimulatedProgress:
    """Elapsed-time progress with seeded jitter; clock and scale are injectable."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        seed: int | None = None,
        seconds_per_hour: float = 3600.0,
        jitter_max: float = 10.0,
    ) -> None:
        self._clock = clock
        self._rng = random.Random(seed)
        self.seconds_per_hour = seconds_per_hour
        self.jitter_max = jitter_max

    def now(self) -> float:
        return self._clock()

    def duration_for(self, hours: float) -> float:
        return max(0.0, hours) * self.seconds_per_hour

    def base_progress(self, assignment: Assignment) -> float:
        duration = assignment.estimated_completion - assignment.created_at
        if duration <= 0:
            return PROGRESS_CAP
        elapsed = self.now() - assignment.created_at
        return min(PROGRESS_CAP, max(0.0, elapsed / duration * 100))

    def advance(self, assignment: Assignment) -> float:
        # one full call at the cap must pass before an assignment completes
        if assignment.capped_at is not None:
            return 100.0
        base = self.base_progress(assignment)
        jitter = self._rng.uniform(0.0, self.jitter_max) if self.jitter_max > 0 else 0.0
        progress = min(99.0, base + jitter)
        if base >= PROGRESS_CAP:
            assignment.capped_at = self.now()
        return max(assignment.progress, progress)


@dataclass(slots=True)
class AssignmentResult:
    assigned: bool
    assignment_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class AssignmentProgress:
    assignment_id: str
    module_id: str
    role: Role
    progress: float
    status: AssignmentStatus


@dataclass(slots=True)
class ProgressReport:
    entries: list[AssignmentProgress] = field(default_factory=list)

    @property
    def completed(self) -> list[AssignmentProgress]:
        return [entry for entry in self.entries if entry.status is AssignmentStatus.COMPLETED]

    @property
    def overall_progress(self) -> float:
        if not self.entries:
            return 0.0
        return round(sum(entry.progress for entry in self.entries) / len(self.entries), 1)


class AssignmentPool:
    """Owns every in-flight assignment; other components see ids and reports only."""

    def __init__(
        self,
        synthesizer: DeliverableSynthesizer,
        *,
        max_concurrent_per_role: int = 4,
        progress_model: ProgressModel | None = None,
    ) -> None:
        self.synthesizer = synthesizer
        self.max_concurrent_per_role = max(1, int(max_concurrent_per_role))
        self.progress_model: ProgressModel = progress_model or SimulatedProgress()
        self._assignments: dict[str, Assignment] = {}

    def __len__(self) -> int:
        return len(self._assignments)

    def in_flight_counts(self) -> dict[Role, int]:
        counts = {role: 0 for role in Role}
        for assignment in list(self._assignments.values()):
            counts[assignment.role] += 1
        return counts

    def available_specialists(self) -> set[Role]:
        counts = self.in_flight_counts()
        return {role for role in Role if counts[role] < self.max_concurrent_per_role}

    def get(self, assignment_id: str) -> Assignment | None:
        return self._assignments.get(assignment_id)

    def assign(self, module: WorkModule, role: Role) -> AssignmentResult:
        if role not in self.available_specialists():
            return AssignmentResult(assigned=False, reason=NOT_AVAILABLE)

        now = self.progress_model.now()
        assignment = Assignment(
            id=f"asg-{uuid4().hex[:10]}",
            module=module,
            role=role,
            created_at=now,
            estimated_completion=now + self.progress_model.duration_for(module.estimated_hours),
        )
        self._assignments[assignment.id] = assignment
        module.status = ModuleStatus.IN_PROGRESS
        logger.info(
            "module_assigned",
            module_id=module.id,
            role=str(role),
            assignment_id=assignment.id,
            estimated_hours=module.estimated_hours,
        )
        return AssignmentResult(assigned=True, assignment_id=assignment.id)

    def monitor_progress(self) -> ProgressReport:
        report = ProgressReport()
        for assignment in list(self._assignments.values()):
            if assignment.status is not AssignmentStatus.COMPLETED:
                assignment.progress = self.progress_model.advance(assignment)
                if assignment.progress >= 100.0:
                    assignment.progress = 100.0
                    assignment.status = AssignmentStatus.COMPLETED
                elif assignment.progress > 0:
                    assignment.status = AssignmentStatus.IN_PROGRESS
            report.entries.append(
                AssignmentProgress(
                    assignment_id=assignment.id,
                    module_id=assignment.module_id,
                    role=assignment.role,
                    progress=round(assignment.progress, 1),
                    status=assignment.status,
                )
            )
        return report

    def _actual_hours(self, assignment: Assignment) -> float:
        probe = self.progress_model.duration_for(1.0)
        if probe <= 0:
            return 0.0
        return round((self.progress_model.now() - assignment.created_at) / probe, 2)

    async def collect_deliverables(self) -> list[Deliverable]:
        completed_ids = [
            assignment_id
            for assignment_id, assignment in self._assignments.items()
            if assignment.status is AssignmentStatus.COMPLETED
        ]
        deliverables: list[Deliverable] = []
        for assignment_id in completed_ids:
            # removed before synthesis so a concurrent collect cannot see it twice
            assignment = self._assignments.pop(assignment_id, None)
            if assignment is None:
                continue
            actual_hours = self._actual_hours(assignment)
            try:
                deliverable = await self.synthesizer.synthesize(
                    assignment.module, actual_hours=actual_hours
                )
            except Exception as exc:
                logger.warning(
                    "deliverable_synthesis_failed", module_id=assignment.module_id, error=str(exc)
                )
                deliverable = fallback_deliverable(
                    assignment.module, f"synthesis failed: {exc}", actual_hours=actual_hours
                )
            assignment.module.status = ModuleStatus.COMPLETED
            logger.info(
                "deliverable_collected",
                module_id=assignment.module_id,
                role=str(assignment.role),
                quality_score=deliverable.quality_score,
                fallback=deliverable.fallback,
            )
            deliverables.append(deliverable)
        return deliverables
