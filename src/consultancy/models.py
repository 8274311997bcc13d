from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from consultancy.roles import Role


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_project_id() -> str:
    return f"proj-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class ProjectStatus(StrEnum):
    INTAKE = "intake"
    REQUIREMENTS_GATHERING = "requirements_gathering"
    FEASIBILITY_ANALYSIS = "feasibility_analysis"
    INFEASIBLE = "infeasible"
    WORK_BREAKDOWN = "work_breakdown"
    RESOURCE_ALLOCATION = "resource_allocation"
    EXECUTION = "execution"
    QUALITY_GATE = "quality_gate"
    QUALITY_REVIEW_REQUIRED = "quality_review_required"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ProjectStatus.INFEASIBLE,
        ProjectStatus.QUALITY_REVIEW_REQUIRED,
        ProjectStatus.COMPLETED,
        ProjectStatus.FAILED,
        ProjectStatus.TIMEOUT,
        ProjectStatus.CANCELLED,
    }
)


class ModuleStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AssignmentStatus(StrEnum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(slots=True)
class ClientRequest:
    message: str
    client_name: str = "Client"
    project_type: str | None = None
    urgency: str = "normal"
    budget: str = "medium"
    client_tier: str = "standard"
    special_requirements: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Requirements:
    consulting_type: str
    scope: str
    objectives: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    deliverables: list[str] = field(default_factory=list)
    complexity: int = 7
    urgency: str = "normal"
    budget: str = "medium"
    client_tier: str = "standard"
    special_requirements: list[str] = field(default_factory=list)
    clarification_needed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class FeasibilityVerdict:
    feasible: bool
    reason: str | None = None
    suggested_alternative: str | None = None
    risks: list[str] = field(default_factory=list)
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class WorkModule:
    id: str
    task_type: str
    role: Role
    estimated_hours: float
    dependencies: list[str] = field(default_factory=list)
    critical_path: bool = False
    status: ModuleStatus = ModuleStatus.PENDING
    complexity: float = 5.0
    priority: float = 5.0
    quality_requirements: dict[str, float] = field(default_factory=dict)
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["role"] = str(self.role)
        payload["status"] = str(self.status)
        return payload


@dataclass(slots=True)
class Assignment:
    id: str
    module: WorkModule
    role: Role
    created_at: float
    estimated_completion: float
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    progress: float = 0.0
    capped_at: float | None = None

    @property
    def module_id(self) -> str:
        return self.module.id


@dataclass(slots=True)
class ProgressEvent:
    project_id: str
    phase: str
    message: str
    progress: int
    agent: str = "Orchestrator"
    role: str = "system"
    details: dict[str, Any] | None = None
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase,
            "message": self.message,
            "progress": self.progress,
            "agent": self.agent,
            "role": self.role,
            "timestamp": self.timestamp,
            "projectId": self.project_id,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(slots=True)
class StatusChange:
    status: ProjectStatus
    at: str = field(default_factory=_utcnow_iso)
    note: str | None = None


@dataclass(slots=True)
class Project:
    id: str
    request: ClientRequest
    status: ProjectStatus = ProjectStatus.INTAKE
    requirements: Requirements | None = None
    feasibility: FeasibilityVerdict | None = None
    work_modules: list[WorkModule] = field(default_factory=list)
    quality_score: float | None = None
    total_estimated_hours: float = 0.0
    created_at: str = field(default_factory=_utcnow_iso)
    execution_started_at: str | None = None
    execution_ended_at: str | None = None
    status_history: list[StatusChange] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append(StatusChange(status=self.status))

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": str(self.status),
            "request": self.request.to_dict(),
            "requirements": self.requirements.to_dict() if self.requirements else None,
            "feasibility": self.feasibility.to_dict() if self.feasibility else None,
            "work_modules": [module.to_dict() for module in self.work_modules],
            "quality_score": self.quality_score,
            "total_estimated_hours": self.total_estimated_hours,
            "created_at": self.created_at,
            "execution_started_at": self.execution_started_at,
            "execution_ended_at": self.execution_ended_at,
            "status_history": [
                {"status": str(change.status), "at": change.at, "note": change.note}
                for change in self.status_history
            ],
        }


@dataclass(slots=True)
class ProjectResult:
    status: ProjectStatus
    project_id: str
    message: str
    final_report: dict[str, Any] | None = None
    quality_score: float | None = None
    execution_time: float | None = None
    deliverables: list[dict[str, Any]] | None = None
    reason: str | None = None
    suggested_alternative: str | None = None
    required_actions: list[str] | None = None
    error_category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": str(self.status),
            "projectId": self.project_id,
            "message": self.message,
        }
        optional = {
            "finalReport": self.final_report,
            "qualityScore": self.quality_score,
            "executionTime": self.execution_time,
            "deliverables": self.deliverables,
            "reason": self.reason,
            "suggestedAlternative": self.suggested_alternative,
            "requiredActions": self.required_actions,
            "errorCategory": self.error_category,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload
