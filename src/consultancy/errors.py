from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from consultancy.backends.base import BackendExecutionError, BackendTimeoutError

logger = structlog.get_logger()


class ErrorCategory(StrEnum):
    INFEASIBLE = "infeasible"
    REQUIREMENTS_FAILURE = "requirements_failure"
    EXECUTION_TIMEOUT = "execution_timeout"
    QUALITY_BELOW_THRESHOLD = "quality_below_threshold"
    GENERATION_FAILURE = "generation_failure"
    PERSISTENCE_FAILURE = "persistence_failure"
    VALIDATION_FAILURE = "validation_failure"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY_BY_CATEGORY: dict[ErrorCategory, Severity] = {
    ErrorCategory.INFEASIBLE: Severity.LOW,
    ErrorCategory.REQUIREMENTS_FAILURE: Severity.HIGH,
    ErrorCategory.EXECUTION_TIMEOUT: Severity.HIGH,
    ErrorCategory.QUALITY_BELOW_THRESHOLD: Severity.MEDIUM,
    ErrorCategory.GENERATION_FAILURE: Severity.MEDIUM,
    ErrorCategory.PERSISTENCE_FAILURE: Severity.CRITICAL,
    ErrorCategory.VALIDATION_FAILURE: Severity.MEDIUM,
    ErrorCategory.CANCELLED: Severity.LOW,
    ErrorCategory.UNKNOWN: Severity.MEDIUM,
}


class ConsultancyError(RuntimeError):
    """Base class for errors raised by the orchestration layer."""

    category: ErrorCategory = ErrorCategory.UNKNOWN


class RequirementsError(ConsultancyError):
    category = ErrorCategory.REQUIREMENTS_FAILURE


class FeasibilityError(ConsultancyError):
    """Raised when feasibility could not be assessed, not for an infeasible verdict.

    Filed with requirements failures: both stop the project before planning.
    """

    category = ErrorCategory.REQUIREMENTS_FAILURE


class PlanningError(ConsultancyError):
    """Raised for work-module sets that cannot form a dependency graph."""

    category = ErrorCategory.REQUIREMENTS_FAILURE


class PersistenceError(ConsultancyError):
    category = ErrorCategory.PERSISTENCE_FAILURE


class CollaborationError(ConsultancyError):
    category = ErrorCategory.GENERATION_FAILURE


class InvalidTransitionError(ConsultancyError):
    """Raised when a project leaves a terminal status."""


class ProjectCancelledError(ConsultancyError):
    category = ErrorCategory.CANCELLED


@dataclass(slots=True)
class ErrorReport:
    category: ErrorCategory
    severity: Severity
    message: str
    operation: str | None = None
    project_id: str | None = None
    occurred_at: str = field(
        default_factory=lambda: datetime.now(UTC).replace(microsecond=0).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": str(self.category),
            "severity": str(self.severity),
            "message": self.message,
            "operation": self.operation,
            "project_id": self.project_id,
            "occurred_at": self.occurred_at,
        }


class ErrorHandler:
    """Categorises failures, logs them and keeps per-category counters."""

    def __init__(self) -> None:
        self.stats: dict[ErrorCategory, int] = {category: 0 for category in ErrorCategory}

    @staticmethod
    def categorize(exc: BaseException) -> ErrorCategory:
        if isinstance(exc, ConsultancyError):
            return exc.category
        if isinstance(exc, BackendTimeoutError):
            return ErrorCategory.GENERATION_FAILURE
        if isinstance(exc, BackendExecutionError):
            return ErrorCategory.GENERATION_FAILURE
        if isinstance(exc, TimeoutError):
            return ErrorCategory.EXECUTION_TIMEOUT
        if isinstance(exc, OSError):
            return ErrorCategory.PERSISTENCE_FAILURE

        message = str(exc).lower()
        if "timeout" in message or "timed out" in message:
            return ErrorCategory.EXECUTION_TIMEOUT
        if "invalid" in message or "required" in message or "validation" in message:
            return ErrorCategory.VALIDATION_FAILURE
        return ErrorCategory.UNKNOWN

    def handle(
        self,
        exc: BaseException,
        *,
        operation: str | None = None,
        project_id: str | None = None,
        category: ErrorCategory | None = None,
    ) -> ErrorReport:
        resolved = category or self.categorize(exc)
        severity = _SEVERITY_BY_CATEGORY[resolved]
        report = ErrorReport(
            category=resolved,
            severity=severity,
            message=str(exc) or exc.__class__.__name__,
            operation=operation,
            project_id=project_id,
        )
        self.stats[resolved] += 1

        log = logger.error if severity in {Severity.HIGH, Severity.CRITICAL} else logger.warning
        log(
            "operation_failed",
            category=str(resolved),
            severity=str(severity),
            operation=operation,
            project_id=project_id,
            error=report.message,
        )
        return report

    def summary(self) -> dict[str, Any]:
        total = sum(self.stats.values())
        by_category = {str(category): count for category, count in self.stats.items() if count}
        return {"total": total, "by_category": by_category}
