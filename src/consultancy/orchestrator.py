from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from consultancy.collaboration import CollaborationProtocol, CollaborationResult, Participant
from consultancy.config import ConsultancyConfig
from consultancy.deliverables import Deliverable, DeliverableSynthesizer, integrate_deliverables
from consultancy.errors import (
    ErrorCategory,
    ErrorHandler,
    InvalidTransitionError,
    ProjectCancelledError,
)
from consultancy.models import (
    ClientRequest,
    Project,
    ProjectResult,
    ProjectStatus,
    ProgressEvent,
    StatusChange,
    new_project_id,
)
from consultancy.planning import RequestContext, WorkPlan, WorkPlanner
from consultancy.pool import AssignmentPool, ProgressModel, SimulatedProgress
from consultancy.quality import evaluate_quality_gate
from consultancy.roles import CAPABILITIES, Role
from consultancy.specialists import AssociateAgent, PartnerAgent, PrincipalAgent, SpecialistAgent
from consultancy.state import ProjectStore
from consultancy.telemetry import bind_project, clear_project

logger = structlog.get_logger()

ProgressSink = Callable[[str, dict[str, Any]], Any]

TIMEOUT_REASON = "Project execution exceeded maximum duration"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Orchestrator:
    """Drives one engagement from intake to a terminal status.

    Each running project gets its own assignment pool; the planner sees the
    summed in-flight counts of every active pool when it scores roles.
    """

    def __init__(
        self,
        *,
        partner: PartnerAgent,
        principal: PrincipalAgent,
        associate: AssociateAgent,
        store: ProjectStore,
        config: ConsultancyConfig | None = None,
        error_handler: ErrorHandler | None = None,
        progress_model: ProgressModel | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.partner = partner
        self.principal = principal
        self.associate = associate
        self.store = store
        self.config = config or ConsultancyConfig.default()
        self.error_handler = error_handler or ErrorHandler()
        self.progress_model = progress_model
        self.clock = clock
        self.planner = WorkPlanner(
            self.in_flight_counts,
            max_modules=self.config.orchestration.max_work_modules,
        )
        collaboration = self.config.collaboration
        self.collaboration = CollaborationProtocol(
            quality_threshold=collaboration.quality_threshold,
            completion_signals_required=collaboration.completion_signals_required,
            preview_chars=collaboration.preview_chars,
        )
        self._projects: dict[str, Project] = {}
        self._statuses: dict[str, dict[str, Any]] = {}
        self._sinks: dict[str, ProgressSink] = {}
        self._cancellations: dict[str, str] = {}
        self._pools: dict[str, AssignmentPool] = {}
        self._persisted: set[str] = set()

    @property
    def agents(self) -> dict[Role, SpecialistAgent]:
        return {
            Role.PARTNER: self.partner,
            Role.PRINCIPAL: self.principal,
            Role.ASSOCIATE: self.associate,
        }

    def in_flight_counts(self) -> dict[Role, int]:
        totals = {role: 0 for role in Role}
        for pool in list(self._pools.values()):
            for role, count in pool.in_flight_counts().items():
                totals[role] += count
        return totals

    def _new_pool(self, brief: str) -> AssignmentPool:
        pool_config = self.config.pool
        progress = self.progress_model or SimulatedProgress(
            seed=pool_config.seed,
            seconds_per_hour=pool_config.seconds_per_hour,
            jitter_max=pool_config.jitter_max,
        )
        return AssignmentPool(
            DeliverableSynthesizer(self.agents, brief=brief),
            max_concurrent_per_role=pool_config.max_concurrent_per_role,
            progress_model=progress,
        )

    def _emit(
        self,
        project_id: str,
        phase: str,
        message: str,
        progress: int,
        *,
        agent: str = "Orchestrator",
        role: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        event = ProgressEvent(
            project_id=project_id,
            phase=phase,
            message=message,
            progress=max(0, min(100, int(progress))),
            agent=agent,
            role=role,
            details=details,
        )
        snapshot = self._statuses.setdefault(project_id, {"projectId": project_id})
        snapshot.update(
            {
                "phase": phase,
                "progress": event.progress,
                "message": message,
                "updated_at": event.timestamp,
            }
        )
        logger.info("progress_event", phase=phase, progress=event.progress)

        sink = self._sinks.get(project_id)
        if sink is None:
            return
        try:
            sink(project_id, event.to_dict())
        except Exception as exc:
            logger.warning("progress_sink_failed", phase=phase, error=str(exc))

    def _persist(self, project: Project) -> None:
        if project.id not in self._persisted:
            return
        try:
            self.store.update_project(project.id, project.to_record())
        except Exception as exc:
            self.error_handler.handle(
                exc,
                operation="update_project",
                project_id=project.id,
                category=ErrorCategory.PERSISTENCE_FAILURE,
            )

    def _transition(self, project: Project, status: ProjectStatus, note: str | None = None) -> None:
        if project.status.is_terminal:
            raise InvalidTransitionError(
                f"Project {project.id} is already {project.status}; cannot move to {status}."
            )
        project.status = status
        project.status_history.append(StatusChange(status=status, note=note))
        snapshot = self._statuses.setdefault(project.id, {"projectId": project.id})
        snapshot["status"] = str(status)
        logger.info("project_status_changed", status=str(status), note=note)
        self._persist(project)

    def _check_cancelled(self, project_id: str) -> None:
        reason = self._cancellations.get(project_id)
        if reason is not None:
            raise ProjectCancelledError(reason)

    def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    def status(self, project_id: str) -> dict[str, Any] | None:
        snapshot = self._statuses.get(project_id)
        return dict(snapshot) if snapshot is not None else None

    def forget(self, project_id: str) -> bool:
        """Drop a terminal project from memory; its persisted record is kept."""
        project = self._projects.get(project_id)
        if project is None or not project.status.is_terminal:
            return False
        del self._projects[project_id]
        self._statuses.pop(project_id, None)
        self._cancellations.pop(project_id, None)
        self._persisted.discard(project_id)
        return True

    def cancel(self, project_id: str, reason: str) -> ProjectResult:
        project = self._projects.get(project_id)
        if project is not None and project.status.is_terminal:
            return ProjectResult(
                status=project.status,
                project_id=project_id,
                message=f"Project already {project.status}; cancellation ignored.",
            )
        self._cancellations[project_id] = reason
        logger.info("project_cancel_requested", project_id=project_id, reason=reason)
        self._emit(project_id, "cancelled", f"Cancelled: {reason}", 100, details={"reason": reason})
        return ProjectResult(
            status=ProjectStatus.CANCELLED,
            project_id=project_id,
            message=f"Cancelled: {reason}",
            reason=reason,
            error_category=str(ErrorCategory.CANCELLED),
        )

    async def start_project(
        self,
        request: ClientRequest,
        on_update: ProgressSink | None = None,
        *,
        project_id: str | None = None,
    ) -> ProjectResult:
        project = Project(id=project_id or new_project_id(), request=request)
        self._projects[project.id] = project
        self._statuses[project.id] = {"projectId": project.id, "status": str(project.status)}
        if on_update is not None:
            self._sinks[project.id] = on_update
        bind_project(project.id)
        started = self.clock()
        logger.info("project_started", client=request.client_name)
        try:
            return await self._drive(project, started)
        except ProjectCancelledError as exc:
            return self._finish_cancelled(project, str(exc))
        except Exception as exc:
            return self._finish_failed(project, exc)
        finally:
            self._pools.pop(project.id, None)
            self._sinks.pop(project.id, None)
            clear_project()

    async def _drive(self, project: Project, started: float) -> ProjectResult:
        request = project.request

        self._transition(project, ProjectStatus.REQUIREMENTS_GATHERING)
        self._emit(
            project.id,
            "requirements_gathering",
            "Partner analyzing your request...",
            5,
            agent=CAPABILITIES[Role.PARTNER].title,
            role=str(Role.PARTNER),
        )
        requirements = await self.partner.gather_requirements(request)
        project.requirements = requirements

        self._transition(project, ProjectStatus.FEASIBILITY_ANALYSIS)
        self._emit(
            project.id,
            "feasibility_analysis",
            "Principal evaluating project feasibility...",
            15,
            agent=CAPABILITIES[Role.PRINCIPAL].title,
            role=str(Role.PRINCIPAL),
        )
        verdict = await self.principal.analyze_feasibility(requirements)
        project.feasibility = verdict
        if not verdict.feasible:
            reason = verdict.reason or "Engagement cannot be delivered as requested."
            self._transition(project, ProjectStatus.INFEASIBLE, note=reason)
            self._emit(
                project.id,
                "infeasible",
                "Project determined to be infeasible",
                100,
                details={"reason": reason},
            )
            return ProjectResult(
                status=ProjectStatus.INFEASIBLE,
                project_id=project.id,
                message="Project determined to be infeasible",
                reason=reason,
                suggested_alternative=verdict.suggested_alternative,
                error_category=str(ErrorCategory.INFEASIBLE),
            )

        self._transition(project, ProjectStatus.WORK_BREAKDOWN)
        self._emit(
            project.id,
            "work_breakdown",
            "Principal creating work modules...",
            25,
            agent=CAPABILITIES[Role.PRINCIPAL].title,
            role=str(Role.PRINCIPAL),
        )
        plan = self.planner.plan(RequestContext.from_requirements(requirements, request))
        project.work_modules = plan.modules
        project.total_estimated_hours = plan.total_hours

        self._transition(project, ProjectStatus.RESOURCE_ALLOCATION)
        try:
            self.store.create_project(project.to_record())
            self._persisted.add(project.id)
        except Exception as exc:
            self.error_handler.handle(
                exc,
                operation="create_project",
                project_id=project.id,
                category=ErrorCategory.PERSISTENCE_FAILURE,
            )
        self._emit(
            project.id,
            "resource_allocation",
            f"Allocated {len(plan.modules)} work modules across the team",
            30,
            details={
                "roles": [str(role) for role in plan.roles],
                "module_count": len(plan.modules),
                "total_estimated_hours": plan.total_hours,
            },
        )

        self._transition(project, ProjectStatus.EXECUTION)
        project.execution_started_at = _utcnow_iso()
        self._emit(project.id, "execution_started", "Beginning project execution...", 35)
        pool = self._new_pool(requirements.scope)
        self._pools[project.id] = pool

        execution = asyncio.create_task(self._execute(project, plan, pool))
        done, _ = await asyncio.wait(
            {execution}, timeout=self.config.orchestration.execution_timeout_seconds
        )
        if execution not in done:
            execution.cancel()
            await asyncio.gather(execution, return_exceptions=True)
            return self._finish_timeout(project)
        deliverables, team_review = execution.result()
        self._check_cancelled(project.id)
        project.execution_ended_at = _utcnow_iso()

        self._transition(project, ProjectStatus.QUALITY_GATE)
        self._emit(project.id, "integrating_results", "Principal integrating deliverables...", 80)
        threshold = self.config.orchestration.effective_quality_threshold()
        gate = evaluate_quality_gate(deliverables, threshold)
        project.quality_score = gate.score
        deliverable_payloads = [item.to_dict() for item in deliverables]
        if not gate.passed:
            message = "Deliverables require quality improvement"
            self._transition(project, ProjectStatus.QUALITY_REVIEW_REQUIRED, note=message)
            self._emit(
                project.id,
                "quality_review",
                message,
                100,
                details={"quality_score": gate.score, "threshold": gate.threshold},
            )
            return ProjectResult(
                status=ProjectStatus.QUALITY_REVIEW_REQUIRED,
                project_id=project.id,
                message=message,
                quality_score=gate.score,
                execution_time=self._elapsed(started),
                deliverables=deliverable_payloads,
                required_actions=gate.required_actions,
                error_category=str(ErrorCategory.QUALITY_BELOW_THRESHOLD),
            )

        report = integrate_deliverables(
            project.id,
            deliverables,
            scope=requirements.scope,
            quality_score=gate.score,
            team_synthesis=team_review.working_document if team_review else None,
        )
        self._emit(
            project.id,
            "final_validation",
            "Partner validating deliverables...",
            90,
            agent=CAPABILITIES[Role.PARTNER].title,
            role=str(Role.PARTNER),
        )
        validation = await self.partner.validate_deliverables(report.to_dict())
        report.validation = validation.to_dict()
        final_report = report.to_dict()
        if team_review is not None:
            final_report["collaboration"] = team_review.to_dict()

        try:
            self.store.save_report(project.id, final_report)
        except Exception as exc:
            self.error_handler.handle(
                exc,
                operation="save_report",
                project_id=project.id,
                category=ErrorCategory.PERSISTENCE_FAILURE,
            )

        execution_time = self._elapsed(started)
        self._transition(project, ProjectStatus.COMPLETED)
        self._emit(
            project.id,
            "completed",
            "Consulting project completed successfully",
            100,
            details={
                "quality_percentage": round(gate.score * 100),
                "execution_time": execution_time,
                "deliverable_count": len(deliverables),
            },
        )
        return ProjectResult(
            status=ProjectStatus.COMPLETED,
            project_id=project.id,
            message="Consulting project completed successfully",
            final_report=final_report,
            quality_score=gate.score,
            execution_time=execution_time,
            deliverables=deliverable_payloads,
        )

    async def _execute(
        self, project: Project, plan: WorkPlan, pool: AssignmentPool
    ) -> tuple[list[Deliverable], CollaborationResult | None]:
        graph = plan.graph
        pending = list(plan.modules)
        completed: set[str] = set()
        deliverables: list[Deliverable] = []
        total = len(pending)
        poll_interval = max(0.0, self.config.pool.poll_interval_seconds)
        self._emit(
            project.id,
            "executing_modules",
            "Associates working on specialized tasks...",
            50,
            details={"module_count": total},
        )

        while pending or len(pool):
            self._check_cancelled(project.id)
            admitted = 0
            for module in list(pending):
                if not graph.is_ready(module.id, completed):
                    continue
                if pool.assign(module, module.role).assigned:
                    pending.remove(module)
                    admitted += 1

            if pending and not admitted and not len(pool):
                # no admissible module and nothing in flight to unblock one
                module = pending.pop(0)
                logger.warning(
                    "dependency_wait_released",
                    module_id=module.id,
                    waiting_on=graph.dependencies_of(module.id),
                )
                pool.assign(module, module.role)

            report = pool.monitor_progress()
            logger.debug(
                "pool_progress",
                overall_progress=report.overall_progress,
                in_flight=len(pool),
                completed=len(report.completed),
            )
            for deliverable in await pool.collect_deliverables():
                completed.add(deliverable.module_id)
                deliverables.append(deliverable)
                self._emit(
                    project.id,
                    "module_completed",
                    f"Completed {deliverable.title}",
                    50 + int(25 * len(deliverables) / max(1, total)),
                    agent=CAPABILITIES[deliverable.role].title,
                    role=str(deliverable.role),
                    details={
                        "module_id": deliverable.module_id,
                        "quality_score": deliverable.quality_score,
                        "fallback": deliverable.fallback,
                    },
                )
            if pending or len(pool):
                await asyncio.sleep(poll_interval)

        team_review = await self._team_review(project, deliverables)
        return deliverables, team_review

    async def _team_review(
        self, project: Project, deliverables: list[Deliverable]
    ) -> CollaborationResult | None:
        settings = self.config.collaboration
        if not settings.enabled or not deliverables:
            return None
        self._check_cancelled(project.id)
        self._emit(project.id, "team_review", "Team reviewing combined findings...", 75)

        participants = [
            Participant(name=CAPABILITIES[role].title, role=role, agent=agent)
            for role, agent in self.agents.items()
        ]
        summaries = "\n".join(
            f"- {item.title}: {item.executive_summary}" for item in deliverables
        )
        scope = project.requirements.scope if project.requirements else project.request.message
        message = f"Review and synthesize the module findings for: {scope}\n\n{summaries}"
        result = await self.collaboration.run(
            message,
            participants,
            settings.max_turns,
            should_stop=lambda: project.id in self._cancellations,
        )
        if result.completion_reason == "cancelled":
            self._check_cancelled(project.id)
        return result

    def _elapsed(self, started: float) -> float:
        return round(self.clock() - started, 3)

    def _finish_timeout(self, project: Project) -> ProjectResult:
        self.error_handler.handle(
            TimeoutError(TIMEOUT_REASON),
            operation="execution",
            project_id=project.id,
            category=ErrorCategory.EXECUTION_TIMEOUT,
        )
        self._transition(project, ProjectStatus.TIMEOUT, note=TIMEOUT_REASON)
        self._emit(
            project.id,
            "execution_timeout",
            TIMEOUT_REASON,
            100,
            details={"timeout_seconds": self.config.orchestration.execution_timeout_seconds},
        )
        return ProjectResult(
            status=ProjectStatus.TIMEOUT,
            project_id=project.id,
            message=TIMEOUT_REASON,
            reason=TIMEOUT_REASON,
            error_category=str(ErrorCategory.EXECUTION_TIMEOUT),
        )

    def _finish_cancelled(self, project: Project, reason: str) -> ProjectResult:
        if not project.status.is_terminal:
            self._transition(project, ProjectStatus.CANCELLED, note=reason)
        return ProjectResult(
            status=ProjectStatus.CANCELLED,
            project_id=project.id,
            message=f"Cancelled: {reason}",
            reason=reason,
            error_category=str(ErrorCategory.CANCELLED),
        )

    def _finish_failed(self, project: Project, exc: Exception) -> ProjectResult:
        report = self.error_handler.handle(
            exc, operation=str(project.status), project_id=project.id
        )
        if not project.status.is_terminal:
            self._transition(project, ProjectStatus.FAILED, note=report.message)
        self._emit(
            project.id,
            "failed",
            f"Project failed: {report.message}",
            100,
            details={"error_category": str(report.category)},
        )
        return ProjectResult(
            status=ProjectStatus.FAILED,
            project_id=project.id,
            message=f"Project failed: {report.message}",
            error_category=str(report.category),
        )
