import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from consultancy.backends.base import BackendExecutionError, GenerationBackend
from consultancy.config import ConsultancyConfig
from consultancy.errors import ErrorCategory, ErrorHandler, InvalidTransitionError
from consultancy.models import ClientRequest, ModuleStatus, ProjectStatus
from consultancy.orchestrator import TIMEOUT_REASON, Orchestrator
from consultancy.quality import REQUIRED_ACTIONS
from consultancy.specialists import AssociateAgent, PartnerAgent, PrincipalAgent
from consultancy.state import InMemoryProjectStore


class FakeBackend(GenerationBackend):
    """Answers each orchestration prompt with a canned structured reply."""

    def __init__(
        self,
        *,
        feasible: bool = True,
        module_quality: float = 0.9,
        fail_on: str | None = None,
    ) -> None:
        self.feasible = feasible
        self.module_quality = module_quality
        self.fail_on = fail_on
        self.prompts: list[str] = []

    def _reply(self, prompt: str) -> str:
        if "Team Instructions:" in prompt:
            return "Agreed on the pricing risk."
        if "Work module:" in prompt:
            return json.dumps(
                {
                    "title": "Module deliverable",
                    "executive_summary": "The segment is growing steadily.",
                    "key_findings": ["Demand grows 12% a year"],
                    "recommendations": ["Enter through a partner"],
                    "next_steps": ["Shortlist partners"],
                    "quality_score": self.module_quality,
                }
            )
        if "Validate these project deliverables" in prompt:
            return json.dumps({"approved": True, "quality_assessment": "excellent"})
        if "Analyze the feasibility" in prompt:
            if self.feasible:
                return json.dumps({"feasible": True, "risks": ["Currency exposure"]})
            return json.dumps(
                {
                    "feasible": False,
                    "reason": "Requires non-public competitor data",
                    "suggested_alternative": "Benchmark against public filings",
                }
            )
        if "Analyze this client request" in prompt:
            return json.dumps(
                {
                    "consulting_type": "market_analysis",
                    "scope": "Assess entry into the Japanese retail market",
                    "objectives": ["Size the market"],
                    "complexity": 6,
                }
            )
        return "{}"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context, tools
        self.prompts.append(user_prompt)
        if self.fail_on and self.fail_on in user_prompt:
            raise BackendExecutionError("backend offline", backend="fake", retriable=False)
        yield self._reply(user_prompt)


class RecordingStore(InMemoryProjectStore):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[str] = []

    def create_project(self, record: dict[str, Any]) -> None:
        self.calls.append("create_project")
        super().create_project(record)

    def update_project(self, project_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        self.calls.append("update_project")
        return super().update_project(project_id, fields)


class BrokenStore(InMemoryProjectStore):
    def create_project(self, record: dict[str, Any]) -> None:
        raise OSError("disk full")

    def update_project(self, project_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        raise OSError("disk full")


def _config(**pool: float) -> ConsultancyConfig:
    config = ConsultancyConfig.default()
    config.pool.seconds_per_hour = pool.get("seconds_per_hour", 0.0)
    config.pool.poll_interval_seconds = pool.get("poll_interval_seconds", 0.0)
    config.pool.jitter_max = 0.0
    config.pool.seed = 1
    return config


def _orchestrator(
    backend: GenerationBackend,
    store: InMemoryProjectStore | None = None,
    config: ConsultancyConfig | None = None,
) -> Orchestrator:
    return Orchestrator(
        partner=PartnerAgent(backend),
        principal=PrincipalAgent(backend),
        associate=AssociateAgent(backend),
        store=store if store is not None else InMemoryProjectStore(),
        config=config or _config(),
        error_handler=ErrorHandler(),
    )


def _request() -> ClientRequest:
    return ClientRequest(
        message="Should we enter the Japanese retail market next year?",
        client_name="Acme Retail",
    )


def test_happy_path_completes_with_persisted_report() -> None:
    store = InMemoryProjectStore()
    orchestrator = _orchestrator(FakeBackend(), store)
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        orchestrator.start_project(
            _request(), lambda _pid, event: events.append(event), project_id="proj-happy"
        )
    )

    assert result.status is ProjectStatus.COMPLETED
    assert result.quality_score == pytest.approx(0.9)
    report = result.final_report
    assert report is not None
    assert report["validation"]["approved"] is True
    assert report["collaboration"]["completion_reason"] == "contribution_limit"
    assert report["metrics"]["fallback_deliverables"] == 0

    record = store.get_project("proj-happy")
    assert record is not None
    assert record["status"] == "completed"
    assert record["report"]["project_id"] == "proj-happy"

    phases = [event["phase"] for event in events]
    assert phases[:5] == [
        "requirements_gathering",
        "feasibility_analysis",
        "work_breakdown",
        "resource_allocation",
        "execution_started",
    ]
    assert phases[-1] == "completed"
    assert "team_review" in phases
    progress = [event["progress"] for event in events]
    assert progress == sorted(progress)
    assert all(event["projectId"] == "proj-happy" for event in events)

    project = orchestrator.get_project("proj-happy")
    assert project is not None
    assert all(module.status is ModuleStatus.COMPLETED for module in project.work_modules)
    assert orchestrator.in_flight_counts() == {role: 0 for role in orchestrator.agents}


def test_infeasible_request_stops_before_planning_and_persistence() -> None:
    store = RecordingStore()
    orchestrator = _orchestrator(FakeBackend(feasible=False), store)
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        orchestrator.start_project(
            _request(), lambda _pid, event: events.append(event), project_id="proj-no"
        )
    )

    assert result.status is ProjectStatus.INFEASIBLE
    assert result.reason == "Requires non-public competitor data"
    assert result.suggested_alternative == "Benchmark against public filings"
    assert result.error_category == "infeasible"
    project = orchestrator.get_project("proj-no")
    assert project is not None
    assert project.work_modules == []
    assert store.calls == []
    assert events[-1]["phase"] == "infeasible"
    assert events[-1]["progress"] == 100


def test_execution_timeout_is_recorded_once() -> None:
    store = InMemoryProjectStore()
    config = _config(seconds_per_hour=3600.0, poll_interval_seconds=0.01)
    config.orchestration.execution_timeout_seconds = 0.05
    handler = ErrorHandler()
    orchestrator = _orchestrator(FakeBackend(), store, config)
    orchestrator.error_handler = handler
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        orchestrator.start_project(
            _request(), lambda _pid, event: events.append(event), project_id="proj-slow"
        )
    )

    assert result.status is ProjectStatus.TIMEOUT
    assert result.reason == TIMEOUT_REASON
    assert result.error_category == "execution_timeout"
    assert store.get_project("proj-slow")["status"] == "timeout"
    assert [event["phase"] for event in events].count("execution_timeout") == 1
    assert handler.stats[ErrorCategory.EXECUTION_TIMEOUT] == 1
    assert orchestrator.in_flight_counts() == {role: 0 for role in orchestrator.agents}


def test_low_quality_deliverables_require_review() -> None:
    config = _config()
    config.collaboration.enabled = False
    orchestrator = _orchestrator(FakeBackend(module_quality=0.5), config=config)

    result = asyncio.run(orchestrator.start_project(_request(), project_id="proj-weak"))

    assert result.status is ProjectStatus.QUALITY_REVIEW_REQUIRED
    assert result.quality_score == pytest.approx(0.5)
    assert result.required_actions == list(REQUIRED_ACTIONS)
    assert result.error_category == "quality_below_threshold"
    assert result.final_report is None
    assert orchestrator.status("proj-weak")["status"] == "quality_review_required"


def test_module_generation_failures_degrade_to_fallback_deliverables() -> None:
    config = _config()
    config.collaboration.enabled = False
    orchestrator = _orchestrator(FakeBackend(fail_on="Work module:"), config=config)

    result = asyncio.run(orchestrator.start_project(_request(), project_id="proj-fallback"))

    assert result.status is ProjectStatus.QUALITY_REVIEW_REQUIRED
    assert result.deliverables
    assert all(item["fallback"] is True for item in result.deliverables)
    assert result.quality_score == pytest.approx(0.3)


def test_requirements_failure_marks_project_failed() -> None:
    store = RecordingStore()
    orchestrator = _orchestrator(FakeBackend(fail_on="Analyze this client request"), store)
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        orchestrator.start_project(
            _request(), lambda _pid, event: events.append(event), project_id="proj-fail"
        )
    )

    assert result.status is ProjectStatus.FAILED
    assert result.error_category == "requirements_failure"
    assert events[-1]["phase"] == "failed"
    assert store.calls == []
    assert orchestrator.get_project("proj-fail").status is ProjectStatus.FAILED


def test_cancellation_stops_execution_before_any_assignment() -> None:
    store = InMemoryProjectStore()
    orchestrator = _orchestrator(FakeBackend(), store)
    events: list[dict[str, Any]] = []

    def _sink(project_id: str, event: dict[str, Any]) -> None:
        events.append(event)
        if event["phase"] == "resource_allocation":
            orchestrator.cancel(project_id, "client withdrew")

    result = asyncio.run(orchestrator.start_project(_request(), _sink, project_id="proj-stop"))

    assert result.status is ProjectStatus.CANCELLED
    assert result.reason == "client withdrew"
    assert store.get_project("proj-stop")["status"] == "cancelled"
    assert [event["phase"] for event in events].count("cancelled") == 1
    project = orchestrator.get_project("proj-stop")
    assert all(module.status is ModuleStatus.PENDING for module in project.work_modules)


def test_cancel_after_last_module_completes_still_cancels() -> None:
    config = _config()
    config.collaboration.enabled = False
    store = InMemoryProjectStore()
    orchestrator = _orchestrator(FakeBackend(), store, config)
    events: list[dict[str, Any]] = []
    expected: dict[str, int] = {}

    def _sink(project_id: str, event: dict[str, Any]) -> None:
        events.append(event)
        if event["phase"] == "executing_modules":
            expected["modules"] = event["details"]["module_count"]
        finished = [item for item in events if item["phase"] == "module_completed"]
        if event["phase"] == "module_completed" and len(finished) == expected["modules"]:
            orchestrator.cancel(project_id, "client withdrew")

    result = asyncio.run(orchestrator.start_project(_request(), _sink, project_id="proj-late"))

    phases = [event["phase"] for event in events]
    assert result.status is ProjectStatus.CANCELLED
    assert store.get_project("proj-late")["status"] == "cancelled"
    assert phases.count("cancelled") == 1
    assert "integrating_results" not in phases
    assert "completed" not in phases


def test_terminal_projects_can_be_forgotten() -> None:
    store = InMemoryProjectStore()
    orchestrator = _orchestrator(FakeBackend(), store)
    asyncio.run(orchestrator.start_project(_request(), project_id="proj-old"))

    assert orchestrator.forget("proj-old") is True
    assert orchestrator.get_project("proj-old") is None
    assert orchestrator.status("proj-old") is None
    assert orchestrator.forget("proj-old") is False
    assert store.get_project("proj-old")["status"] == "completed"


def test_failing_progress_sink_does_not_break_the_run() -> None:
    def _sink(_project_id: str, _event: dict[str, Any]) -> None:
        raise RuntimeError("socket closed")

    orchestrator = _orchestrator(FakeBackend())

    result = asyncio.run(orchestrator.start_project(_request(), _sink, project_id="proj-sink"))

    assert result.status is ProjectStatus.COMPLETED


def test_persistence_failures_are_counted_but_not_fatal() -> None:
    handler = ErrorHandler()
    orchestrator = _orchestrator(FakeBackend(), BrokenStore())
    orchestrator.error_handler = handler

    result = asyncio.run(orchestrator.start_project(_request(), project_id="proj-disk"))

    assert result.status is ProjectStatus.COMPLETED
    assert handler.stats[ErrorCategory.PERSISTENCE_FAILURE] == 2
    assert handler.summary() == {"total": 2, "by_category": {"persistence_failure": 2}}


def test_terminal_projects_ignore_cancel_and_refuse_transitions() -> None:
    orchestrator = _orchestrator(FakeBackend())
    asyncio.run(orchestrator.start_project(_request(), project_id="proj-done"))

    ignored = orchestrator.cancel("proj-done", "too late")
    project = orchestrator.get_project("proj-done")

    assert ignored.status is ProjectStatus.COMPLETED
    assert "ignored" in ignored.message
    assert project.status is ProjectStatus.COMPLETED
    with pytest.raises(InvalidTransitionError):
        orchestrator._transition(project, ProjectStatus.EXECUTION)


def test_status_snapshot_tracks_latest_event() -> None:
    orchestrator = _orchestrator(FakeBackend())
    asyncio.run(orchestrator.start_project(_request(), project_id="proj-status"))

    snapshot = orchestrator.status("proj-status")

    assert snapshot["status"] == "completed"
    assert snapshot["phase"] == "completed"
    assert snapshot["progress"] == 100
    assert orchestrator.status("proj-unknown") is None


def test_concurrent_projects_complete_independently() -> None:
    store = InMemoryProjectStore()
    orchestrator = _orchestrator(FakeBackend(), store)

    async def _run_both():
        return await asyncio.gather(
            orchestrator.start_project(_request(), project_id="proj-a"),
            orchestrator.start_project(_request(), project_id="proj-b"),
        )

    first, second = asyncio.run(_run_both())

    assert first.status is ProjectStatus.COMPLETED
    assert second.status is ProjectStatus.COMPLETED
    assert store.list_projects() == ["proj-a", "proj-b"]
    for project_id in ("proj-a", "proj-b"):
        report = store.get_project(project_id)["report"]
        assert report["project_id"] == project_id
