from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from consultancy.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    GenerationBackend,
    ResilientBackend,
    RetryPolicy,
)
from consultancy.config import BackendName, ConsultancyConfig, load_config, save_config
from consultancy.errors import ConsultancyError
from consultancy.models import ClientRequest
from consultancy.orchestrator import Orchestrator
from consultancy.planning import RequestContext, WorkPlanner
from consultancy.specialists import AssociateAgent, PartnerAgent, PrincipalAgent
from consultancy.state import LocalProjectStore
from consultancy.telemetry import setup_logging

DEFAULT_CONFIG = "consultancy.toml"
URGENCY_LEVELS = ["low", "normal", "high", "critical"]
BUDGET_LEVELS = ["low", "medium", "high"]


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: ConsultancyConfig
    store: LocalProjectStore
    orchestrator: Orchestrator


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _resolve_state_dir(root: Path, config: ConsultancyConfig) -> Path:
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = root / state_dir
    return state_dir


def _build_single_backend(
    backend_name: BackendName, root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=root)
    return ClaudeCodeBackend(working_directory=root)


def _build_backend(config: ConsultancyConfig, root: Path) -> GenerationBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, root),
        retry_policy=policy,
    )


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    setup_logging(config.logging)
    store = LocalProjectStore(_resolve_state_dir(root, config))
    backend = _build_backend(config, root)
    orchestrator = Orchestrator(
        partner=PartnerAgent(backend, model=config.agents.partner_model),
        principal=PrincipalAgent(backend, model=config.agents.principal_model),
        associate=AssociateAgent(backend, model=config.agents.associate_model),
        store=store,
        config=config,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=orchestrator,
    )


def _echo_progress(project_id: str, event: dict[str, Any]) -> None:
    click.echo(f"[{event['progress']:>3}%] {event['phase']}: {event['message']}", err=True)


@click.group()
def cli() -> None:
    """Consultancy engagement CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_dir = _resolve_state_dir(root, config)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized consultancy in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Project records: {state_dir}")


@cli.command("plan")
@click.argument("request")
@click.option("--project-type", default=None)
@click.option("--complexity", type=click.IntRange(1, 10), default=None)
@click.option("--urgency", type=click.Choice(URGENCY_LEVELS), default="normal", show_default=True)
@click.option("--budget", type=click.Choice(BUDGET_LEVELS), default="medium", show_default=True)
@click.option("--special", "special", multiple=True, help="Extra requirement tag; repeatable.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_command(
    request: str,
    project_type: str | None,
    complexity: int | None,
    urgency: str,
    budget: str,
    special: tuple[str, ...],
    config_value: str,
) -> None:
    """Print the work plan for REQUEST without calling a generation backend."""
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    client_request = ClientRequest(
        message=request,
        project_type=project_type,
        urgency=urgency,
        budget=budget,
        special_requirements=list(special),
    )
    requirements = PartnerAgent.fallback_requirements(client_request)
    if complexity is not None:
        requirements.complexity = complexity
    planner = WorkPlanner(max_modules=config.orchestration.max_work_modules)
    try:
        plan = planner.plan(RequestContext.from_requirements(requirements, client_request))
    except ConsultancyError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))


@cli.command("run")
@click.argument("request")
@click.option("--client", "client_name", default="Client", show_default=True)
@click.option("--project-type", default=None)
@click.option("--urgency", type=click.Choice(URGENCY_LEVELS), default="normal", show_default=True)
@click.option("--budget", type=click.Choice(BUDGET_LEVELS), default="medium", show_default=True)
@click.option("--special", "special", multiple=True, help="Extra requirement tag; repeatable.")
@click.option("--quiet", is_flag=True, default=False, help="Do not echo progress events.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    request: str,
    client_name: str,
    project_type: str | None,
    urgency: str,
    budget: str,
    special: tuple[str, ...],
    quiet: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    client_request = ClientRequest(
        message=request,
        client_name=client_name,
        project_type=project_type,
        urgency=urgency,
        budget=budget,
        special_requirements=list(special),
    )
    result = asyncio.run(
        runtime.orchestrator.start_project(
            client_request, on_update=None if quiet else _echo_progress
        )
    )
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))


@cli.command("status")
@click.argument("project_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(project_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    store = LocalProjectStore(_resolve_state_dir(root, config))
    try:
        record = store.get_project(project_id)
    except ConsultancyError as exc:
        raise click.ClickException(str(exc)) from exc
    if record is None:
        raise click.ClickException(f"Project not found: {project_id}")
    click.echo(json.dumps(record, ensure_ascii=False, indent=2))


@cli.command("projects")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def projects_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    project_ids = LocalProjectStore(_resolve_state_dir(root, config)).list_projects()
    if not project_ids:
        click.echo("No projects recorded.")
        return
    for project_id in project_ids:
        click.echo(project_id)


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
