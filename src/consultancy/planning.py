"""Work distribution: task catalogue, role scoring, dependency graph and scheduling.

Everything here is pure and synchronous. The only outside input is the
workload view, a callable returning in-flight counts per role. It is read
without locking and is treated as a soft scoring signal.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from consultancy.errors import PlanningError
from consultancy.models import ClientRequest, Requirements, WorkModule
from consultancy.roles import CAPABILITIES, Role, RoleCapability

WorkloadView = Callable[[], Mapping[Role, int]]

SPEED_FACTORS: dict[str, float] = {"low": 1.2, "normal": 1.0, "high": 0.8, "critical": 0.6}
BUDGET_FACTORS: dict[str, float] = {"low": 0.9, "medium": 1.0, "high": 1.1}
HOURS_PER_DAY = 8.0
MAX_TIMELINE_DAYS = 30
WORKLOAD_PROJECTION_STEP = 0.2


@dataclass(frozen=True, slots=True)
class TaskSpec:
    task_type: str
    base_complexity: int
    preferred_role: Role
    base_hours: float
    dependencies: tuple[str, ...] = ()
    critical_path: bool = False
    title: str = ""


TASK_CATALOGUE: dict[str, TaskSpec] = {
    spec.task_type: spec
    for spec in (
        TaskSpec("strategic_assessment", 9, Role.PARTNER, 4, (), True, "Strategic Assessment"),
        TaskSpec(
            "financial_analysis",
            7,
            Role.PRINCIPAL,
            6,
            ("data_gathering",),
            True,
            "Financial Analysis",
        ),
        TaskSpec(
            "market_research",
            5,
            Role.PRINCIPAL,
            8,
            ("data_gathering",),
            False,
            "Market Research",
        ),
        TaskSpec(
            "competitive_analysis",
            6,
            Role.PRINCIPAL,
            5,
            ("market_research",),
            False,
            "Competitive Analysis",
        ),
        TaskSpec("data_gathering", 3, Role.ASSOCIATE, 4, (), False, "Data Gathering"),
        TaskSpec(
            "report_preparation",
            4,
            Role.ASSOCIATE,
            6,
            ("financial_analysis", "market_research"),
            False,
            "Report Preparation",
        ),
        TaskSpec(
            "quality_review",
            6,
            Role.PRINCIPAL,
            2,
            ("report_preparation",),
            True,
            "Quality Review",
        ),
        TaskSpec(
            "client_presentation",
            8,
            Role.PARTNER,
            3,
            ("quality_review",),
            True,
            "Client Presentation",
        ),
        TaskSpec(
            "risk_assessment",
            8,
            Role.PARTNER,
            4,
            ("financial_analysis",),
            False,
            "Risk Assessment",
        ),
        TaskSpec(
            "scenario_modeling",
            7,
            Role.PRINCIPAL,
            5,
            ("financial_analysis",),
            False,
            "Scenario Modeling",
        ),
        TaskSpec(
            "stakeholder_analysis",
            6,
            Role.PRINCIPAL,
            3,
            ("strategic_assessment",),
            False,
            "Stakeholder Analysis",
        ),
        TaskSpec(
            "implementation_planning",
            8,
            Role.PARTNER,
            4,
            ("strategic_assessment", "report_preparation"),
            False,
            "Implementation Planning",
        ),
        TaskSpec(
            "technical_deep_dive",
            7,
            Role.PRINCIPAL,
            6,
            ("data_gathering",),
            False,
            "Technical Deep Dive",
        ),
        TaskSpec(
            "compliance_review",
            6,
            Role.PRINCIPAL,
            4,
            ("data_gathering",),
            False,
            "Compliance Review",
        ),
        TaskSpec(
            "change_strategy",
            7,
            Role.PRINCIPAL,
            4,
            ("strategic_assessment",),
            False,
            "Change Strategy",
        ),
    )
}

ANALYSIS_TASKS: tuple[str, ...] = (
    "strategic_assessment",
    "data_gathering",
    "financial_analysis",
    "market_research",
    "competitive_analysis",
    "report_preparation",
    "quality_review",
    "client_presentation",
)

PROJECT_TEMPLATES: dict[str, tuple[str, ...]] = {
    "strategic_planning": (
        "strategic_assessment",
        "data_gathering",
        "market_research",
        "report_preparation",
        "quality_review",
        "client_presentation",
    ),
    "market_entry": (
        "data_gathering",
        "market_research",
        "competitive_analysis",
        "financial_analysis",
        "report_preparation",
        "quality_review",
        "client_presentation",
    ),
    "technical_assessment": (
        "data_gathering",
        "technical_deep_dive",
        "report_preparation",
        "quality_review",
        "client_presentation",
    ),
    "organizational_change": (
        "strategic_assessment",
        "data_gathering",
        "stakeholder_analysis",
        "change_strategy",
        "report_preparation",
        "quality_review",
    ),
    "mergers_acquisitions": (
        "data_gathering",
        "financial_analysis",
        "market_research",
        "risk_assessment",
        "report_preparation",
        "quality_review",
        "client_presentation",
    ),
}

CORE_TASKS: tuple[str, ...] = (
    "strategic_assessment",
    "data_gathering",
    "report_preparation",
    "quality_review",
    "client_presentation",
)

SPECIAL_REQUIREMENT_TASKS: dict[str, str] = {
    "technical_analysis": "technical_deep_dive",
    "regulatory_compliance": "compliance_review",
    "change_management": "change_strategy",
}


@dataclass(slots=True)
class RequestContext:
    project_type: str = "comprehensive_analysis"
    complexity: int = 7
    urgency: str = "normal"
    budget: str = "medium"
    client_tier: str = "standard"
    special_requirements: list[str] = field(default_factory=list)

    @classmethod
    def from_requirements(
        cls, requirements: Requirements, request: ClientRequest | None = None
    ) -> RequestContext:
        project_type = requirements.consulting_type
        if request is not None and request.project_type:
            project_type = request.project_type
        special = list(requirements.special_requirements)
        if request is not None:
            special.extend(item for item in request.special_requirements if item not in special)
        return cls(
            project_type=project_type or "comprehensive_analysis",
            complexity=max(1, min(10, int(requirements.complexity))),
            urgency=requirements.urgency,
            budget=requirements.budget,
            client_tier=requirements.client_tier,
            special_requirements=special,
        )


@dataclass(slots=True)
class GraphNode:
    module: WorkModule
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DependencyGraph:
    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def dependencies_of(self, module_id: str) -> list[str]:
        return list(self.nodes[module_id].dependencies)

    def dependents_of(self, module_id: str) -> list[str]:
        return list(self.nodes[module_id].dependents)

    def is_ready(self, module_id: str, completed: set[str]) -> bool:
        return all(dep_id in completed for dep_id in self.nodes[module_id].dependencies)

    def to_dict(self) -> dict[str, dict[str, list[str]]]:
        return {
            module_id: {
                "dependencies": list(node.dependencies),
                "dependents": list(node.dependents),
            }
            for module_id, node in self.nodes.items()
        }


@dataclass(slots=True)
class TimelineEntry:
    day: int
    role: Role
    module_id: str
    task_type: str
    duration: float
    start: float
    end: float


@dataclass(slots=True)
class RoleResources:
    tasks: int
    hours: float
    cost: float
    utilization: float


@dataclass(slots=True)
class ResourcePlan:
    total_hours: float
    total_cost: float
    estimated_duration: float
    role_breakdown: dict[Role, RoleResources]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_hours": self.total_hours,
            "total_cost": self.total_cost,
            "estimated_duration": self.estimated_duration,
            "role_breakdown": {
                str(role): asdict(resources) for role, resources in self.role_breakdown.items()
            },
        }


@dataclass(slots=True)
class RiskFactor:
    type: str
    severity: str
    description: str
    role: Role | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {"type": self.type, "severity": self.severity, "description": self.description}
        if self.role is not None:
            payload["role"] = str(self.role)
        return payload


@dataclass(slots=True)
class WorkPlan:
    modules: list[WorkModule]
    graph: DependencyGraph
    timeline: list[TimelineEntry]
    resources: ResourcePlan
    critical_path: list[str]
    risk_factors: list[RiskFactor]
    recommendations: list[str]

    @property
    def total_hours(self) -> float:
        return round(sum(module.estimated_hours for module in self.modules), 1)

    @property
    def roles(self) -> list[Role]:
        present = {module.role for module in self.modules}
        return [role for role in Role if role in present]

    def to_dict(self) -> dict[str, Any]:
        return {
            "modules": [module.to_dict() for module in self.modules],
            "dependencies": self.graph.to_dict(),
            "timeline": [
                {**asdict(entry), "role": str(entry.role)} for entry in self.timeline
            ],
            "resources": self.resources.to_dict(),
            "critical_path": list(self.critical_path),
            "risk_factors": [risk.to_dict() for risk in self.risk_factors],
            "recommendations": list(self.recommendations),
            "total_hours": self.total_hours,
            "roles": [str(role) for role in self.roles],
        }


def identify_required_tasks(context: RequestContext) -> list[TaskSpec]:
    if "analysis" in context.project_type:
        task_types = list(ANALYSIS_TASKS)
    else:
        task_types = list(PROJECT_TEMPLATES.get(context.project_type, CORE_TASKS))

    if context.complexity >= 8:
        task_types.extend(["risk_assessment", "scenario_modeling"])
    if context.complexity >= 9:
        task_types.extend(["stakeholder_analysis", "implementation_planning"])
    for requirement in context.special_requirements:
        extra = SPECIAL_REQUIREMENT_TASKS.get(requirement)
        if extra:
            task_types.append(extra)

    seen: set[str] = set()
    specs: list[TaskSpec] = []
    for task_type in task_types:
        if task_type in seen or task_type not in TASK_CATALOGUE:
            continue
        seen.add(task_type)
        specs.append(TASK_CATALOGUE[task_type])
    return specs


def _domain_match(task_type: str, capability: RoleCapability) -> bool:
    if task_type in capability.domains or task_type in capability.responsibilities:
        return True
    tokens = set(task_type.split("_"))
    return any("_" not in domain and domain in tokens for domain in capability.domains)


def score_role(
    task: TaskSpec,
    capability: RoleCapability,
    context: RequestContext,
    load: float,
) -> float:
    score = 0.0
    complexity = task.base_complexity
    band = capability.complexity
    if band.contains(complexity):
        score += (1 - abs(complexity - band.optimal) / 10) * 40

    if _domain_match(task.task_type, capability):
        score += 30

    score -= (load / capability.bandwidth.max) * 20

    role = capability.role
    if context.budget == "low" and capability.hourly_rate > 500:
        score -= 15
    if context.budget == "high" and role is Role.PARTNER:
        score += 10
    if context.urgency == "high" and role is Role.ASSOCIATE:
        score += 10
    if context.urgency == "low" and role is Role.PARTNER:
        score -= 5
    if context.client_tier == "enterprise" and role is Role.PARTNER:
        score += 15

    return max(0.0, score)


def score_roles(
    task: TaskSpec,
    context: RequestContext,
    workload: Mapping[Role, float],
) -> dict[Role, float]:
    return {
        role: score_role(task, CAPABILITIES[role], context, float(workload.get(role, 0.0)))
        for role in Role
    }


def select_role(
    task: TaskSpec,
    context: RequestContext,
    workload: Mapping[Role, float] | None = None,
) -> Role:
    """Highest score wins; strict comparison keeps the earlier role on ties."""
    scores = score_roles(task, context, workload or {})
    best_role = Role.PARTNER
    best_score = -1.0
    for role in Role:
        if scores[role] > best_score:
            best_role = role
            best_score = scores[role]
    return best_role


def estimate_hours(task: TaskSpec, role: Role, context: RequestContext) -> float:
    efficiency = CAPABILITIES[role].bandwidth.efficiency
    estimated = task.base_hours * (task.base_complexity / 5) / efficiency
    estimated *= SPEED_FACTORS.get(context.urgency, 1.0)
    estimated *= BUDGET_FACTORS.get(context.budget, 1.0)
    return round(estimated, 1)


def adjust_complexity(task: TaskSpec, context: RequestContext) -> float:
    adjusted = float(task.base_complexity)
    if context.urgency == "critical":
        adjusted += 1
    if context.client_tier == "enterprise":
        adjusted += 0.5
    if context.budget == "low":
        adjusted -= 0.5
    return max(1.0, min(10.0, adjusted))


def calculate_priority(task: TaskSpec, context: RequestContext) -> float:
    priority = 10.0 if task.critical_path else 5.0
    priority += task.base_complexity * 0.5
    if context.urgency == "critical":
        priority += 5
    if context.client_tier == "enterprise":
        priority += 2
    return min(10.0, priority)


def quality_requirements(task: TaskSpec, context: RequestContext) -> dict[str, float]:
    requirements = {"accuracy": 0.9, "completeness": 0.8, "timeliness": 0.9}
    if context.client_tier == "enterprise":
        requirements["accuracy"] = 0.95
        requirements["completeness"] = 0.9
    if task.critical_path:
        requirements["timeliness"] = 0.95
    return requirements


def build_dependency_graph(modules: list[WorkModule]) -> DependencyGraph:
    graph = DependencyGraph()
    first_by_type: dict[str, str] = {}
    for module in modules:
        if not module.id or not module.id.strip():
            raise PlanningError(f"Work module '{module.task_type}' has no identifier.")
        if module.id in graph.nodes:
            raise PlanningError(f"Duplicate work module identifier: {module.id}")
        graph.nodes[module.id] = GraphNode(module=module)
        first_by_type.setdefault(module.task_type, module.id)

    for module_id, node in graph.nodes.items():
        for task_type in node.module.dependencies:
            dep_id = first_by_type.get(task_type)
            if dep_id is None or dep_id == module_id or dep_id in node.dependencies:
                continue
            node.dependencies.append(dep_id)

    for module_id, node in graph.nodes.items():
        for dep_id in node.dependencies:
            graph.nodes[dep_id].dependents.append(module_id)
    return graph


def create_execution_timeline(
    modules: list[WorkModule], graph: DependencyGraph
) -> list[TimelineEntry]:
    timeline: list[TimelineEntry] = []
    completed: set[str] = set()
    day = 0
    while len(completed) < len(modules) and day <= MAX_TIMELINE_DAYS:
        ready = [
            module
            for module in modules
            if module.id not in completed and graph.is_ready(module.id, completed)
        ]
        scheduled: list[str] = []
        remaining = {role: HOURS_PER_DAY for role in Role}
        for module in ready:
            capacity = remaining[module.role]
            fits = module.estimated_hours <= capacity
            # oversized work takes a whole day of its own
            oversized = capacity == HOURS_PER_DAY and module.estimated_hours > HOURS_PER_DAY
            if not (fits or oversized):
                continue
            start = HOURS_PER_DAY - capacity
            timeline.append(
                TimelineEntry(
                    day=day,
                    role=module.role,
                    module_id=module.id,
                    task_type=module.task_type,
                    duration=module.estimated_hours,
                    start=start,
                    end=round(start + module.estimated_hours, 1),
                )
            )
            remaining[module.role] = max(0.0, capacity - module.estimated_hours)
            scheduled.append(module.id)
        completed.update(scheduled)
        day += 1
    return timeline


def calculate_resource_requirements(modules: list[WorkModule]) -> ResourcePlan:
    breakdown: dict[Role, RoleResources] = {}
    total_hours = 0.0
    total_cost = 0.0
    for role in Role:
        capability = CAPABILITIES[role]
        role_modules = [module for module in modules if module.role is role]
        hours = round(sum(module.estimated_hours for module in role_modules), 1)
        cost = round(hours * capability.hourly_rate, 2)
        utilization = min(100.0, hours / (capability.bandwidth.optimal * HOURS_PER_DAY) * 100)
        breakdown[role] = RoleResources(
            tasks=len(role_modules),
            hours=hours,
            cost=cost,
            utilization=round(utilization, 1),
        )
        total_hours += hours
        total_cost += cost
    return ResourcePlan(
        total_hours=round(total_hours, 1),
        total_cost=round(total_cost, 2),
        estimated_duration=max((module.estimated_hours for module in modules), default=0.0),
        role_breakdown=breakdown,
    )


def identify_critical_path(graph: DependencyGraph) -> list[str]:
    return [module_id for module_id, node in graph.nodes.items() if node.module.critical_path]


def assess_risk_factors(
    modules: list[WorkModule], workload: Mapping[Role, float]
) -> list[RiskFactor]:
    risks: list[RiskFactor] = []
    for role in Role:
        capacity = CAPABILITIES[role].bandwidth.max
        if float(workload.get(role, 0.0)) > capacity * 0.8:
            risks.append(
                RiskFactor(
                    type="resource_constraint",
                    severity="medium",
                    description=f"{role} approaching capacity limits",
                    role=role,
                )
            )
    high_complexity = sum(1 for module in modules if module.complexity > 8)
    if high_complexity > 3:
        risks.append(
            RiskFactor(
                type="complexity_risk",
                severity="high",
                description=f"{high_complexity} high-complexity tasks may impact delivery",
            )
        )
    return risks


def optimization_recommendations(modules: list[WorkModule]) -> list[str]:
    recommendations: list[str] = []
    if any(module.role is Role.PARTNER and module.complexity < 7 for module in modules):
        recommendations.append(
            "Consider delegating some partner tasks to principals to optimize costs"
        )
    if not any(module.role is Role.ASSOCIATE for module in modules):
        recommendations.append(
            "Consider utilizing associates for data gathering and initial research"
        )
    return recommendations


class WorkPlanner:
    """Turns a request context into scored, ordered and scheduled work modules."""

    def __init__(
        self,
        workload_view: WorkloadView | None = None,
        *,
        max_modules: int | None = None,
    ) -> None:
        self.workload_view = workload_view
        self.max_modules = max_modules
        self._projection: dict[Role, float] = {role: 0.0 for role in Role}

    def _current_workload(self) -> dict[Role, float]:
        in_flight: Mapping[Role, int] = self.workload_view() if self.workload_view else {}
        return {
            role: float(in_flight.get(role, 0)) + self._projection[role] for role in Role
        }

    def select_role(self, task: TaskSpec, context: RequestContext) -> Role:
        return select_role(task, context, self._current_workload())

    def plan_work(self, context: RequestContext) -> list[WorkModule]:
        self._projection = {role: 0.0 for role in Role}
        specs = identify_required_tasks(context)
        ordered = sorted(specs, key=lambda spec: (not spec.critical_path, -spec.base_complexity))
        if self.max_modules is not None:
            ordered = ordered[: max(1, self.max_modules)]

        modules: list[WorkModule] = []
        for index, spec in enumerate(ordered, start=1):
            role = self.select_role(spec, context)
            modules.append(
                WorkModule(
                    id=f"mod-{index:02d}-{spec.task_type}",
                    task_type=spec.task_type,
                    role=role,
                    estimated_hours=estimate_hours(spec, role, context),
                    dependencies=list(spec.dependencies),
                    critical_path=spec.critical_path,
                    complexity=adjust_complexity(spec, context),
                    priority=calculate_priority(spec, context),
                    quality_requirements=quality_requirements(spec, context),
                    title=spec.title,
                )
            )
            self._projection[role] += WORKLOAD_PROJECTION_STEP
        return modules

    def plan(self, context: RequestContext) -> WorkPlan:
        modules = self.plan_work(context)
        graph = build_dependency_graph(modules)
        return WorkPlan(
            modules=modules,
            graph=graph,
            timeline=create_execution_timeline(modules, graph),
            resources=calculate_resource_requirements(modules),
            critical_path=identify_critical_path(graph),
            risk_factors=assess_risk_factors(modules, self._current_workload()),
            recommendations=optimization_recommendations(modules),
        )
