from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]
QualityProfile = Literal["lenient", "standard", "strict"]
LogFormat = Literal["console", "json"]

QUALITY_PROFILES: dict[str, float] = {
    "lenient": 0.75,
    "standard": 0.80,
    "strict": 0.85,
}


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    partner_model: str = "claude-sonnet-4-5"
    principal_model: str = "claude-sonnet-4-5"
    associate_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class OrchestrationConfig:
    quality_profile: QualityProfile = "strict"
    quality_threshold: float | None = None
    execution_timeout_seconds: float = 900.0
    max_work_modules: int = 12

    def effective_quality_threshold(self) -> float:
        if self.quality_threshold is not None:
            return float(self.quality_threshold)
        return QUALITY_PROFILES.get(self.quality_profile, QUALITY_PROFILES["strict"])


@dataclass(slots=True)
class PoolConfig:
    max_concurrent_per_role: int = 4
    seconds_per_hour: float = 1.0
    poll_interval_seconds: float = 0.5
    jitter_max: float = 10.0
    seed: int | None = None


@dataclass(slots=True)
class CollaborationConfig:
    enabled: bool = True
    max_turns: int = 8
    quality_threshold: float = 0.8
    completion_signals_required: int = 2
    preview_chars: int = 200


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = "console"


@dataclass(slots=True)
class StateConfig:
    directory: str = ".consultancy/projects"


@dataclass(slots=True)
class ConsultancyConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    collaboration: CollaborationConfig = field(default_factory=CollaborationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ConsultancyConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConsultancyConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            orchestration=OrchestrationConfig(**data.get("orchestration", {})),
            pool=PoolConfig(**data.get("pool", {})),
            collaboration=CollaborationConfig(**data.get("collaboration", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "partner_model": self.agents.partner_model,
                "principal_model": self.agents.principal_model,
                "associate_model": self.agents.associate_model,
            },
            "orchestration": {
                "quality_profile": self.orchestration.quality_profile,
                "quality_threshold": self.orchestration.quality_threshold,
                "execution_timeout_seconds": self.orchestration.execution_timeout_seconds,
                "max_work_modules": self.orchestration.max_work_modules,
            },
            "pool": {
                "max_concurrent_per_role": self.pool.max_concurrent_per_role,
                "seconds_per_hour": self.pool.seconds_per_hour,
                "poll_interval_seconds": self.pool.poll_interval_seconds,
                "jitter_max": self.pool.jitter_max,
                "seed": self.pool.seed,
            },
            "collaboration": {
                "enabled": self.collaboration.enabled,
                "max_turns": self.collaboration.max_turns,
                "quality_threshold": self.collaboration.quality_threshold,
                "completion_signals_required": self.collaboration.completion_signals_required,
                "preview_chars": self.collaboration.preview_chars,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        # keep floats as floats so they load back with the same type
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConsultancyConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "backend",
        "agents",
        "orchestration",
        "pool",
        "collaboration",
        "logging",
        "state",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; unset optionals fall back to dataclass defaults on load.
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConsultancyConfig:
    if not path.exists():
        return ConsultancyConfig.default()
    return ConsultancyConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConsultancyConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
