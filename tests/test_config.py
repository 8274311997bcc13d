import tomllib
from pathlib import Path

from consultancy import __version__
from consultancy.config import ConsultancyConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "consultancy.toml"
    config = ConsultancyConfig.default()
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.agents.partner_model = "partner-model"
    config.orchestration.quality_profile = "lenient"
    config.orchestration.execution_timeout_seconds = 120.0
    config.pool.max_concurrent_per_role = 2
    config.pool.seed = 7
    config.collaboration.enabled = False
    config.collaboration.max_turns = 4
    config.logging.format = "json"
    config.state.directory = "records"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.agents.partner_model == "partner-model"
    assert loaded.orchestration.quality_profile == "lenient"
    assert loaded.orchestration.execution_timeout_seconds == 120.0
    assert loaded.orchestration.quality_threshold is None
    assert loaded.pool.max_concurrent_per_role == 2
    assert loaded.pool.seed == 7
    assert loaded.collaboration.enabled is False
    assert loaded.collaboration.max_turns == 4
    assert loaded.logging.format == "json"
    assert loaded.state.directory == "records"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.backend.primary == "claude"
    assert loaded.orchestration.execution_timeout_seconds == 900.0
    assert loaded.collaboration.max_turns == 8


def test_quality_profiles_and_explicit_override() -> None:
    config = ConsultancyConfig.default()

    assert config.orchestration.effective_quality_threshold() == 0.85
    config.orchestration.quality_profile = "standard"
    assert config.orchestration.effective_quality_threshold() == 0.80
    config.orchestration.quality_threshold = 0.6
    assert config.orchestration.effective_quality_threshold() == 0.6


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConsultancyConfig.default())

    for section in (
        "[backend]",
        "[agents]",
        "[orchestration]",
        "[pool]",
        "[collaboration]",
        "[logging]",
        "[state]",
    ):
        assert section in rendered
    assert "retry_backoff_seconds" in rendered
    assert "execution_timeout_seconds = 900.0" in rendered
    # unset optionals are omitted rather than written as null
    assert "quality_threshold = " not in rendered.split("[collaboration]")[0]


def test_floats_survive_a_toml_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "consultancy.toml"
    config = ConsultancyConfig.default()
    config.pool.seconds_per_hour = 2.0

    save_config(config_path, config)
    raw = tomllib.loads(config_path.read_text(encoding="utf-8"))

    assert isinstance(raw["pool"]["seconds_per_hour"], float)
    assert load_config(config_path).pool.seconds_per_hour == 2.0


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
