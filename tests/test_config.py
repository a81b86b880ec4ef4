import tomllib
from pathlib import Path

from epicflow import __version__
from epicflow.config import EpicflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "epicflow.toml"
    config = EpicflowConfig.default()
    config.project.name = "epicflow-test"
    config.project.artifact_root = "docs/artifacts"
    config.state.backend = "memory"
    config.state.lock_timeout_seconds = 1.5
    config.handlers.binary = "/opt/claude/bin/claude"
    config.handlers.timeout_seconds = 120.0
    config.handlers.human_commands = ["commit-and-pr", "review-plan"]
    config.workflow.review_threshold = "medium"
    config.workflow.max_parallel_tasks = 3
    config.workflow.max_steps_per_run = 40
    config.workflow.pause_on = ["PR_READY"]
    config.logging.level = "DEBUG"
    config.logging.json = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == EpicflowConfig.default()
    assert loaded.state.backend == "local"
    assert loaded.workflow.review_threshold == "high"
    assert loaded.handlers.timeout_seconds == 900.0


def test_partial_config_keeps_defaults_for_missing_sections(tmp_path: Path) -> None:
    config_path = tmp_path / "epicflow.toml"
    config_path.write_text('[workflow]\nreview_threshold = "low"\n', encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.workflow.review_threshold == "low"
    assert loaded.workflow.max_parallel_tasks == 1
    assert loaded.handlers.kind == "claude"
    assert loaded.logging.json is False


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(EpicflowConfig.default())

    for section in ("[project]", "[state]", "[handlers]", "[workflow]", "[logging]"):
        assert section in rendered
    assert "lock_timeout_seconds = 3.0" in rendered
    assert "timeout_seconds = 900.0" in rendered
    assert "human_commands = []" in rendered
    assert "json = false" in rendered
    assert tomllib.loads(rendered)["workflow"]["max_steps_per_run"] == 0


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
