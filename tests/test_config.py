import json
import tomllib
from pathlib import Path

import pytest
import structlog

from foreman import __version__
from foreman.config import ForemanConfig, dumps_toml, load_config, save_config
from foreman.logging import configure_logging


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.project.name = "foreman-test"
    config.planner.command = "my-model"
    config.planner.model = "large"
    config.planner.timeout_seconds = 45.5
    config.agent.max_retries = 2
    config.permissions.internet_access = True
    config.capabilities.enabled = ["fetch_url"]
    config.capabilities.disabled = ["python_repl"]
    config.logging.level = "DEBUG"
    config.logging.json = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "foreman-test"
    assert loaded.planner.command == "my-model"
    assert loaded.planner.model == "large"
    assert loaded.planner.timeout_seconds == 45.5
    assert loaded.planner.args == ["-p", "{prompt}", "--output-format", "stream-json"]
    assert loaded.agent.max_retries == 2
    assert loaded.agent.correction_timeout_seconds == 180.0
    assert loaded.permissions.internet_access is True
    assert loaded.permissions.to_policy().allows("internet_access")
    assert loaded.capabilities.enabled == ["fetch_url"]
    assert loaded.capabilities.disabled == ["python_repl"]
    assert loaded.logging.level == "DEBUG"
    assert loaded.logging.json is True


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == ForemanConfig.default()
    assert loaded.permissions.internet_access is False


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ForemanConfig.default())

    for section in ("project", "planner", "agent", "permissions", "capabilities", "logging"):
        assert f"[{section}]" in rendered
    assert "retry_backoff_seconds = 0.5" in rendered
    assert "correction_timeout_seconds = 180.0" in rendered
    assert "enabled = []" in rendered
    assert tomllib.loads(rendered)["agent"]["max_retries"] == 1


def test_resolve_path_expands_relative_and_home(tmp_path: Path) -> None:
    config = ForemanConfig.default()

    assert config.resolve_path(tmp_path, ".foreman") == tmp_path / ".foreman"
    assert config.resolve_path(tmp_path, "~/x") == Path("~/x").expanduser()


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_configure_logging_filters_and_renders_json(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("WARNING", json=True)
    try:
        logger = structlog.get_logger().bind(component="test")
        logger.info("hidden_event")
        logger.warning("shown_event", plan_id="plan-1")
    finally:
        structlog.reset_defaults()

    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    assert [line["event"] for line in lines] == ["shown_event"]
    assert lines[0]["level"] == "warning"
    assert lines[0]["component"] == "test"
