import asyncio
import json
import logging
import threading
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import structlog
from click.testing import CliRunner

from foreman.backends.base import AgentBackend
from foreman.cli import _prompt_escalation, cli
from foreman.config import load_config
from foreman.escalation import EscalationEvent, Resolution
from foreman.processes import CancelToken


class FakeBackend(AgentBackend):
    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        token: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, token
        yield self.replies.pop(0) if self.replies else "no plan"


def _plan_reply(*tasks: dict[str, Any]) -> str:
    return json.dumps({"scratchpad": "keep it small", "tasks": list(tasks)})


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    root = tmp_path / "repo"
    root.mkdir()
    monkeypatch.chdir(root)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setattr("foreman.cli.configure_logging", lambda level, json: None)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield root
    structlog.reset_defaults()


def _use_backend(monkeypatch: pytest.MonkeyPatch, replies: list[str]) -> None:
    backend = FakeBackend(replies)
    monkeypatch.setattr("foreman.cli._build_backend", lambda config, workspace_root: backend)


def test_init_writes_config_and_state_dir(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert (repo / "foreman.toml").exists()
    assert (repo / ".foreman").is_dir()
    assert load_config(repo / "foreman.toml").permissions.internet_access is False


def test_run_executes_plan_and_reports(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_backend(
        monkeypatch,
        [
            _plan_reply(
                {
                    "capability": "write_file",
                    "description": "write greeting",
                    "params": {"path": "hello.txt", "content": "hi\n"},
                }
            )
        ],
    )
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    result = runner.invoke(cli, ["run", "write a greeting", "--session", "demo"])

    assert result.exit_code == 0, result.output
    assert (repo / "hello.txt").read_text(encoding="utf-8") == "hi\n"
    assert "[1] write_file ..." in result.output
    assert "All tasks completed successfully." in result.output
    assert "Tasks: 2/2" in result.output
    assert "Objective complete." in result.output

    status = runner.invoke(cli, ["status", "--session", "demo"])
    assert status.exit_code == 0, status.output
    plan = json.loads(status.output)
    assert [task["status"] for task in plan["tasks"]] == ["completed", "completed"]
    assert plan["scratchpad"].startswith("keep it small")

    shown = runner.invoke(cli, ["session", "show", "demo"])
    assert shown.exit_code == 0, shown.output
    assert json.loads(shown.output)["active_environment"] is None


def test_escalation_prompt_can_inspect_then_continue(
    repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _use_backend(
        monkeypatch,
        [_plan_reply({"capability": "execute_command", "params": {"command": "exit 4"}})],
    )

    result = CliRunner().invoke(
        cli,
        ["run", "try a command", "--max-retries", "0"],
        input="inspect\ncontinue\n",
    )

    assert result.exit_code == 0, result.output
    assert "Task 1 failed after 0 revision(s)." in result.output
    assert "Command failed with exit code 4" in result.output
    assert "Objective complete." in result.output


def test_escalation_stop_fails_the_run(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_backend(
        monkeypatch,
        [_plan_reply({"capability": "execute_command", "params": {"command": "exit 4"}})],
    )

    result = CliRunner().invoke(
        cli, ["run", "try a command", "--max-retries", "0"], input="stop\n"
    )

    assert result.exit_code == 1
    assert "Plan failed: Stopped by operator" in result.output


def test_unusable_planner_reply_fails_run(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_backend(monkeypatch, ["no json", "still none", "nothing"])

    result = CliRunner().invoke(cli, ["run", "do something"])

    assert result.exit_code == 1
    assert "Planning failed" in result.output
    assert "Tasks: 0/0" in result.output


def test_permissions_toggle_changes_capability_listing(repo: Path) -> None:
    runner = CliRunner()
    before = runner.invoke(cli, ["capabilities"])
    toggled = runner.invoke(cli, ["permissions", "internet_access", "on"])
    after = runner.invoke(cli, ["capabilities"])

    assert before.exit_code == 0, before.output
    fetch_before = next(line for line in before.output.splitlines() if "fetch_url" in line)
    assert "disabled (denied by policy)" in fetch_before
    assert toggled.exit_code == 0
    assert load_config(repo / "foreman.toml").permissions.internet_access is True
    fetch_after = next(line for line in after.output.splitlines() if "fetch_url" in line)
    assert "denied by policy" not in fetch_after


def test_unknown_capability_in_config_is_reported(repo: Path) -> None:
    (repo / "foreman.toml").write_text(
        '[capabilities]\nenabled = ["teleport"]\n', encoding="utf-8"
    )

    result = CliRunner().invoke(cli, ["capabilities"])

    assert result.exit_code == 1
    assert "Unknown capability: teleport" in result.output


def test_session_show_and_reset(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()

    missing = runner.invoke(cli, ["session", "show", "ghost"])
    assert missing.exit_code == 1
    assert "Unknown session: ghost" in missing.output

    reply = _plan_reply({"capability": "memory_set", "params": {"key": "x", "value": "42"}})
    _use_backend(monkeypatch, [reply])
    assert runner.invoke(cli, ["run", "remember x", "--session", "mem"]).exit_code == 0
    shown = runner.invoke(cli, ["session", "show", "mem"])
    assert json.loads(shown.output)["persistent_memory"] == {"x": 42}

    reset = runner.invoke(cli, ["session", "reset", "mem"])
    assert "Session 'mem' reset." in reset.output
    assert "No state for 'mem'." in runner.invoke(cli, ["session", "reset", "mem"]).output


def test_escalation_prompt_keeps_event_loop_responsive(monkeypatch: pytest.MonkeyPatch) -> None:
    released = threading.Event()

    def waiting_prompt(*args: Any, **kwargs: Any) -> str:
        return "continue" if released.wait(2) else "stop"

    monkeypatch.setattr("foreman.cli.click.prompt", waiting_prompt)
    event = EscalationEvent(
        plan_id="plan-1",
        session_id="s1",
        failed_task={"id": 1, "capability": "execute_command"},
        output="exit 4",
        retry_count=0,
        reason="Retries exhausted after 0 revision(s).",
    )

    async def scenario() -> Resolution:
        asyncio.get_running_loop().call_later(0.01, released.set)
        return await _prompt_escalation(event)

    assert asyncio.run(scenario()) is Resolution.CONTINUE_ANYWAY
