from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from dataclasses import dataclass
from pathlib import Path

import click

from foreman.backends import AgentBackend, CommandBackend, ResilientBackend, RetryPolicy
from foreman.capabilities import PERMISSION_GROUPS, CapabilityRegistry
from foreman.capabilities.builtins import default_capabilities
from foreman.config import CONFIG_FILENAME, ForemanConfig, load_config, save_config
from foreman.correction import SelfCorrectionController
from foreman.errors import ForemanError
from foreman.escalation import EscalationEvent, EscalationHandler, Resolution
from foreman.events import EventBus, OrchestratorEvent
from foreman.knowledge import KnowledgeStore
from foreman.logging import configure_logging
from foreman.orchestrator import Orchestrator
from foreman.planner import BackendPlanner
from foreman.processes import ProcessRegistry
from foreman.session import SessionStateStore
from foreman.state import JsonStateStore
from foreman.workspace import Workspace


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    config: ForemanConfig
    store: JsonStateStore
    registry: CapabilityRegistry
    sessions: SessionStateStore
    orchestrator: Orchestrator


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _workspace_root(config_path: Path, config: ForemanConfig) -> Path:
    return config.resolve_path(config_path.parent, config.project.workspace_root).resolve()


def _build_backend(config: ForemanConfig, workspace_root: Path) -> AgentBackend:
    backend = CommandBackend(
        command=config.planner.command,
        args=config.planner.args,
        model=config.planner.model,
        working_directory=workspace_root,
    )
    policy = RetryPolicy(
        max_retries=max(0, int(config.planner.max_retries)),
        backoff_seconds=max(0.0, float(config.planner.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.planner.timeout_seconds)),
    )
    return ResilientBackend(config.planner.command, backend, policy)


def _build_registry(config: ForemanConfig) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register_all(default_capabilities())
    registry.enable(config.capabilities.enabled)
    registry.disable(config.capabilities.disabled)
    registry.freeze()
    return registry


def _load_runtime(
    config_path: Path,
    *,
    debug: bool = False,
    max_retries: int | None = None,
    escalation_handler: EscalationHandler | None = None,
    events: EventBus | None = None,
) -> Runtime:
    config = load_config(config_path)
    configure_logging("DEBUG" if debug else config.logging.level, config.logging.json)
    workspace_root = _workspace_root(config_path, config)
    store = JsonStateStore(config.resolve_path(workspace_root, config.project.state_dir))
    global_store = JsonStateStore(
        config.resolve_path(workspace_root, config.project.global_state_dir)
    )
    registry = _build_registry(config)
    planner = BackendPlanner(
        _build_backend(config, workspace_root),
        registry,
        max_parse_attempts=config.planner.max_parse_attempts,
        model=config.planner.model or None,
        require_final_response=config.agent.require_final_response,
    )
    controller = SelfCorrectionController(
        planner,
        max_retries=config.agent.max_retries if max_retries is None else max_retries,
        timeout_seconds=config.agent.correction_timeout_seconds,
    )
    sessions = SessionStateStore(store)
    orchestrator = Orchestrator(
        registry=registry,
        processes=ProcessRegistry(),
        sessions=sessions,
        planner=planner,
        controller=controller,
        policy=config.permissions.to_policy(),
        store=store,
        knowledge=KnowledgeStore(store, global_store),
        workspace=Workspace(workspace_root),
        events=events,
        escalation_handler=escalation_handler,
    )
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        config=config,
        store=store,
        registry=registry,
        sessions=sessions,
        orchestrator=orchestrator,
    )


async def _prompt_escalation(event: EscalationEvent) -> Resolution:
    click.echo("")
    task_id = event.failed_task.get("id")
    click.echo(f"Task {task_id} failed after {event.retry_count} revision(s).")
    if event.reason:
        click.echo(f"Reason: {event.reason}")
    choice = await asyncio.to_thread(
        click.prompt,
        "Choose",
        type=click.Choice(["stop", "continue", "inspect"]),
        default="stop",
        show_default=True,
    )
    if choice == "inspect":
        click.echo(event.inspect_failure())
        return Resolution.INSPECT
    if choice == "continue":
        return Resolution.CONTINUE_ANYWAY
    return Resolution.STOP


def _echo_event(event: OrchestratorEvent) -> None:
    payload = event.payload
    if event.kind == "task_started":
        click.echo(f"[{payload['task_id']}] {payload['capability']} ...")
    elif event.kind == "task_finished":
        click.echo(f"[{payload['task_id']}] {payload['status']}")
    elif event.kind == "plan_revised":
        click.echo(f"Plan revised (attempt {payload['retry_count']}).")
    elif event.kind == "response":
        click.echo("")
        click.echo(payload.get("response", ""))


@click.group()
def cli() -> None:
    """Foreman CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    save_config(config_path, config)

    workspace_root = _workspace_root(config_path, config)
    state_dir = config.resolve_path(workspace_root, config.project.state_dir)
    JsonStateStore(state_dir)

    click.echo(f"Initialized Foreman in {workspace_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_dir}")


@cli.command("run")
@click.argument("objective")
@click.option("--session", "session_id", default="default", show_default=True)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.option("--debug", is_flag=True, default=False)
def run_command(
    objective: str,
    session_id: str,
    max_retries: int | None,
    config_value: str,
    debug: bool,
) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    events = EventBus()
    events.subscribe(_echo_event)
    try:
        runtime = _load_runtime(
            config_path,
            debug=debug,
            max_retries=max_retries,
            escalation_handler=_prompt_escalation,
            events=events,
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    orchestrator = runtime.orchestrator

    async def _run():
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, orchestrator.cancel_session, session_id)
        try:
            return await orchestrator.run(session_id, objective)
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)

    try:
        summary = asyncio.run(_run())
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo("")
    click.echo(f"Plan: {summary.plan.id}")
    click.echo(f"Tasks: {summary.completed_tasks}/{len(summary.plan.tasks)}")
    click.echo(f"Revisions: {summary.replans}")
    if summary.status != "completed":
        last_note = summary.plan.scratchpad.rsplit("\n\n", 1)[-1]
        raise click.ClickException(f"Plan failed: {last_note}")
    click.echo("Objective complete.")


@cli.command("status")
@click.option("--session", "session_id", default="default", show_default=True)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(session_id: str, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    try:
        runtime = _load_runtime(config_path)
        plan = runtime.orchestrator.load_plan(session_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    if plan is None:
        click.echo(f"No plan recorded for session '{session_id}'.")
        return
    click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))


@cli.command("capabilities")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def capabilities_command(config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    try:
        runtime = _load_runtime(config_path)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    policy = runtime.config.permissions.to_policy()
    for capability in runtime.registry.all():
        state = "enabled" if runtime.registry.is_enabled(capability.name) else "disabled"
        group = capability.permission_group or "-"
        allowed = "" if policy.allows(capability.permission_group) else " (denied by policy)"
        click.echo(f"{capability.name:<30} {group:<18} {state}{allowed}")


@cli.command("permissions")
@click.argument("group", type=click.Choice(list(PERMISSION_GROUPS)))
@click.argument("value", type=click.Choice(["on", "off"]))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def permissions_command(group: str, value: str, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    setattr(config.permissions, group, value == "on")
    save_config(config_path, config)
    click.echo(f"{group}: {value}")


@cli.group("session")
def session_group() -> None:
    """Inspect or reset durable session state."""


@session_group.command("show")
@click.argument("session_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def session_show_command(session_id: str, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    try:
        runtime = _load_runtime(config_path)
        if session_id not in runtime.sessions.list_sessions():
            raise click.ClickException(f"Unknown session: {session_id}")
        state = runtime.sessions.load(session_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))


@session_group.command("reset")
@click.argument("session_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def session_reset_command(session_id: str, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    try:
        runtime = _load_runtime(config_path)
        removed = runtime.sessions.reset(session_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Session '{session_id}' reset." if removed else f"No state for '{session_id}'.")


if __name__ == "__main__":
    cli()
