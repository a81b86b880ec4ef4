from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from epicflow.config import EpicflowConfig, load_config, save_config
from epicflow.dispatcher import AgentDispatcher
from epicflow.epic_review import EpicNotReadyError, EpicReviewEngine, FileArtifactReader
from epicflow.executor import StepExecutor, TaskNotRunnableError
from epicflow.graphs import DONE, Command, WorkflowConfigurationError, WorkflowGraphRegistry
from epicflow.handlers import (
    ClaudeEpicPlanner,
    CommandHandler,
    HandlerExecutionError,
    build_handlers,
)
from epicflow.models import Task, parse_epic_payload
from epicflow.observability import configure_logging
from epicflow.orchestrator import NextEpicPlanner, OrchestratorLoop, RunMode, RunSummary
from epicflow.scheduler import dependency_cycles, ready_tasks, waiting_tasks
from epicflow.state import EpicflowStateError, TaskStore, create_backend

DOMAIN_ERRORS = (
    WorkflowConfigurationError,
    EpicflowStateError,
    TaskNotRunnableError,
    EpicNotReadyError,
    HandlerExecutionError,
    ValueError,
)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: EpicflowConfig
    registry: WorkflowGraphRegistry
    store: TaskStore
    orchestrator: OrchestratorLoop
    reviewer: EpicReviewEngine


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_handlers(config: EpicflowConfig, repo_root: Path) -> dict[Command, CommandHandler]:
    return build_handlers(config, repo_root)


def _build_planner(config: EpicflowConfig, repo_root: Path) -> NextEpicPlanner:
    return ClaudeEpicPlanner(binary=config.handlers.binary, working_directory=repo_root)


def _open_store(repo_root: Path, config: EpicflowConfig) -> TaskStore:
    backend = create_backend(
        config.state.backend,
        _resolve_path(repo_root, config.state.root),
        lock_timeout_seconds=config.state.lock_timeout_seconds,
    )
    return TaskStore(backend)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(level=config.logging.level, json_format=config.logging.json)
    try:
        store = _open_store(repo_root, config)
        handlers = _build_handlers(config, repo_root)
        reviewer = EpicReviewEngine(
            store,
            FileArtifactReader(_resolve_path(repo_root, config.project.artifact_root)),
            threshold=config.workflow.review_threshold,
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    registry = store.registry
    dispatcher = AgentDispatcher(
        registry, handlers, timeout_seconds=config.handlers.timeout_seconds
    )
    executor = StepExecutor(
        store, dispatcher, registry, pause_on=config.workflow.pause_on
    )
    orchestrator = OrchestratorLoop(
        store,
        executor,
        reviewer,
        planner=_build_planner(config, repo_root),
        max_parallel_tasks=config.workflow.max_parallel_tasks,
        max_steps_per_run=config.workflow.max_steps_per_run,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        registry=registry,
        store=store,
        orchestrator=orchestrator,
        reviewer=reviewer,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_path(repo_root, config_value))


def _task_row(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "state": task.state,
        "status": task.status,
        "priority": task.priority.value,
    }


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Mode: {summary.mode}")
    click.echo(f"Steps: {summary.steps}")
    if summary.processed_tasks:
        click.echo(f"Processed: {', '.join(summary.processed_tasks)}")
    if summary.follow_up_tasks:
        click.echo(f"Follow-up tasks: {', '.join(summary.follow_up_tasks)}")
    if summary.completed_epics:
        click.echo(f"Completed epics: {', '.join(summary.completed_epics)}")
    if summary.incomplete_epics:
        click.echo(f"Incomplete epics: {', '.join(summary.incomplete_epics)}")
    if summary.blocked_tasks:
        click.echo(f"Blocked: {', '.join(summary.blocked_tasks)}")
    click.echo(f"Stopped: {summary.stopped_reason}")


@click.group()
def cli() -> None:
    """epicflow CLI."""


@cli.command("init")
@click.option(
    "--state-backend", type=click.Choice(["local", "memory"]), default=None
)
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def init_command(state_backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    if state_backend:
        config.state.backend = state_backend  # type: ignore[assignment]
    save_config(config_path, config)

    if config.state.backend == "local":
        _open_store(repo_root, config)

    click.echo(f"Initialized epicflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State backend: {config.state.backend}")


@cli.command("import")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def import_command(plan_file: Path, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = json.loads(plan_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON in {plan_file}: {exc}") from exc
    records = payload.get("epics") if isinstance(payload, dict) and "epics" in payload else payload
    if isinstance(records, dict):
        records = [records]
    if not isinstance(records, list):
        raise click.ClickException("Expected an epic object, a list of epics or {'epics': [...]}.")

    added = 0
    try:
        for record in records:
            if not isinstance(record, dict):
                raise click.ClickException(f"Epic record must be an object: {record!r}")
            new_epic = parse_epic_payload(record)
            added += len(runtime.store.add_epic(new_epic.epic, new_epic.tasks))
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Imported {added} task(s) from {plan_file}")


@cli.command("run")
@click.argument("task_id", required=False)
@click.option("--auto", "auto_mode", is_flag=True, default=False)
@click.option("--continuous", "continuous_mode", is_flag=True, default=False)
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    task_id: str | None,
    auto_mode: bool,
    continuous_mode: bool,
    config_value: str,
) -> None:
    chosen = sum([bool(task_id), auto_mode, continuous_mode])
    if chosen != 1:
        raise click.UsageError("Pass exactly one of TASK_ID, --auto or --continuous.")
    if task_id:
        mode = RunMode.single(task_id)
    elif auto_mode:
        mode = RunMode.auto()
    else:
        mode = RunMode.continuous()

    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.orchestrator.run(mode))
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_summary(summary)
    if summary.has_blocked:
        ctx.exit(1)


@cli.command("status")
@click.argument("task_id", required=False)
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def status_command(task_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    store = runtime.store
    if task_id:
        try:
            task = store.get_task(task_id)
            graph = runtime.registry.resolve(
                task.category, task.variant_labels, task.modifier_labels
            )
            command = graph.command(task.state) if task.state != DONE else None
        except DOMAIN_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc
        payload: dict[str, Any] = task.to_dict()
        payload["status"] = task.status
        payload["workflow"] = graph.describe()
        payload["phases"] = list(graph.phase_names)
        if command is not None:
            payload["next_command"] = f"/{command.value} {task.id}"
            payload["agent"] = graph.agent(command)
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    epics = []
    for epic in store.list_epics():
        tasks = store.epic_tasks(epic.id)
        epics.append(
            {
                "id": epic.id,
                "title": epic.title,
                "status": epic.status.value,
                "review_count": epic.review_count,
                "done": sum(1 for task in tasks if task.state == DONE),
                "total": len(tasks),
                "tasks": [_task_row(task) for task in tasks],
            }
        )
    payload = {
        "epics": epics,
        "cycles": dependency_cycles(store),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("next")
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def next_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    ready = ready_tasks(runtime.store)
    if ready:
        click.echo("Ready:")
        for task in ready:
            graph = runtime.registry.resolve(
                task.category, task.variant_labels, task.modifier_labels
            )
            command = graph.command(task.state)
            click.echo(
                f"  {task.id} [{task.priority.value}] {task.state} -> /{command.value} "
                f"({graph.agent(command)})"
            )
    else:
        click.echo("No ready tasks.")

    held = waiting_tasks(runtime.store)
    labels = {
        "breakpoint": "Paused at breakpoint:",
        "blocked": "Blocked:",
        "dependencies": "Waiting on dependencies:",
        "cycle": "On a dependency cycle:",
    }
    for reason, heading in labels.items():
        group = [item for item in held if item.reason == reason]
        if not group:
            continue
        click.echo(heading)
        for item in group:
            detail = ""
            if reason == "blocked" and item.task.blocked_reason:
                detail = f" ({item.task.blocked_reason})"
            elif item.waiting_on:
                detail = f" (waiting on {', '.join(item.waiting_on)})"
            click.echo(f"  {item.task.id} {item.task.state}{detail}")


@cli.command("breakpoint")
@click.argument("task_id")
@click.argument("action", type=click.Choice(["set", "clear"]))
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def breakpoint_command(task_id: str, action: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.store.set_breakpoint(task_id, action == "set")
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Breakpoint {'set' if action == 'set' else 'cleared'} on {task_id}")


@cli.command("unblock")
@click.argument("task_id")
@click.option("--note", default="", help="Reason recorded in the task history.")
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def unblock_command(task_id: str, note: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.store.unblock(task_id, note)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{task.id} is {task.status} at {task.state}")


@cli.command("review")
@click.argument("epic_id")
@click.option(
    "--threshold",
    type=click.Choice(["critical", "high", "medium", "low"]),
    default=None,
    help="Lowest severity that creates follow-up tasks.",
)
@click.option("--config", "config_value", default="epicflow.toml", show_default=True)
def review_command(epic_id: str, threshold: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        follow_ups = asyncio.run(runtime.reviewer.review_epic(epic_id, threshold))
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not follow_ups:
        click.echo(f"Epic {epic_id} completed: no follow-up tasks.")
        return
    click.echo(f"Created {len(follow_ups)} follow-up task(s):")
    for task in follow_ups:
        click.echo(f"  {task.id} [{task.priority.value}] {task.category.value}: {task.title}")
