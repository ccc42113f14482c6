from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from conveyor import __version__
from conveyor.backends import BACKENDS, AgentBackend, UnknownBackendError, build_backend
from conveyor.config import ConveyorConfig, load_config, save_config
from conveyor.environment import ShellEnvironment
from conveyor.events import EngineEvent, Severity
from conveyor.files import list_project_files
from conveyor.orchestrator import TaskOrchestrator
from conveyor.planner import PlanOutcome, PlanRunner
from conveyor.state import (
    Attachment,
    BacklogStore,
    ConveyorStateError,
    GitCommitter,
    ProgressLog,
)
from conveyor.supervisor import ProcessSupervisor

T = TypeVar("T")

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg"}
_SEVERITY_COLORS = {
    Severity.INFO: None,
    Severity.SUCCESS: "green",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: ConveyorConfig
    environment: ShellEnvironment
    supervisor: ProcessSupervisor
    backlog: BacklogStore
    progress: ProgressLog


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _apply_log_level(config: ConveyorConfig) -> None:
    root = click.get_current_context().find_root()
    if root.params.get("verbose"):
        return
    level = logging.getLevelName(config.logging.level.upper())
    if isinstance(level, int):
        logging.getLogger("conveyor").setLevel(level)


def _load_runtime(project_dir: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _apply_log_level(config)
    return Runtime(
        project_dir=project_dir,
        config_path=config_path,
        config=config,
        environment=ShellEnvironment(
            resolve_login_shell=config.runner.resolve_login_shell,
            timeout_seconds=config.runner.shell_timeout_seconds,
        ),
        supervisor=ProcessSupervisor(
            terminate_grace_seconds=config.runner.terminate_grace_seconds
        ),
        backlog=BacklogStore(config.backlog_path(project_dir)),
        progress=ProgressLog(config.progress_path(project_dir)),
    )


def _build_backend(config: ConveyorConfig) -> AgentBackend:
    try:
        return build_backend(
            config.agent.backend,
            binary=config.agent.binary or None,
            extra_args=config.agent.extra_args,
        )
    except UnknownBackendError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_git(runtime: Runtime) -> GitCommitter | None:
    if not runtime.config.git.enabled:
        return None
    git_binary = runtime.environment.resolve_executable("git")
    if git_binary is None:
        click.secho("--- git not found on PATH; commits are disabled ---", fg="yellow")
        return None
    return GitCommitter(
        runtime.project_dir,
        git_binary=git_binary,
        env=runtime.environment.environment(),
        timeout_seconds=runtime.config.git.timeout_seconds,
    )


def _render_event(event: EngineEvent) -> None:
    if event.kind == "output":
        click.echo(event.message, nl=False, err=event.stream == "stderr")
        return
    click.secho(f"\n--- {event.message} ---", fg=_SEVERITY_COLORS[event.severity])


async def _run_interruptible(
    work: Awaitable[T],
    abort: Callable[[], Any],
    supervisor: ProcessSupervisor,
) -> T:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        # Windows event loops and non-main threads.
        installed = False
    try:
        return await work
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        await supervisor.drain()


def _attachment_for(project_dir: Path, raw_path: str, project_files: set[str]) -> Attachment:
    candidate = Path(raw_path)
    if not candidate.is_absolute():
        candidate = project_dir / candidate
    candidate = candidate.resolve()
    if not candidate.is_file():
        raise click.ClickException(f"Attachment not found: {raw_path}")
    try:
        relative = candidate.relative_to(project_dir.resolve()).as_posix()
    except ValueError as exc:
        raise click.ClickException(f"Attachment must be inside the project: {raw_path}") from exc
    if relative not in project_files:
        raise click.ClickException(f"Attachment is not a project file: {raw_path}")
    kind = "image" if candidate.suffix.lower() in IMAGE_SUFFIXES else "file"
    return Attachment(type=kind, relative_path=relative, display_name=candidate.name)


config_option = click.option(
    "--config", "config_value", default="conveyor.toml", show_default=True
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.version_option(__version__, prog_name="conveyor")
def cli(verbose: bool) -> None:
    """Conveyor CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(sorted(BACKENDS)), default=None)
@click.option("--model", default=None)
@config_option
def init_command(backend: str | None, model: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    if model:
        config.agent.model = model
    save_config(config_path, config)

    runtime = _load_runtime(project_dir, config_path)
    try:
        if not runtime.backlog.exists():
            runtime.backlog.save(runtime.backlog.load())
        if not runtime.progress.exists():
            runtime.progress.clear()
    except ConveyorStateError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized conveyor in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backlog: {runtime.backlog.path}")
    click.echo(f"Agent: {config.agent.backend} ({config.agent.model})")


@cli.command("add")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--attach", "attachments", multiple=True, help="Project file to attach.")
@config_option
def add_command(
    title: str, description: str, attachments: tuple[str, ...], config_value: str
) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    project_files = set(list_project_files(project_dir)) if attachments else set()
    items = [_attachment_for(project_dir, raw, project_files) for raw in attachments]
    try:
        backlog = runtime.backlog.load()
        task = backlog.add(title, description, items)
        runtime.backlog.save(backlog)
    except ConveyorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added task [{task.id}] {task.title}")


@cli.command("edit")
@click.argument("task_id", type=int)
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--reopen", is_flag=True, default=False, help="Mark the task as pending again.")
@config_option
def edit_command(
    task_id: int,
    title: str | None,
    description: str | None,
    reopen: bool,
    config_value: str,
) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        backlog = runtime.backlog.load()
        task = backlog.update(task_id, title=title, description=description)
        if reopen:
            backlog.mark_done(task_id, False)
        runtime.backlog.save(backlog)
    except ConveyorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Updated task [{task.id}] {task.title}")


@cli.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def list_command(as_json: bool, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        backlog = runtime.backlog.load()
    except ConveyorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(backlog.to_list(), ensure_ascii=False, indent=2))
        return
    if not len(backlog):
        click.echo("Backlog is empty.")
        return
    for task in backlog:
        marker = "x" if task.is_done else " "
        planned = " (planned)" if task.plan else ""
        click.echo(f"[{marker}] {task.id:>3} {task.title}{planned}")


@cli.command("run")
@click.option("--task", "task_id", type=int, default=None, help="Run only this task.")
@config_option
def run_command(task_id: int | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    orchestrator = TaskOrchestrator(
        project_dir,
        _build_backend(runtime.config),
        supervisor=runtime.supervisor,
        backlog=runtime.backlog,
        progress=runtime.progress,
        environment=runtime.environment,
        git=_build_git(runtime),
        model=runtime.config.agent.model,
        prompt_version=runtime.config.runner.prompt_version,
        event_hook=_render_event,
    )
    report = asyncio.run(
        _run_interruptible(orchestrator.run(task_id), orchestrator.abort, runtime.supervisor)
    )
    if not report.ok:
        raise click.ClickException(report.error or f"Run {report.outcome.value}.")
    click.echo(f"Completed tasks: {', '.join(str(item) for item in report.completed_task_ids) or 'none'}")


@cli.command("plan")
@config_option
def plan_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    planner = PlanRunner(
        project_dir,
        _build_backend(runtime.config),
        supervisor=runtime.supervisor,
        backlog=runtime.backlog,
        environment=runtime.environment,
        model=runtime.config.agent.model,
        event_hook=_render_event,
    )
    report = asyncio.run(_run_interruptible(planner.run(), planner.abort, runtime.supervisor))
    if report.outcome is PlanOutcome.UNPARSED:
        click.echo("No plans were merged.")
        return
    if not report.ok:
        raise click.ClickException(report.error or f"Planning {report.outcome.value}.")
    click.echo(f"Updated plans: {report.updated}")


@cli.command("progress")
@click.option("--clear", is_flag=True, default=False)
@config_option
def progress_command(clear: bool, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        if clear:
            runtime.progress.clear()
            click.echo("Progress log cleared.")
            return
        content = runtime.progress.read()
    except ConveyorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(content.strip() or "Progress log is empty.")


@cli.command("log")
@click.option("--limit", default=50, show_default=True, type=int)
@config_option
def log_command(limit: int, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    git = _build_git(runtime)
    if git is None or not git.is_repo():
        click.echo("Not a git repository.")
        return
    click.echo(git.log(limit) or "No commits yet.")


@cli.command("files")
def files_command() -> None:
    for relative in list_project_files(Path.cwd().resolve()):
        click.echo(relative)


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(sorted(BACKENDS)))
@config_option
def backend_command(backend_name: str, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    config.agent.backend = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Agent backend set to {backend_name}")


@cli.command("model")
@click.argument("model_name")
@config_option
def model_command(model_name: str, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    config.agent.model = model_name
    save_config(config_path, config)
    click.echo(f"Model set to {model_name}")


@cli.command("agent")
@click.argument("binary_path")
@config_option
def agent_command(binary_path: str, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    candidate = Path(binary_path).expanduser()
    if not candidate.is_file():
        raise click.ClickException(f"Path is not a valid file: {binary_path}")
    config = load_config(config_path)
    config.agent.binary = str(candidate.resolve())
    save_config(config_path, config)
    click.echo(f"Agent executable set to {config.agent.binary}")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    backend = _build_backend(runtime.config)
    try:
        backlog = runtime.backlog.load()
    except ConveyorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    next_task = backlog.next_pending()
    done = sum(1 for task in backlog if task.is_done)
    payload = {
        "project": str(project_dir),
        "backlog": str(runtime.backlog.path),
        "backlog_exists": backlog.exists,
        "agent": {
            "backend": backend.name,
            "binary": backend.binary,
            "executable": runtime.environment.resolve_executable(backend.binary),
            "model": runtime.config.agent.model,
        },
        "tasks": {
            "total": len(backlog),
            "done": done,
            "pending": len(backlog) - done,
            "next": None if next_task is None else {"id": next_task.id, "title": next_task.title},
        },
        "progress_log": runtime.progress.exists(),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
