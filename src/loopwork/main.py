"""CLI entrypoint for loopwork."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from loopwork import __version__
from loopwork.controllers import (
    CleanProcessesCommand,
    LoopworkCliController,
    NamespaceCommand,
    RunCommand,
    TasksCommand,
)
from loopwork.errors import LoopworkError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = LoopworkCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")
F = TypeVar("F", bound=Callable[..., Any])


def _scope_options(func: F) -> F:
    func = click.option(
        "--namespace",
        default=None,
        help="Session namespace. Defaults to LOOPWORK_NAMESPACE or `default`.",
    )(func)
    func = click.option(
        "--project-root",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="Project root. Defaults to LOOPWORK_PROJECT_ROOT or the current directory.",
    )(func)
    return func


def _tasks_file_option(func: F) -> F:
    return click.option(
        "--tasks-file",
        type=click.Path(path_type=Path, dir_okay=False),
        default=None,
        help="JSON backlog path, relative to the project root.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="loopwork")
def loopwork() -> None:
    """Run an AI coding agent over a task backlog, one task per iteration."""

    level_name = os.getenv("LOOPWORK_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


@loopwork.command("run")
@_scope_options
@_tasks_file_option
@click.option("--once", is_flag=True, help="Process a single task and exit.")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many iterations.",
)
@click.option("--resume", is_flag=True, help="Continue from the last saved task.")
@click.option("--feature", default=None, help="Only pick tasks of this feature.")
def run(  # noqa: PLR0913
    project_root: Path | None,
    namespace: str | None,
    tasks_file: Path | None,
    once: bool,
    max_iterations: int | None,
    resume: bool,
    feature: str | None,
) -> None:
    """Run the automation loop until the backlog is empty or a limit is hit."""

    _emit_lines(
        _guarded(
            CONTROLLER.run,
            RunCommand(
                project_root=project_root,
                namespace=namespace,
                tasks_file=tasks_file,
                once=once,
                max_iterations=max_iterations,
                resume=resume,
                feature=feature,
            ),
        ),
    )


@loopwork.group()
def tasks() -> None:
    """Backlog inspection commands."""


@tasks.command("next")
@_scope_options
@_tasks_file_option
@click.option("--feature", default=None, help="Only consider tasks of this feature.")
def tasks_next(
    project_root: Path | None,
    namespace: str | None,
    tasks_file: Path | None,
    feature: str | None,
) -> None:
    """Show the task the loop would pick next."""

    _emit_lines(
        _guarded(
            CONTROLLER.next_task,
            TasksCommand(
                project_root=project_root,
                namespace=namespace,
                tasks_file=tasks_file,
                feature=feature,
            ),
        ),
    )


@tasks.command("list")
@_scope_options
@_tasks_file_option
@click.option("--feature", default=None, help="Only list tasks of this feature.")
@click.option(
    "--include-blocked",
    is_flag=True,
    help="Also list pending tasks whose dependencies are not completed.",
)
def tasks_list(
    project_root: Path | None,
    namespace: str | None,
    tasks_file: Path | None,
    feature: str | None,
    include_blocked: bool,
) -> None:
    """List pending tasks in pick order."""

    _emit_lines(
        _guarded(
            CONTROLLER.list_tasks,
            TasksCommand(
                project_root=project_root,
                namespace=namespace,
                tasks_file=tasks_file,
                feature=feature,
                include_blocked=include_blocked,
            ),
        ),
    )


@loopwork.command("status")
@_scope_options
@_tasks_file_option
def status(project_root: Path | None, namespace: str | None, tasks_file: Path | None) -> None:
    """Show lock, saved state, backend health, and tracked processes for a namespace."""

    _emit_lines(
        _guarded(
            CONTROLLER.status,
            NamespaceCommand(project_root=project_root, namespace=namespace, tasks_file=tasks_file),
        ),
    )


@loopwork.command("unlock")
@_scope_options
def unlock(project_root: Path | None, namespace: str | None) -> None:
    """Release a stale session lock. Refuses while the holder is still running."""

    _emit_lines(
        _guarded(
            CONTROLLER.unlock,
            NamespaceCommand(project_root=project_root, namespace=namespace),
        ),
    )


@loopwork.group()
def processes() -> None:
    """Orphan process commands."""


@processes.command("list")
@_scope_options
def processes_list(project_root: Path | None, namespace: str | None) -> None:
    """List orphaned agent processes left behind by earlier runs."""

    _emit_lines(
        _guarded(
            CONTROLLER.list_processes,
            NamespaceCommand(project_root=project_root, namespace=namespace),
        ),
    )


@processes.command("clean")
@_scope_options
@click.option("--dry-run", is_flag=True, help="Report what would be killed without signalling.")
@click.option("--force", is_flag=True, help="Also kill suspected orphans.")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0.0),
    default=None,
    help="Seconds to wait after SIGTERM before SIGKILL.",
)
def processes_clean(
    project_root: Path | None,
    namespace: str | None,
    dry_run: bool,
    force: bool,
    timeout: float | None,
) -> None:
    """Terminate confirmed orphan processes (suspected ones only with `--force`)."""

    _emit_lines(
        _guarded(
            CONTROLLER.clean_processes,
            CleanProcessesCommand(
                project_root=project_root,
                namespace=namespace,
                dry_run=dry_run,
                force=force,
                timeout=timeout,
            ),
        ),
    )


def _guarded(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (LoopworkError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)
