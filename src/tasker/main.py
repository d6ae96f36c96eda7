"""CLI entrypoint for tasker."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from tasker import __version__
from tasker.engine.controllers import (
    EngineCliController,
    TaskInspectCommand,
    TaskListCommand,
    TaskRegisterCommand,
    TaskSubmitCommand,
    WatchdogCommand,
    WorkerProcessCommand,
    WorkerRunCommand,
)
from tasker.engine.errors import EngineError

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="tasker")
@click.option(
    "--log-level",
    envvar="TASKER_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def tasker(log_level: str) -> None:
    """Durable continuation engine CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@tasker.group()
def task() -> None:
    """Task registration and task run commands."""


@task.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--description", default=None, help="Optional task description.")
@click.argument("name")
@click.argument("code")
def task_register(db_path: Path | None, description: str | None, name: str, code: str) -> None:
    """Register task CODE (a `module:function` reference) under NAME."""

    _run(
        lambda: ENGINE_CONTROLLER.register_task(
            TaskRegisterCommand(
                db_path=db_path,
                name=name,
                code=code,
                description=description,
            ),
        ),
    )


@task.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--input", "input_json", default=None, help="Task input as JSON.")
@click.argument("name")
def task_submit(db_path: Path | None, input_json: str | None, name: str) -> None:
    """Queue a run of the registered task NAME."""

    _run(
        lambda: ENGINE_CONTROLLER.submit_task(
            TaskSubmitCommand(
                db_path=db_path,
                name=name,
                input_json=input_json,
            ),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_run_id")
def task_inspect(db_path: Path | None, task_run_id: str) -> None:
    """Inspect one task run with its frames and event history."""

    _run(
        lambda: ENGINE_CONTROLLER.inspect_task_run(
            TaskInspectCommand(
                db_path=db_path,
                task_run_id=task_run_id,
            ),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["queued", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max task runs to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent task runs."""

    _run(
        lambda: ENGINE_CONTROLLER.list_task_runs(
            TaskListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@tasker.group()
def worker() -> None:
    """Frame dispatch commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one polling step or keep polling until interrupted.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for polls in loop mode.",
)
def worker_run(db_path: Path | None, once: bool, max_polls: int | None) -> None:
    """Run the polling worker."""

    _run(
        lambda: ENGINE_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_polls=max_polls,
            ),
        ),
    )


@worker.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def worker_tick(db_path: Path | None) -> None:
    """Dispatch the next pending frame, if any."""

    _run(
        lambda: ENGINE_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=True,
                max_polls=None,
            ),
        ),
    )


@worker.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("stack_run_id")
def worker_process(db_path: Path | None, stack_run_id: str) -> None:
    """Process one explicit frame."""

    _run(
        lambda: ENGINE_CONTROLLER.process_frame(
            WorkerProcessCommand(
                db_path=db_path,
                stack_run_id=stack_run_id,
            ),
        ),
    )


@tasker.command("watchdog")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override stale thresholds for frames and locks.",
)
def watchdog(db_path: Path | None, stale_seconds: int | None) -> None:
    """Expire stuck frames and release abandoned chain locks."""

    _run(
        lambda: ENGINE_CONTROLLER.watchdog(
            WatchdogCommand(
                db_path=db_path,
                stale_seconds=stale_seconds,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (EngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tasker()
