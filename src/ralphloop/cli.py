"""CLI entrypoint for ralph.

Commands operate on a project directory (default: CWD) that holds PRD.md,
the task list, and progress.txt, the completion log the agent appends to.
``status`` and ``--dry-run`` only read those files and never take the lock.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from . import __version__
from .config import ConfigError, RalphConfig, validate_int
from .controller import ExitCode, IterationController, PreflightError
from .ledger import LedgerError, TaskLedger
from .lockfile import AlreadyRunningError

app = typer.Typer(
    name="ralph",
    help="Run an AI coding agent in a loop until the tasks in PRD.md are done.",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

DEFAULT_MAX_ITERATIONS = 20


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, force DEBUG level.
        level: Level name used otherwise (RALPH_LOG_LEVEL).
    """
    log_level = logging.DEBUG if verbose else getattr(logging, level, logging.INFO)
    handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    # The run log lowers the package logger to INFO; the console keeps its own level.
    handler.setLevel(log_level)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
    )


def _say(text: str) -> None:
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _fail(message: str, code: ExitCode = ExitCode.ERROR) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {escape(message)}", soft_wrap=True)
    raise typer.Exit(int(code))


def _load_config(project: Path) -> RalphConfig:
    project_dir = project.resolve()
    if not project_dir.is_dir():
        _fail(f"Project directory does not exist: {project_dir}")
    try:
        return RalphConfig.from_env(project_dir)
    except ConfigError as e:
        _fail(str(e))


def _ledger(config: RalphConfig) -> TaskLedger:
    return TaskLedger(config.prd_file, config.progress_file)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ralph version {__version__}")
        raise typer.Exit()


ProjectOption = typer.Option(
    Path("."),
    "--project",
    "-C",
    help="Project directory containing PRD.md and progress.txt.",
)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Run an AI coding agent in a loop until the tasks in PRD.md are done."""
    pass


def print_next_task(config: RalphConfig) -> None:
    """Print the next pending task, or an all-done message."""
    try:
        task = _ledger(config).next_pending()
    except LedgerError as e:
        _fail(str(e))
    if task is None:
        _say("All tasks complete.")
    else:
        _say(f"Next task: {task.text}")


def _run_controller(config: RalphConfig, max_iterations: int, single: bool, verbose: bool) -> NoReturn:
    setup_logging(verbose, config.log_level)
    controller = IterationController(config, console=console)
    try:
        outcome = controller.run(max_iterations, single=single)
    except PreflightError as e:
        _fail(str(e), ExitCode.PREFLIGHT)
    except AlreadyRunningError as e:
        _fail(str(e), ExitCode.LOCKED)

    if outcome.exit_code != ExitCode.OK and outcome.message:
        _fail(outcome.message, outcome.exit_code)
    raise typer.Exit(int(outcome.exit_code))


@app.command()
def run(
    max_iterations: Optional[str] = typer.Argument(
        None,
        help=f"Maximum number of iterations (default: {DEFAULT_MAX_ITERATIONS}).",
        show_default=False,
    ),
    project: Path = ProjectOption,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print the next pending task and exit without running anything.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run the agent loop.

    Each iteration invokes the agent in a fresh context. The loop continues
    through completion cycles (a planning call rewrites PRD.md and
    progress.txt is archived) until the iteration budget is spent, progress
    stalls for RALPH_MAX_STALLS iterations, or the process is signalled.

    Examples:
        ralph run
        ralph run 10
        RALPH_MAX_STALLS=5 ralph run 30
        ralph run --dry-run
    """
    config = _load_config(project)
    budget = DEFAULT_MAX_ITERATIONS
    if max_iterations is not None:
        try:
            budget = validate_int("max_iterations", max_iterations)
        except ConfigError as e:
            _fail(str(e))

    if dry_run:
        print_next_task(config)
        return
    _run_controller(config, budget, single=False, verbose=verbose)


@app.command()
def once(
    project: Path = ProjectOption,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print the next pending task and exit without running anything.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run a single agent iteration.

    Exits 124 if the invocation timed out on every attempt and non-zero if it
    failed for any other reason.
    """
    config = _load_config(project)
    if dry_run:
        print_next_task(config)
        return
    _run_controller(config, 1, single=True, verbose=verbose)


@app.command()
def status(project: Path = ProjectOption) -> None:
    """Show completed and remaining tasks."""
    config = _load_config(project)
    _say("=== Ralph Status ===")
    try:
        completed, remaining = _ledger(config).partition()
    except LedgerError as e:
        _fail(str(e))

    total = len(completed) + len(remaining)
    _say(f"Tasks: {total} total, {len(completed)} completed, {len(remaining)} remaining")
    _say("")

    if completed:
        _say("Completed:")
        for task in completed:
            _say(f"  [x] {task.text}")
        _say("")

    if remaining:
        _say("Remaining:")
        for task in remaining:
            _say(f"  [ ] {task.text}")
    else:
        _say("All tasks complete!")


if __name__ == "__main__":
    app()
