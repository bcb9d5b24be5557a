"""CLI entrypoint for felix-loop."""

import logging
import os
from pathlib import Path

import rich_click as click

from felix_loop import __version__
from felix_loop.config import EXECUTION_MODES
from felix_loop.controllers import (
    CheckpointsCommand,
    HealthCommand,
    HistoryCommand,
    LoopCliController,
    PlanCommand,
    ProgressEcho,
    RunCommand,
)
from felix_loop.providers.fallback import FallbackExhaustedError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = LoopCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="felix-loop")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Root log level. Defaults to FELIX_LOOP_LOG_LEVEL or WARNING.",
)
def felix_loop(log_level: str | None) -> None:
    """Autonomous PRD task loop: route, execute and validate plan tasks."""

    level = (log_level or os.getenv("FELIX_LOOP_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@felix_loop.command("run")
@click.argument("plan_path", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory workers and validation commands run in.",
)
@click.option(
    "--mode",
    type=click.Choice(EXECUTION_MODES),
    default=None,
    help="Execution mode. `auto` picks one from the routing analysis.",
)
@click.option("--max-cost", type=click.FloatRange(min=0), default=None, help="USD budget.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop starting tasks after this many executions.",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent tasks within one dependency level.",
)
@click.option(
    "--continue-on-failure/--stop-on-failure",
    default=None,
    help="Keep running independent tasks after a task fails.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Simulate workers; write nothing.")
@click.option("--no-checkpoints", is_flag=True, default=False, help="Disable checkpoints.")
@click.option("--fresh", is_flag=True, default=False, help="Ignore any existing checkpoint.")
@click.option("--quiet", is_flag=True, default=False, help="Only print the final summary.")
def run(  # noqa: PLR0913
    plan_path: Path,
    db_path: Path | None,
    project_root: Path | None,
    mode: str | None,
    max_cost: float | None,
    max_tasks: int | None,
    max_parallel: int | None,
    continue_on_failure: bool | None,
    dry_run: bool,
    no_checkpoints: bool,
    fresh: bool,
    quiet: bool,
) -> None:
    """Execute a plan. Exit code 0 on completed, 1 on failed, 130 on cancelled."""

    try:
        report = CONTROLLER.run(
            RunCommand(
                plan_path=plan_path,
                db_path=db_path,
                project_root=project_root,
                mode=mode,
                max_cost_usd=max_cost,
                max_tasks=max_tasks,
                max_parallel_tasks=max_parallel,
                continue_on_failure=continue_on_failure,
                dry_run=dry_run,
                no_checkpoints=no_checkpoints,
                fresh=fresh,
            ),
            echo=None if quiet else ProgressEcho(click.echo),
        )
    except (ValueError, FallbackExhaustedError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(report.lines)
    if report.exit_code:
        raise SystemExit(report.exit_code)


@felix_loop.command("validate-plan")
@click.argument("plan_path", type=click.Path(path_type=Path, dir_okay=False))
def validate_plan(plan_path: Path) -> None:
    """Validate a plan file and report dependency warnings."""

    try:
        lines = CONTROLLER.validate_plan(PlanCommand(plan_path=plan_path))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@felix_loop.command("route")
@click.argument("plan_path", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def route(plan_path: Path, db_path: Path | None) -> None:
    """Show per-task routing decisions and the plan cost estimate."""

    try:
        lines = CONTROLLER.route(PlanCommand(plan_path=plan_path, db_path=db_path))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@felix_loop.group()
def checkpoints() -> None:
    """Checkpoint maintenance commands."""


@checkpoints.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoints_list(db_path: Path | None) -> None:
    """List saved checkpoints for the current project."""

    _emit_lines(CONTROLLER.list_checkpoints(CheckpointsCommand(db_path=db_path)))


@checkpoints.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Delete checkpoints of one session.")
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Delete checkpoints of one plan file.",
)
def checkpoints_clear(
    db_path: Path | None,
    session_id: str | None,
    plan_path: Path | None,
) -> None:
    """Delete checkpoints by session or by plan."""

    try:
        lines = CONTROLLER.clear_checkpoints(
            CheckpointsCommand(db_path=db_path, session_id=session_id, plan_path=plan_path),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(lines)


@checkpoints.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=1, max=3650),
    default=30,
    show_default=True,
    help="Delete checkpoints not updated for this many days.",
)
def checkpoints_cleanup(db_path: Path | None, max_age_days: int) -> None:
    """Delete stale checkpoints."""

    _emit_lines(
        CONTROLLER.cleanup_checkpoints(
            CheckpointsCommand(db_path=db_path, max_age_days=max_age_days),
        ),
    )


@felix_loop.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def history(db_path: Path | None) -> None:
    """Show what routing history has learned per model."""

    _emit_lines(CONTROLLER.history(HistoryCommand(db_path=db_path)))


@felix_loop.command("health")
@click.option(
    "--provider",
    "providers",
    multiple=True,
    help="Provider to probe. Can be repeated. Defaults to every CLI provider.",
)
def health(providers: tuple[str, ...]) -> None:
    """Probe provider CLIs and print their health."""

    _emit_lines(CONTROLLER.health(HealthCommand(providers=providers)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    felix_loop()
