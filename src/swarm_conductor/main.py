"""CLI entrypoint for swarm-conductor."""

import logging
import sys
from pathlib import Path
from typing import Any

import rich_click as click

from swarm_conductor import __version__
from swarm_conductor.controllers import CleanupCommand, CommandResult, ConductorCliController

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ConductorCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="swarm-conductor")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def swarm_conductor(log_level: str) -> None:
    """Resumable swarm sessions: sprints, confidence, checkpoints."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@swarm_conductor.command("init")
@DB_PATH_OPTION
@click.argument("task")
@click.option("--confidence-threshold", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--max-sprints", type=click.IntRange(min=1), default=None)
@click.option("--parallel-swarms", type=click.IntRange(min=1), default=None)
def init_session(
    db_path: Path | None,
    task: str,
    confidence_threshold: float | None,
    max_sprints: int | None,
    parallel_swarms: int | None,
) -> None:
    """Create a new active session for TASK."""

    params: dict[str, Any] = {"task": task}
    if confidence_threshold is not None:
        params["confidence_threshold"] = confidence_threshold
    if max_sprints is not None:
        params["max_sprints"] = max_sprints
    if parallel_swarms is not None:
        params["parallel_swarms"] = parallel_swarms
    _emit(CONTROLLER.call(db_path, "init", params))


@swarm_conductor.command("status")
@DB_PATH_OPTION
@click.argument("session_id")
@click.option("--verbose", is_flag=True, help="Include sprint list.")
def session_status(db_path: Path | None, session_id: str, verbose: bool) -> None:
    """Show one session summary."""

    _emit(CONTROLLER.call(db_path, "status", {"session_id": session_id, "verbose": verbose}))


@swarm_conductor.command("sprint")
@DB_PATH_OPTION
@click.argument("session_id")
@click.option("--objective", default=None, help="Sprint objective; generated when omitted.")
def run_sprint(db_path: Path | None, session_id: str, objective: str | None) -> None:
    """Run the next sprint through the execution engine."""

    params: dict[str, Any] = {"session_id": session_id}
    if objective:
        params["objective"] = objective
    _emit(CONTROLLER.call(db_path, "sprint", params))


@swarm_conductor.command("checkpoint")
@DB_PATH_OPTION
@click.argument("session_id")
@click.argument("name")
@click.option("--description", default=None)
@click.option("--sprint-id", default=None, help="Sprint to checkpoint; latest when omitted.")
def create_checkpoint(
    db_path: Path | None,
    session_id: str,
    name: str,
    description: str | None,
    sprint_id: str | None,
) -> None:
    """Capture a named checkpoint of a session."""

    params: dict[str, Any] = {"session_id": session_id, "name": name}
    if description:
        params["description"] = description
    if sprint_id:
        params["sprint_id"] = sprint_id
    _emit(CONTROLLER.call(db_path, "checkpoint", params))


@swarm_conductor.command("restore")
@DB_PATH_OPTION
@click.argument("checkpoint_id")
def restore_checkpoint(db_path: Path | None, checkpoint_id: str) -> None:
    """Load a checkpoint and restore its memory snapshot."""

    _emit(CONTROLLER.call(db_path, "restore", {"checkpoint_id": checkpoint_id}))


@swarm_conductor.command("list")
@DB_PATH_OPTION
@click.argument("kind", type=click.Choice(["sessions", "checkpoints"]), default="sessions")
@click.option("--session-id", default=None, help="Required when listing checkpoints.")
def list_entries(db_path: Path | None, kind: str, session_id: str | None) -> None:
    """List active sessions or the checkpoints of one session."""

    params: dict[str, Any] = {"type": kind}
    if session_id:
        params["session_id"] = session_id
    _emit(CONTROLLER.call(db_path, "list", params))


@swarm_conductor.command("cancel")
@DB_PATH_OPTION
@click.argument("session_id")
def cancel_session(db_path: Path | None, session_id: str) -> None:
    """Mark a session cancelled; running sprints are not interrupted."""

    _emit(CONTROLLER.call(db_path, "cancel", {"session_id": session_id}))


@swarm_conductor.command("metrics")
@DB_PATH_OPTION
@click.argument("session_id")
@click.option("--include-resources", is_flag=True, help="Attach a host resource snapshot.")
def session_metrics(db_path: Path | None, session_id: str, include_resources: bool) -> None:
    """Aggregate sprint metrics for one session."""

    _emit(
        CONTROLLER.call(
            db_path,
            "metrics",
            {"session_id": session_id, "include_resources": include_resources},
        ),
    )


@swarm_conductor.command("cleanup")
@DB_PATH_OPTION
@click.option(
    "--max-session-age-days",
    type=click.IntRange(min=0),
    default=None,
    help="Delete terminal sessions idle longer than this.",
)
@click.option(
    "--max-checkpoint-age-days",
    type=click.IntRange(min=0),
    default=None,
    help="Delete checkpoints older than this; 0 keeps them.",
)
@click.option("--vacuum/--no-vacuum", default=True, show_default=True)
@click.option(
    "--watch",
    is_flag=True,
    help="Repeat every SWARM_CONDUCTOR_CLEANUP_INTERVAL_SECONDS until interrupted.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="With --watch, stop after this many cycles.",
)
def cleanup(
    db_path: Path | None,
    max_session_age_days: int | None,
    max_checkpoint_age_days: int | None,
    vacuum: bool,
    watch: bool,
    max_cycles: int | None,
) -> None:
    """Apply the retention policy once, or repeatedly with --watch."""

    _emit(
        CONTROLLER.cleanup(
            CleanupCommand(
                db_path=db_path,
                max_session_age_days=max_session_age_days,
                max_checkpoint_age_days=max_checkpoint_age_days,
                vacuum=vacuum,
                watch=watch,
                max_cycles=max_cycles,
            ),
        ),
    )


@swarm_conductor.command("migrate")
@DB_PATH_OPTION
def migrate(db_path: Path | None) -> None:
    """Apply pending schema migrations."""

    _emit(CONTROLLER.migrate(db_path))


@swarm_conductor.command("rpc")
@DB_PATH_OPTION
def rpc(db_path: Path | None) -> None:
    """Read one JSON request from stdin and write the JSON response."""

    _emit(CONTROLLER.rpc(db_path, click.get_text_stream("stdin").read()))


def _emit(result: CommandResult) -> None:
    for line in result.lines:
        click.echo(line)
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    swarm_conductor()
