"""CLI entrypoint for jobrpc."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from jobrpc import __version__
from jobrpc.caller import RemoteCallError
from jobrpc.config import Settings
from jobrpc.controllers import (
    CallCommand,
    DaemonCommand,
    InspectJobCommand,
    JobRpcCliController,
    ListJobsCommand,
    StoreCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobRpcCliController()
CommandT = TypeVar("CommandT")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="jobrpc")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def jobrpc(verbose: bool) -> None:
    """RPC calls executed by a durable, polling worker pool."""

    _configure_logging(verbose=verbose)


@jobrpc.command("daemon")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Max jobs in flight in this daemon (default: JOBRPC_MAX_CONCURRENT or 20).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: run until signalled).",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop claiming after this many jobs, then drain.",
)
@click.option("--verbose", is_flag=True, default=False, help="Log each validation step.")
def daemon(
    db_path: Path | None,
    max_concurrent: int | None,
    max_idle_polls: int | None,
    max_jobs: int | None,
    verbose: bool,
) -> None:
    """Run the worker daemon until SIGINT/SIGTERM, draining in-flight jobs on exit."""

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    _emit_lines(
        _guard(
            CONTROLLER.run_daemon,
            DaemonCommand(
                db_path=db_path,
                max_concurrent=max_concurrent,
                max_idle_polls=max_idle_polls,
                max_jobs=max_jobs,
            ),
        ),
    )


@jobrpc.command("call")
@click.argument("handler_path")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--args", "args_json", default="{}", show_default=True, help="JSON object of args.")
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=0, min_open=True))
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
)
@click.option("--cache-ttl", "cache_ttl_seconds", type=click.IntRange(min=1))
@click.option(
    "--skip-cache/--use-cache",
    default=False,
    show_default=True,
    help="Always create a new job instead of reusing an identical one.",
)
def call(  # noqa: PLR0913
    handler_path: str,
    db_path: Path | None,
    args_json: str,
    timeout_seconds: float | None,
    poll_interval_seconds: float | None,
    cache_ttl_seconds: int | None,
    skip_cache: bool,
) -> None:
    """Submit a job for HANDLER_PATH and wait for its result."""

    _emit_lines(
        _guard(
            CONTROLLER.call,
            CallCommand(
                db_path=db_path,
                handler_path=handler_path,
                args_json=args_json,
                timeout_seconds=timeout_seconds,
                poll_interval_seconds=poll_interval_seconds,
                cache_ttl_seconds=cache_ttl_seconds,
                skip_cache=skip_cache,
            ),
        ),
    )


@jobrpc.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--handler", "handler_path", default=None, help="Optional handler filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status: str | None, handler_path: str | None, limit: int) -> None:
    """List non-expired jobs, newest first."""

    _emit_lines(
        CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                status=status,
                handler_path=handler_path,
                limit=limit,
            ),
        ),
    )


@jobrpc.command("inspect")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect(job_id: str, db_path: Path | None) -> None:
    """Show one job record."""

    _emit_lines(CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)))


@jobrpc.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Count jobs per status."""

    _emit_lines(CONTROLLER.stats(StoreCommand(db_path=db_path)))


@jobrpc.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sweep(db_path: Path | None) -> None:
    """Remove jobs past their expiry time."""

    _emit_lines(CONTROLLER.sweep(StoreCommand(db_path=db_path)))


@jobrpc.command("handlers")
def handlers() -> None:
    """List registered handler names."""

    _emit_lines(_guard(CONTROLLER.handlers, StoreCommand(db_path=None)))


def _guard(action: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return action(command)
    except (RemoteCallError, ValueError, RuntimeError, ImportError) as error:
        raise click.ClickException(str(error)) from error


def _configure_logging(*, verbose: bool) -> None:
    if not verbose:
        try:
            verbose = Settings.from_env().daemon.verbose
        except ValueError:
            verbose = False
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobrpc()
