"""Controllers for jobrpc CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

from jobrpc.caller import CallOptions, call_remote_sync
from jobrpc.config import Settings
from jobrpc.handlers import build_registry
from jobrpc.queue.models import RpcJobStatus
from jobrpc.queue.repository import JobRepository
from jobrpc.worker.daemon import RpcDaemon


@dataclass(slots=True)
class DaemonCommand:
    """CLI input for running the worker daemon."""

    db_path: Path | None
    max_concurrent: int | None = None
    max_idle_polls: int | None = None
    max_jobs: int | None = None


@dataclass(slots=True)
class CallCommand:
    """CLI input for one remote call."""

    db_path: Path | None
    handler_path: str
    args_json: str = "{}"
    timeout_seconds: float | None = None
    poll_interval_seconds: float | None = None
    cache_ttl_seconds: int | None = None
    skip_cache: bool = False


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    handler_path: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class StoreCommand:
    """CLI input for store-wide operations (stats, sweep)."""

    db_path: Path | None


class JobRpcCliController:
    """Coordinates daemon, call, and inspection CLI operations."""

    def run_daemon(self, command: DaemonCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrent is not None:
            settings = replace(
                settings,
                daemon=replace(settings.daemon, max_concurrent=command.max_concurrent),
            )
        settings.validate_for_daemon()
        registry = build_registry(settings)
        daemon = RpcDaemon(
            repository=_build_repository(settings),
            registry=registry,
            secret=settings.daemon.secret,
            worker_id=settings.daemon.worker_id,
            max_concurrent=settings.daemon.max_concurrent,
            poll_interval_seconds=settings.daemon.poll_interval_seconds,
            sweep_interval_seconds=settings.daemon.sweep_interval_seconds,
            error_backoff_seconds=settings.daemon.error_backoff_seconds,
        )
        summary = asyncio.run(
            daemon.run(max_jobs=command.max_jobs, max_idle_polls=command.max_idle_polls),
        )
        return [
            "Daemon summary: "
            f"claimed={summary.claimed} completed={summary.completed} "
            f"failed={summary.failed} rejected={summary.rejected} "
            f"idle_polls={summary.idle_polls} poll_errors={summary.poll_errors}",
        ]

    def call(self, command: CallCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_caller()
        args = _parse_args_json(command.args_json)
        options = CallOptions(
            timeout_seconds=command.timeout_seconds or settings.caller.timeout_seconds,
            poll_interval_seconds=(
                command.poll_interval_seconds or settings.caller.poll_interval_seconds
            ),
            cache_ttl_seconds=command.cache_ttl_seconds or settings.caller.cache_ttl_seconds,
            skip_cache=command.skip_cache,
        )
        with _repository(settings) as repository:
            result = call_remote_sync(
                command.handler_path,
                args,
                repository=repository,
                secret=settings.caller.secret,
                options=options,
                handler_root=settings.handlers.root,
            )
        return [json.dumps(result, ensure_ascii=False, indent=2, sort_keys=True)]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                handler_path=command.handler_path,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} handler={job.handler_path} status={job.status.value} "
                f"attempt={job.attempt} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.find_by_id(command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]

        lines = [
            f"Job: {job.job_id}",
            f"Handler: {job.handler_path}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}",
            f"Worker: {job.worker_id or '-'}",
            f"Args: {json.dumps(job.args, ensure_ascii=False, sort_keys=True)}",
            f"Created: {job.created_at.isoformat()}",
            f"Started: {_iso_or_dash(job.started_at)}",
            f"Completed: {_iso_or_dash(job.completed_at)}",
            f"Expires: {job.expires_at.isoformat()}",
        ]
        if job.status == RpcJobStatus.COMPLETED:
            lines.append(f"Result: {json.dumps(job.result, ensure_ascii=False, sort_keys=True)}")
        if job.status == RpcJobStatus.FAILED:
            lines.append(f"Error: {job.error or '-'}")
        return lines

    def stats(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.count_by_status()
        total = sum(counts.values())
        return [
            f"Jobs: {total}",
            *(f"  {status.value}={counts[status]}" for status in RpcJobStatus),
        ]

    def sweep(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            removed = repository.sweep_expired()
        return [f"Expired jobs removed: {removed}"]

    def handlers(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        registry = build_registry(settings)
        names = registry.names()
        return [f"Handlers: {len(names)} (root={registry.root})", *(f"  {name}" for name in names)]


def _parse_status(value: str | None) -> RpcJobStatus | None:
    if value is None:
        return None
    return RpcJobStatus(value.strip().lower())


def _parse_args_json(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as error:
        raise ValueError(f"--args must be a JSON object: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--args must be a JSON object.")
    return parsed


def _iso_or_dash(value: Any) -> str:
    return value.isoformat() if value is not None else "-"


def _build_repository(settings: Settings) -> JobRepository:
    return JobRepository(
        settings.db_path,
        stale_after=timedelta(seconds=settings.daemon.stale_after_seconds),
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = _build_repository(settings)
    repository.ensure_indexes()
    try:
        yield repository
    finally:
        repository.close()
