"""Polling daemon that claims RPC jobs and runs their handlers."""

from __future__ import annotations

import asyncio
import hmac
import inspect
import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from jobrpc.handlers.registry import (
    HandlerFn,
    HandlerNotFoundError,
    HandlerRegistry,
    InvalidHandlerPathError,
)
from jobrpc.queue.models import RpcJobView
from jobrpc.queue.repository import JobRepository

logger = logging.getLogger(__name__)

ARGS_PREVIEW_CHARS = 100
BAD_SECRET_ERROR = "Invalid or missing RPC secret"


@dataclass(slots=True)
class DaemonRunSummary:
    """Aggregate daemon counters for CLI reporting."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0
    idle_polls: int = 0
    poll_errors: int = 0


class RpcDaemon:
    """Claims jobs from the store and runs them as concurrent asyncio tasks.

    At most ``max_concurrent`` jobs are in flight at once. The in-flight set
    is owned by this object and only touched from the event loop, so adding
    and discarding tasks needs no locking. A stop request (signal or
    ``request_stop``) halts claiming; jobs already claimed run to their
    terminal state before ``run`` returns.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        secret: str | None,
        worker_id: str,
        max_concurrent: int = 20,
        poll_interval_seconds: float = 2.0,
        sweep_interval_seconds: float = 60.0,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be a positive integer.")
        self.repository = repository
        self.registry = registry
        self.secret = secret
        self.worker_id = worker_id
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.summary = DaemonRunSummary()
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stop_requested = False
        self._stop_event: asyncio.Event | None = None

    @property
    def active_jobs(self) -> int:
        return len(self._in_flight)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop claiming new jobs; in-flight jobs are drained by ``run``."""

        if not self._stop_requested:
            logger.info("Received %s, shutting down...", signal_name)
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
        install_signal_handlers: bool = True,
    ) -> DaemonRunSummary:
        """Poll until stopped, then drain in-flight jobs and close the store.

        Args:
            max_jobs: Stop claiming after this many claims (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = poll forever).
            install_signal_handlers: Hook SIGINT/SIGTERM to ``request_stop``.
        """

        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        logger.info("=== RPC daemon starting ===")
        logger.info("Worker: %s", self.worker_id)
        logger.info("Database: %s", self.repository.db_path)
        logger.info("Max concurrent: %d", self.max_concurrent)
        logger.info("Poll interval: %.1fs", self.poll_interval_seconds)
        logger.debug("RPC secret: %s", "set" if self.secret else "NOT SET")
        logger.debug("Handlers: %s", ", ".join(self.registry.names()) or "-")

        try:
            await asyncio.to_thread(self.repository.ensure_indexes)
            logger.info("Indexes ensured, polling for jobs...")
            with self._signal_handlers(enabled=install_signal_handlers):
                await self._poll_loop(max_jobs=max_jobs, max_idle_polls=max_idle_polls)
                await self._drain()
        finally:
            self.repository.close()
        logger.info(
            "Stopped: claimed=%d completed=%d failed=%d rejected=%d",
            self.summary.claimed,
            self.summary.completed,
            self.summary.failed,
            self.summary.rejected,
        )
        return self.summary

    async def _poll_loop(self, *, max_jobs: int | None, max_idle_polls: int | None) -> None:
        loop = asyncio.get_running_loop()
        last_sweep = loop.time()
        waiting_since: float | None = None
        consecutive_idle = 0

        while not self._stop_requested:
            if max_jobs is not None and self.summary.claimed >= max_jobs:
                return

            if loop.time() - last_sweep >= self.sweep_interval_seconds:
                last_sweep = loop.time()
                await self._sweep()

            if self.active_jobs >= self.max_concurrent:
                if waiting_since is None:
                    waiting_since = loop.time()
                    logger.info(
                        "At capacity (%d/%d), waiting for a slot...",
                        self.active_jobs,
                        self.max_concurrent,
                    )
                await self._sleep_with_stop(self.poll_interval_seconds)
                continue

            if waiting_since is not None:
                logger.info(
                    "Slot freed after %.1fs wait (%d/%d running)",
                    loop.time() - waiting_since,
                    self.active_jobs,
                    self.max_concurrent,
                )
                waiting_since = None

            try:
                job = await asyncio.to_thread(
                    self.repository.claim_next,
                    worker_id=self.worker_id,
                )
            except SQLAlchemyError as error:
                self.summary.poll_errors += 1
                logger.error("Poll error: %s", error)
                await self._sleep_with_stop(self.error_backoff_seconds)
                continue

            if job is None:
                self.summary.idle_polls += 1
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return
                await self._sleep_with_stop(self.poll_interval_seconds)
                continue

            consecutive_idle = 0
            self.summary.claimed += 1
            task = asyncio.create_task(self.process_job(job), name=f"rpc-job-{job.job_id}")
            self._in_flight.add(task)
            task.add_done_callback(self._on_job_done)

    async def process_job(self, job: RpcJobView) -> None:
        """Validate, execute, and record the terminal state of one claimed job."""

        logger.info(
            "Claimed %s [%s] attempt=%d (%d/%d running)",
            job.job_id,
            job.handler_path,
            job.attempt,
            self.active_jobs,
            self.max_concurrent,
        )
        logger.debug("  args: %s", _preview_args(job.args))
        logger.debug("  created: %s", job.created_at.isoformat())
        logger.debug("  expires: %s", job.expires_at.isoformat())

        handler = await self._validate(job)
        if handler is None:
            return

        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            logger.debug("  executing handler...")
            result = await _invoke(handler, dict(job.args))
            json.dumps(result)
        except Exception as error:  # noqa: BLE001
            duration = loop.time() - started
            message = str(error) or type(error).__name__
            logger.error(
                "Failed %s [%s] after %.1fs: %s",
                job.job_id,
                job.handler_path,
                duration,
                message,
            )
            logger.debug("Handler traceback for %s", job.job_id, exc_info=True)
            if await self._write_terminal(self.repository.fail, job, message):
                self.summary.failed += 1
            return

        if await self._write_terminal(self.repository.complete, job, result):
            self.summary.completed += 1
            logger.info(
                "Completed %s [%s] in %.1fs (%d/%d still running)",
                job.job_id,
                job.handler_path,
                loop.time() - started,
                self.active_jobs - 1,
                self.max_concurrent,
            )

    async def _validate(self, job: RpcJobView) -> HandlerFn | None:
        if not self.secret or not hmac.compare_digest(
            job.secret.encode("utf-8"),
            self.secret.encode("utf-8"),
        ):
            logger.error("Rejected job %s: bad secret", job.job_id)
            await self._reject(job, BAD_SECRET_ERROR)
            return None
        logger.debug("  secret: valid")

        try:
            handler = self.registry.resolve(job.handler_path)
        except InvalidHandlerPathError as error:
            logger.error("Rejected invalid path: %s", job.handler_path)
            await self._reject(job, str(error))
            return None
        except HandlerNotFoundError as error:
            logger.error("Rejected unknown handler: %s", job.handler_path)
            await self._reject(job, str(error))
            return None
        logger.debug("  handler: registered")
        return handler

    async def _reject(self, job: RpcJobView, message: str) -> None:
        if await self._write_terminal(self.repository.fail, job, message):
            self.summary.rejected += 1

    async def _write_terminal(self, write: Any, job: RpcJobView, value: Any) -> bool:
        try:
            written = await asyncio.to_thread(write, job.job_id, value)
        except SQLAlchemyError as error:
            logger.error(
                "Could not record outcome of %s, left for stale reclaim: %s",
                job.job_id,
                error,
            )
            return False
        if not written:
            logger.warning("Job %s was already finished elsewhere", job.job_id)
        return written

    async def _sweep(self) -> None:
        try:
            await asyncio.to_thread(self.repository.sweep_expired)
        except SQLAlchemyError as error:
            logger.error("Expiry sweep failed: %s", error)

    async def _drain(self) -> None:
        while self._in_flight:
            logger.info("Waiting for %d active job(s) to finish...", self.active_jobs)
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def _on_job_done(self, task: asyncio.Task[None]) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            logger.warning("Job task %s was cancelled", task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error("Job task %s crashed: %s", task.get_name(), error, exc_info=error)

    async def _sleep_with_stop(self, seconds: float) -> None:
        if self._stop_event is None or seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return

    @contextmanager
    def _signal_handlers(self, *, enabled: bool) -> Iterator[None]:
        if not enabled:
            yield
            return

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda name=sig.name: self.request_stop(signal_name=name),
                )
            except (NotImplementedError, RuntimeError, ValueError):
                # Signal handlers can only be installed in the main thread on Unix.
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)


async def _invoke(handler: HandlerFn, args: dict[str, Any]) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(args)
    result = await asyncio.to_thread(handler, args)
    if inspect.isawaitable(result):
        return await result
    return result


def _preview_args(args: dict[str, Any]) -> str:
    rendered = json.dumps(args, ensure_ascii=False)
    if len(rendered) > ARGS_PREVIEW_CHARS:
        return rendered[:ARGS_PREVIEW_CHARS] + "…"
    return rendered
