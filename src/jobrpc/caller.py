"""Awaitable remote calls over the asynchronous job queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from jobrpc.handlers.registry import DEFAULT_HANDLER_ROOT, normalize_handler_path
from jobrpc.queue.models import RpcJobStatus
from jobrpc.queue.repository import JobRepository
from jobrpc.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallOptions:
    """Per-call overrides for timeout, polling, and result caching."""

    timeout_seconds: float = 55.0
    poll_interval_seconds: float = 0.5
    cache_ttl_seconds: int = 3_600
    skip_cache: bool = False


class RemoteCallError(RuntimeError):
    """The remote job failed, or could no longer be observed."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class RemoteCallTimeoutError(RemoteCallError):
    """No terminal state was observed before the caller's deadline."""


async def call_remote(
    handler_path: str,
    args: Mapping[str, Any],
    *,
    repository: JobRepository,
    secret: str | None,
    options: CallOptions | None = None,
    handler_root: str = DEFAULT_HANDLER_ROOT,
) -> Any:
    """Run ``handler_path`` with ``args`` on a daemon and return its result.

    An identical non-expired call is reused: a completed one returns at once,
    a pending or processing one is joined instead of creating a new job. On
    timeout the job is left in place; a later identical call can still pick
    up its result.

    Raises:
        InvalidHandlerPathError: ``handler_path`` is outside the handler root.
        RemoteCallError: the job failed or expired while being polled.
        RemoteCallTimeoutError: no result before ``options.timeout_seconds``.
    """

    opts = options or CallOptions()
    normalized = normalize_handler_path(handler_path, root=handler_root)
    if not secret:
        raise ValueError("RPC secret is not configured; set JOBRPC_SECRET.")
    if opts.timeout_seconds <= 0 or opts.poll_interval_seconds <= 0:
        raise ValueError("timeout_seconds and poll_interval_seconds must be > 0.")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + opts.timeout_seconds

    job_id: str | None = None
    if not opts.skip_cache:
        cached = await asyncio.to_thread(
            repository.find_recent,
            normalized,
            args,
            secret=secret,
        )
        if cached is not None:
            if cached.status == RpcJobStatus.COMPLETED:
                logger.debug("Cache hit for %s: job %s", normalized, cached.job_id)
                return cached.result
            logger.debug(
                "Joining in-flight job %s [%s] (%s)",
                cached.job_id,
                normalized,
                cached.status.value,
            )
            job_id = cached.job_id

    if job_id is None:
        created_at = utc_now()
        ttl = max(float(opts.cache_ttl_seconds), opts.timeout_seconds)
        job_id = await asyncio.to_thread(
            repository.create,
            normalized,
            args,
            secret,
            created_at,
            created_at + timedelta(seconds=ttl),
        )
        logger.debug("Submitted job %s [%s]", job_id, normalized)

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(opts.poll_interval_seconds, remaining))

        job = await asyncio.to_thread(repository.find_by_id, job_id)
        if job is None:
            raise RemoteCallError(f"Job {job_id} expired before completing", job_id=job_id)
        if job.status == RpcJobStatus.COMPLETED:
            return job.result
        if job.status == RpcJobStatus.FAILED:
            raise RemoteCallError(job.error or "Remote job failed", job_id=job_id)

    raise RemoteCallTimeoutError(
        f"Remote call {normalized} timed out after {opts.timeout_seconds:g}s (job {job_id})",
        job_id=job_id,
    )


def call_remote_sync(
    handler_path: str,
    args: Mapping[str, Any],
    *,
    repository: JobRepository,
    secret: str | None,
    options: CallOptions | None = None,
    handler_root: str = DEFAULT_HANDLER_ROOT,
) -> Any:
    """Blocking wrapper around ``call_remote`` for code without an event loop."""

    return asyncio.run(
        call_remote(
            handler_path,
            args,
            repository=repository,
            secret=secret,
            options=options,
            handler_root=handler_root,
        ),
    )
