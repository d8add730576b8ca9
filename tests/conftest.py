"""Shared test fixtures."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from jobrpc.handlers import HandlerRegistry, builtin
from jobrpc.queue.repository import JobRepository
from jobrpc.storage.common import utc_now

SECRET = "test-secret"


@pytest.fixture()
def repository(tmp_path: Path):
    repo = JobRepository(tmp_path / "jobs.db")
    repo.ensure_indexes()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    builtin.register(registry)
    return registry


@pytest.fixture()
def enqueue(repository: JobRepository):
    """Insert a pending job directly, bypassing the caller."""

    def _enqueue(
        handler_path: str,
        args: dict | None = None,
        *,
        secret: str = SECRET,
        ttl: timedelta = timedelta(hours=1),
    ) -> str:
        now = utc_now()
        return repository.create(handler_path, args or {}, secret, now, now + ttl)

    return _enqueue
