"""Persistent job store for remote calls."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, delete, select

from jobrpc.queue.models import (
    REUSABLE_STATUSES,
    RpcJobStatus,
    RpcJobView,
    args_fingerprint,
    canonical_json,
)
from jobrpc.storage.alembic_runner import upgrade_head
from jobrpc.storage.common import (
    build_job_store_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from jobrpc.storage.sqlmodel_models import RpcJob

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=5)
CORRUPT_RECORD_ERROR = "Corrupt job record"


class JobRepository:
    """Job store facade backed by SQLModel + SQLite.

    Every mutation is a single conditional UPDATE guarded on the state the
    caller observed, so concurrent daemons (threads or processes sharing the
    database file) never both win the same transition.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.stale_after = stale_after
        self.engine = build_job_store_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def ensure_indexes(self) -> None:
        """Run schema migrations (table, expiry, claim, and dedup indexes) and sweep once."""

        upgrade_head(self.db_path)
        self.sweep_expired()

    def create(
        self,
        handler_path: str,
        args: Mapping[str, Any],
        secret: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> str:
        """Insert a new pending job and return its id."""

        if not isinstance(args, Mapping):
            raise ValueError(f"Job args must be a mapping, got {type(args).__name__}.")
        try:
            args_json = canonical_json(dict(args))
        except (TypeError, ValueError) as error:
            raise ValueError(f"Job args are not JSON-serializable: {error}") from error
        if expires_at <= created_at:
            raise ValueError("expires_at must be later than created_at.")

        job_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                RpcJob(
                    job_id=job_id,
                    handler_path=handler_path,
                    args_json=args_json,
                    args_hash=args_fingerprint(handler_path, args_json),
                    secret=secret,
                    status=RpcJobStatus.PENDING.value,
                    attempt=0,
                    created_at=to_db_datetime(created_at),
                    expires_at=to_db_datetime(expires_at),
                ),
            )
            session.commit()
        logger.debug("Created job %s [%s]", job_id, handler_path)
        return job_id

    def find_by_id(self, job_id: str) -> RpcJobView | None:
        """Return a non-expired job by id."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(RpcJob).where(
                    RpcJob.job_id == job_id,
                    col(RpcJob.expires_at) > now,
                ),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def find_recent(
        self,
        handler_path: str,
        args: Mapping[str, Any],
        *,
        secret: str | None = None,
    ) -> RpcJobView | None:
        """Return the newest reusable job for the same handler and arguments.

        With ``secret`` set, only jobs created under that secret match, so a
        caller never joins a record the daemon is going to reject.
        """

        args_json = canonical_json(dict(args))
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            query = select(RpcJob).where(
                RpcJob.handler_path == handler_path,
                RpcJob.args_hash == args_fingerprint(handler_path, args_json),
                RpcJob.args_json == args_json,
                col(RpcJob.status).in_([status.value for status in REUSABLE_STATUSES]),
                col(RpcJob.expires_at) > now,
            )
            if secret is not None:
                query = query.where(RpcJob.secret == secret)
            row = session.exec(
                query.order_by(col(RpcJob.created_at).desc()).limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def claim_next(self, *, worker_id: str) -> RpcJobView | None:
        """Atomically claim the oldest pending or stale-processing job."""

        while True:
            now = utc_now()
            db_now = to_db_datetime(now)
            stale_before = to_db_datetime(now - self.stale_after)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(RpcJob)
                    .where(
                        col(RpcJob.expires_at) > db_now,
                        or_(
                            col(RpcJob.status) == RpcJobStatus.PENDING.value,
                            and_(
                                col(RpcJob.status) == RpcJobStatus.PROCESSING.value,
                                col(RpcJob.started_at) < stale_before,
                            ),
                        ),
                    )
                    .order_by(col(RpcJob.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                previous_status = candidate.status
                result = session.exec(
                    sa_update(RpcJob)
                    .where(
                        col(RpcJob.job_id) == candidate.job_id,
                        col(RpcJob.status) == previous_status,
                        col(RpcJob.attempt) == candidate.attempt,
                    )
                    .values(
                        status=RpcJobStatus.PROCESSING.value,
                        started_at=db_now,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.exec(
                    select(RpcJob).where(RpcJob.job_id == candidate.job_id),
                ).one()
                job_id = claimed.job_id
                decode_error: str | None = None
                try:
                    view = _to_job_view(claimed)
                except ValueError as error:
                    decode_error = str(error)

            if decode_error is not None:
                # Claimed rows that cannot be decoded are failed, never returned.
                logger.error("Failing corrupt job %s: %s", job_id, decode_error)
                self._finish(
                    job_id=job_id,
                    status=RpcJobStatus.FAILED,
                    values={"error": f"{CORRUPT_RECORD_ERROR}: {decode_error}"},
                )
                continue
            if previous_status == RpcJobStatus.PROCESSING.value:
                logger.warning(
                    "Reclaimed stale job %s [%s] (attempt %d)",
                    view.job_id,
                    view.handler_path,
                    view.attempt,
                )
            return view

    def complete(self, job_id: str, result: Any) -> bool:
        """Mark a processing job as completed; no-op for terminal jobs."""

        result_json = json.dumps(result, ensure_ascii=False)
        return self._finish(
            job_id=job_id,
            status=RpcJobStatus.COMPLETED,
            values={"result_json": result_json},
        )

    def fail(self, job_id: str, error: str) -> bool:
        """Mark a processing job as failed; no-op for terminal jobs."""

        return self._finish(
            job_id=job_id,
            status=RpcJobStatus.FAILED,
            values={"error": error},
        )

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete jobs past their expiry time, regardless of status."""

        cutoff = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                delete(RpcJob).where(col(RpcJob.expires_at) <= cutoff),
            )
            session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("Expiry sweep removed %d job(s)", removed)
        return removed

    def list_jobs(
        self,
        *,
        status: RpcJobStatus | None = None,
        handler_path: str | None = None,
        limit: int = 50,
    ) -> list[RpcJobView]:
        """List non-expired jobs, newest first."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            query = select(RpcJob).where(col(RpcJob.expires_at) > now)
            if status is not None:
                query = query.where(RpcJob.status == status.value)
            if handler_path is not None:
                query = query.where(RpcJob.handler_path == handler_path)
            rows = session.exec(
                query.order_by(col(RpcJob.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[RpcJobStatus, int]:
        """Count non-expired jobs per lifecycle state."""

        now = to_db_datetime(utc_now())
        counts = {status: 0 for status in RpcJobStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(RpcJob.status, func.count())
                .where(col(RpcJob.expires_at) > now)
                .group_by(RpcJob.status),
            ).all()
        for status, count in rows:
            counts[RpcJobStatus(status)] = int(count)
        return counts

    def _finish(self, *, job_id: str, status: RpcJobStatus, values: dict[str, Any]) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RpcJob)
                .where(
                    col(RpcJob.job_id) == job_id,
                    col(RpcJob.status) == RpcJobStatus.PROCESSING.value,
                )
                .values(status=status.value, completed_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Ignored %s write for job %s: not processing", status.value, job_id)
                return False
            session.commit()
            return True


def _to_job_view(row: RpcJob) -> RpcJobView:
    return RpcJobView(
        job_id=row.job_id,
        handler_path=row.handler_path,
        args=json.loads(row.args_json),
        secret=row.secret,
        status=RpcJobStatus(row.status),
        result=json.loads(row.result_json) if row.result_json is not None else None,
        error=row.error,
        attempt=row.attempt,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        expires_at=to_utc_aware_datetime(row.expires_at),
    )
