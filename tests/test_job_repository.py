from __future__ import annotations

import multiprocessing
import multiprocessing.queues
import multiprocessing.synchronize
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from jobrpc.queue.models import RpcJobStatus
from jobrpc.queue.repository import CORRUPT_RECORD_ERROR, JobRepository
from jobrpc.storage.common import to_db_datetime, utc_now
from jobrpc.storage.sqlmodel_models import RpcJob

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store"),
]

SECRET = "test-secret"


def _backdate_started_at(repository: JobRepository, job_id: str, *, age: timedelta) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(RpcJob)
            .where(col(RpcJob.job_id) == job_id)
            .values(started_at=to_db_datetime(utc_now() - age)),
        )
        session.commit()


def test_create_and_find_by_id_roundtrip(repository: JobRepository) -> None:
    now = utc_now()
    expires_at = now + timedelta(hours=1)
    job_id = repository.create("ai/summary", {"b": 2, "a": [1, 2]}, SECRET, now, expires_at)

    job = repository.find_by_id(job_id)
    assert job is not None
    assert job.status == RpcJobStatus.PENDING
    assert job.handler_path == "ai/summary"
    assert job.args == {"a": [1, 2], "b": 2}
    assert job.secret == SECRET
    assert job.attempt == 0
    assert job.result is None
    assert job.error is None
    assert job.started_at is None
    assert job.completed_at is None
    assert job.created_at.tzinfo is not None
    assert repository.find_by_id("missing") is None


def test_create_rejects_unserializable_args_and_bad_expiry(repository: JobRepository) -> None:
    now = utc_now()
    with pytest.raises(ValueError, match="not JSON-serializable"):
        repository.create("ai/summary", {"when": object()}, SECRET, now, now + timedelta(hours=1))
    with pytest.raises(ValueError, match="mapping"):
        repository.create("ai/summary", [1, 2], SECRET, now, now)  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="expires_at"):
        repository.create("ai/summary", {}, SECRET, now, now)


def test_ensure_indexes_is_idempotent(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "idempotent.db")
    try:
        repository.ensure_indexes()
        repository.ensure_indexes()
        assert repository.count_by_status()[RpcJobStatus.PENDING] == 0
    finally:
        repository.close()


def test_claim_next_is_fifo_and_sets_processing(repository: JobRepository, enqueue) -> None:
    first = enqueue("builtin/echo", {"n": 1})
    second = enqueue("builtin/echo", {"n": 2})

    claimed = repository.claim_next(worker_id="worker-a")
    assert claimed is not None
    assert claimed.job_id == first
    assert claimed.status == RpcJobStatus.PROCESSING
    assert claimed.started_at is not None
    assert claimed.attempt == 1
    assert claimed.worker_id == "worker-a"

    claimed_second = repository.claim_next(worker_id="worker-a")
    assert claimed_second is not None
    assert claimed_second.job_id == second
    assert repository.claim_next(worker_id="worker-a") is None


def test_claim_next_race_yields_exactly_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    seed = JobRepository(db_path)
    seed.ensure_indexes()
    now = utc_now()
    job_id = seed.create("builtin/echo", {}, SECRET, now, now + timedelta(hours=1))
    seed.close()

    contenders = 8
    barrier = threading.Barrier(contenders)
    results: list[str | None] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _claim(index: int) -> None:
        repository = JobRepository(db_path)
        try:
            barrier.wait(timeout=5)
            claimed = repository.claim_next(worker_id=f"worker-{index}")
            with lock:
                results.append(claimed.job_id if claimed is not None else None)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim, args=(index,)) for index in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(results) == contenders
    assert results.count(job_id) == 1
    assert results.count(None) == contenders - 1


def test_stale_processing_job_is_reclaimed(repository: JobRepository, enqueue) -> None:
    job_id = enqueue("builtin/echo")
    first = repository.claim_next(worker_id="crashed-worker")
    assert first is not None
    assert repository.claim_next(worker_id="worker-b") is None

    _backdate_started_at(repository, job_id, age=timedelta(minutes=6))

    reclaimed = repository.claim_next(worker_id="worker-b")
    assert reclaimed is not None
    assert reclaimed.job_id == job_id
    assert reclaimed.status == RpcJobStatus.PROCESSING
    assert reclaimed.attempt == 2
    assert reclaimed.worker_id == "worker-b"
    assert reclaimed.started_at is not None
    assert reclaimed.started_at > first.started_at


def test_recent_processing_job_is_not_reclaimed(repository: JobRepository, enqueue) -> None:
    job_id = enqueue("builtin/echo")
    assert repository.claim_next(worker_id="worker-a") is not None

    _backdate_started_at(repository, job_id, age=timedelta(minutes=4))

    assert repository.claim_next(worker_id="worker-b") is None


def test_terminal_writes_happen_once(repository: JobRepository, enqueue) -> None:
    job_id = enqueue("builtin/echo")
    assert repository.complete(job_id, {"value": 1}) is False
    assert repository.claim_next(worker_id="worker-a") is not None

    assert repository.complete(job_id, {"value": 42}) is True
    assert repository.complete(job_id, {"value": 99}) is False
    assert repository.fail(job_id, "late failure") is False

    job = repository.find_by_id(job_id)
    assert job is not None
    assert job.status == RpcJobStatus.COMPLETED
    assert job.result == {"value": 42}
    assert job.error is None
    assert job.completed_at is not None


def test_fail_records_error_without_result(repository: JobRepository, enqueue) -> None:
    job_id = enqueue("builtin/echo")
    repository.claim_next(worker_id="worker-a")

    assert repository.fail(job_id, "boom") is True
    assert repository.complete(job_id, {"value": 1}) is False

    job = repository.find_by_id(job_id)
    assert job is not None
    assert job.status == RpcJobStatus.FAILED
    assert job.error == "boom"
    assert job.result is None
    assert job.completed_at is not None


def test_find_recent_matches_handler_and_canonical_args(repository: JobRepository, enqueue) -> None:
    older = enqueue("ai/summary", {"text": "hello", "lang": "en"})
    newer = enqueue("ai/summary", {"lang": "en", "text": "hello"})
    enqueue("ai/summary", {"text": "other"})
    enqueue("ai/translate", {"text": "hello", "lang": "en"})

    recent = repository.find_recent("ai/summary", {"text": "hello", "lang": "en"})
    assert recent is not None
    assert recent.job_id == newer
    assert recent.job_id != older
    assert repository.find_recent("ai/summary", {"text": "missing"}) is None


def test_find_recent_skips_failed_jobs(repository: JobRepository, enqueue) -> None:
    job_id = enqueue("ai/summary", {"text": "x"})
    repository.claim_next(worker_id="worker-a")
    repository.fail(job_id, "provider down")

    assert repository.find_recent("ai/summary", {"text": "x"}) is None


def test_expired_jobs_are_invisible_and_swept(repository: JobRepository) -> None:
    now = utc_now()
    expired_id = repository.create(
        "builtin/echo",
        {"old": True},
        SECRET,
        now - timedelta(hours=2),
        now - timedelta(hours=1),
    )
    live_id = repository.create("builtin/echo", {}, SECRET, now, now + timedelta(hours=1))

    assert repository.find_by_id(expired_id) is None
    assert repository.find_recent("builtin/echo", {"old": True}) is None
    claimed = repository.claim_next(worker_id="worker-a")
    assert claimed is not None
    assert claimed.job_id == live_id

    assert repository.sweep_expired() == 1
    assert repository.sweep_expired() == 0
    assert repository.sweep_expired(now=now + timedelta(hours=2)) == 1


def test_list_jobs_and_count_by_status(repository: JobRepository, enqueue) -> None:
    first = enqueue("builtin/echo", {"n": 1})
    enqueue("builtin/echo", {"n": 2})
    enqueue("builtin/fail", {"n": 3})
    repository.claim_next(worker_id="worker-a")
    repository.complete(first, {"n": 1})

    listed = repository.list_jobs()
    assert len(listed) == 3
    assert listed[-1].job_id == first

    assert [job.job_id for job in repository.list_jobs(status=RpcJobStatus.COMPLETED)] == [first]
    assert len(repository.list_jobs(handler_path="builtin/fail")) == 1
    assert len(repository.list_jobs(limit=1)) == 1

    counts = repository.count_by_status()
    assert counts[RpcJobStatus.PENDING] == 2
    assert counts[RpcJobStatus.COMPLETED] == 1
    assert counts[RpcJobStatus.PROCESSING] == 0
    assert counts[RpcJobStatus.FAILED] == 0


def test_find_recent_only_matches_jobs_created_with_same_secret(
    repository: JobRepository,
    enqueue,
) -> None:
    foreign = enqueue("ai/summary", {"text": "x"}, secret="other-secret")

    assert repository.find_recent("ai/summary", {"text": "x"}, secret=SECRET) is None
    matched = repository.find_recent("ai/summary", {"text": "x"}, secret="other-secret")
    assert matched is not None
    assert matched.job_id == foreign


def test_corrupt_record_is_failed_on_claim_and_next_job_is_returned(
    repository: JobRepository,
    enqueue,
) -> None:
    corrupt = enqueue("builtin/echo", {"n": 1})
    valid = enqueue("builtin/echo", {"n": 2})
    _overwrite_args_json(repository, corrupt, "not json")

    claimed = repository.claim_next(worker_id="worker-a")

    assert claimed is not None
    assert claimed.job_id == valid
    with Session(repository.engine) as session:
        row = session.get(RpcJob, corrupt)
        assert row is not None
        assert row.status == RpcJobStatus.FAILED.value
        assert row.error is not None
        assert row.error.startswith(CORRUPT_RECORD_ERROR)
    assert repository.claim_next(worker_id="worker-a") is None


def _overwrite_args_json(repository: JobRepository, job_id: str, raw: str) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(RpcJob).where(col(RpcJob.job_id) == job_id).values(args_json=raw),
        )
        session.commit()


def _claim_until_empty(  # pragma: no cover - executed in child process
    db_path: str,
    worker_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str]],
) -> None:
    repository = JobRepository(Path(db_path))
    try:
        start_event.wait(timeout=10)
        while (claimed := repository.claim_next(worker_id=worker_id)) is not None:
            result_queue.put((worker_id, claimed.job_id))
        result_queue.put((worker_id, "done"))
    except Exception as error:  # noqa: BLE001
        result_queue.put((worker_id, f"error: {error}"))
    finally:
        repository.close()


def test_claim_next_across_processes_claims_each_job_once(tmp_path: Path) -> None:
    db_path = tmp_path / "process-race.db"
    seed = JobRepository(db_path)
    seed.ensure_indexes()
    now = utc_now()
    job_ids = {
        seed.create("builtin/echo", {"n": index}, SECRET, now, now + timedelta(hours=1))
        for index in range(30)
    }
    seed.close()

    contenders = 4
    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_until_empty,
            args=(str(db_path), f"daemon-{index}", start_event, result_queue),
        )
        for index in range(contenders)
    ]
    for process in processes:
        process.start()
    start_event.set()

    claimed: list[str] = []
    finished = 0
    while finished < contenders:
        worker_id, payload = result_queue.get(timeout=60)
        assert not payload.startswith("error"), f"{worker_id}: {payload}"
        if payload == "done":
            finished += 1
        else:
            claimed.append(payload)
    for process in processes:
        process.join(timeout=10)
        assert process.exitcode == 0

    assert len(claimed) == len(job_ids)
    assert set(claimed) == job_ids
