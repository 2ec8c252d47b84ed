from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from cv_tailor.jobs.models import MAX_ERROR_CHARS, JobStatus
from cv_tailor.jobs.repository import JobRepository
from cv_tailor.storage.common import to_db_datetime, utc_now
from cv_tailor.storage.database import Database
from cv_tailor.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Reservation & Retry Accounting"),
]


def test_enqueue_creates_pending_job(database: Database) -> None:
    repository = JobRepository(database)

    job = repository.enqueue("tailor_cv", {"generation_id": 7, "owner_id": 1})

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.payload == {"generation_id": 7, "owner_id": 1}
    assert job.worker_id is None
    assert job.run_after.tzinfo is not None


def test_enqueue_rejects_invalid_arguments(database: Database) -> None:
    repository = JobRepository(database)

    with pytest.raises(ValueError, match="non-empty"):
        repository.enqueue("  ", {})
    with pytest.raises(ValueError, match="max_attempts"):
        repository.enqueue("tailor_cv", {}, max_attempts=0)


def test_reserve_returns_oldest_runnable_job_once(database: Database) -> None:
    repository = JobRepository(database)
    first = repository.enqueue("tailor_cv", {"n": 1})
    second = repository.enqueue("tailor_cv", {"n": 2})

    reserved = repository.reserve_next_pending("worker-a")
    assert reserved is not None
    assert reserved.id == first.id
    assert reserved.status == JobStatus.RESERVED
    assert reserved.worker_id == "worker-a"
    assert reserved.reserved_at is not None

    following = repository.reserve_next_pending("worker-b")
    assert following is not None
    assert following.id == second.id
    assert repository.reserve_next_pending("worker-a") is None


def test_reserve_skips_jobs_scheduled_in_the_future(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue(
        "tailor_cv",
        {},
        run_after=datetime.now(tz=UTC) + timedelta(minutes=10),
    )

    assert repository.reserve_next_pending("worker-a") is None


def test_reserve_on_empty_queue_returns_none(database: Database) -> None:
    assert JobRepository(database).reserve_next_pending("worker-a") is None


def test_ack_completes_reserved_job(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {})
    job = repository.reserve_next_pending("worker-a")
    assert job is not None

    assert repository.ack(job) is True
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert repository.ack(job) is False


def test_fail_with_retry_reschedules_with_backoff(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {})
    job = repository.reserve_next_pending("worker-a")
    assert job is not None

    before = datetime.now(tz=UTC)
    outcome = repository.fail(job, "provider timeout", retry=True)

    assert outcome.retried is True
    assert outcome.attempts == 1
    assert outcome.run_after is not None
    assert outcome.run_after >= before + timedelta(seconds=5)

    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.error == "provider timeout"
    assert stored.worker_id is None
    assert stored.reserved_at is None
    assert repository.reserve_next_pending("worker-a") is None


def test_fail_without_retry_is_permanent(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {})
    job = repository.reserve_next_pending("worker-a")
    assert job is not None

    outcome = repository.fail(job, "x" * (MAX_ERROR_CHARS + 50), retry=False)

    assert outcome.retried is False
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 1
    assert stored.error is not None
    assert len(stored.error) <= MAX_ERROR_CHARS


def test_fail_stops_retrying_at_max_attempts(database: Database) -> None:
    repository = JobRepository(database, retry_base_seconds=0, retry_max_seconds=0)
    repository.enqueue("tailor_cv", {}, max_attempts=2)

    first = repository.reserve_next_pending("worker-a")
    assert first is not None
    assert repository.fail(first, "boom", retry=True).retried is True

    second = repository.reserve_next_pending("worker-a")
    assert second is not None
    assert second.attempts == 1
    outcome = repository.fail(second, "boom again", retry=True)

    assert outcome.retried is False
    assert outcome.attempts == 2
    stored = repository.get_job(second.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED


def test_fail_on_unreserved_job_raises(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {})
    job = repository.reserve_next_pending("worker-a")
    assert job is not None
    repository.ack(job)

    with pytest.raises(RuntimeError, match="changed concurrently"):
        repository.fail(job, "late failure", retry=True)


def test_compute_retry_delay_doubles_and_caps(database: Database) -> None:
    repository = JobRepository(database, retry_base_seconds=5, retry_max_seconds=300)

    assert [repository.compute_retry_delay(n) for n in (1, 2, 3, 4, 5, 6, 7, 8)] == [
        5,
        10,
        20,
        40,
        80,
        160,
        300,
        300,
    ]


def test_list_jobs_filters_by_status(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {"n": 1})
    repository.enqueue("tailor_cv", {"n": 2})
    reserved = repository.reserve_next_pending("worker-a")
    assert reserved is not None

    assert len(repository.list_jobs()) == 2
    pending = repository.list_jobs(status=JobStatus.PENDING)
    assert [job.payload["n"] for job in pending] == [2]
    assert repository.list_jobs(status=JobStatus.FAILED) == []


def test_concurrent_workers_never_reserve_the_same_job(database: Database) -> None:
    seed = JobRepository(database)
    job_ids = {seed.enqueue("tailor_cv", {"n": index}).id for index in range(8)}

    reserved: dict[str, list[int]] = {"worker-a": [], "worker-b": []}
    start = threading.Event()

    def _drain(worker_id: str) -> None:
        repository = JobRepository(Database(database.db_path))
        start.wait(timeout=5)
        while True:
            job = repository.reserve_next_pending(worker_id)
            if job is None:
                break
            reserved[worker_id].append(job.id)
        repository.database.close()

    threads = [threading.Thread(target=_drain, args=(name,)) for name in reserved]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    all_reserved = reserved["worker-a"] + reserved["worker-b"]
    assert sorted(all_reserved) == sorted(job_ids)
    assert len(set(all_reserved)) == len(all_reserved)


def _age_reservation(database: Database, job_id: int, *, seconds: int) -> None:
    with Session(database.engine) as session:
        session.exec(
            sa_update(Job)
            .where(col(Job.id) == job_id)
            .values(reserved_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()


def test_stale_reservation_returns_to_pending(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {"generation_id": 1})
    fresh_job = repository.enqueue("tailor_cv", {"generation_id": 2})
    stale = repository.reserve_next_pending("w-crashed")
    fresh = repository.reserve_next_pending("w-alive")
    assert stale is not None
    assert fresh is not None
    assert fresh.id == fresh_job.id
    _age_reservation(database, stale.id, seconds=600)

    outcomes = repository.recover_stale_reservations(stale_after=timedelta(seconds=60))

    assert [(outcome.job_id, outcome.attempts, outcome.retried) for outcome in outcomes] == [
        (stale.id, 1, True),
    ]
    recovered = repository.get_job(stale.id)
    assert recovered is not None
    assert recovered.status == JobStatus.PENDING
    assert recovered.worker_id is None
    assert recovered.reserved_at is None
    assert recovered.error is not None
    assert "w-crashed" in recovered.error
    untouched = repository.get_job(fresh.id)
    assert untouched is not None
    assert untouched.status == JobStatus.RESERVED

    again = repository.reserve_next_pending("w-2")
    assert again is not None
    assert again.id == stale.id


def test_stale_reservation_on_last_attempt_fails_permanently(database: Database) -> None:
    repository = JobRepository(database)
    repository.enqueue("tailor_cv", {}, max_attempts=1)
    job = repository.reserve_next_pending("w-crashed")
    assert job is not None
    _age_reservation(database, job.id, seconds=600)

    [outcome] = repository.recover_stale_reservations(stale_after=timedelta(seconds=60))

    assert outcome.retried is False
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 1
    with pytest.raises(ValueError, match="stale_after"):
        repository.recover_stale_reservations(stale_after=timedelta(0))
