"""Tests for the persistent sync job queue."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from mailsync.orchestrator import (
    InvalidStateTransitionError,
    JobKind,
    JobNotFoundError,
    JobStatus,
    JobTrigger,
    LeaseLostError,
    SyncJobQueue,
)
from mailsync.storage.database import MailDatabase, utcnow


@pytest.fixture
def queue(db) -> SyncJobQueue:
    return SyncJobQueue(db, max_attempts=3)


def test_enqueue_creates_pending_job(queue) -> None:
    ack = queue.enqueue("acc-1")

    job = queue.get(ack.job_id)
    assert ack.accepted
    assert job.status == JobStatus.PENDING
    assert job.kind == JobKind.INCREMENTAL
    assert job.trigger == JobTrigger.SCHEDULE
    assert job.attempt == 0
    assert job.max_attempts == 3


def test_live_job_deduplicates_requests(queue) -> None:
    first = queue.enqueue("acc-1")
    second = queue.enqueue("acc-1", trigger=JobTrigger.MANUAL)

    assert second.deduplicated
    assert second.job_id == first.job_id
    assert queue.stats()["pending"] == 1


def test_concurrent_triggers_leave_one_running_job(db) -> None:
    """Workers on separate connections race to trigger and claim one account."""
    databases = [db, MailDatabase(db.path), MailDatabase(db.path)]
    queues = [SyncJobQueue(database) for database in databases]
    try:
        with ThreadPoolExecutor(max_workers=6) as pool:
            acks = list(pool.map(lambda i: queues[i % 3].enqueue("acc-1", trigger=JobTrigger.MANUAL), range(12)))
            claims = list(pool.map(lambda i: queues[i % 3].claim(f"w{i}"), range(6)))
    finally:
        for database in databases[1:]:
            database.close()

    assert len({ack.job_id for ack in acks}) == 1
    assert sum(ack.accepted for ack in acks) == 1
    assert len([job for job in claims if job is not None]) == 1
    assert queues[0].stats()["running"] == 1


def test_full_request_upgrades_pending_incremental(queue) -> None:
    first = queue.enqueue("acc-1", JobKind.INCREMENTAL)
    upgraded = queue.enqueue("acc-1", JobKind.FULL)

    assert upgraded.job_id == first.job_id
    assert upgraded.kind == JobKind.FULL
    assert queue.enqueue("acc-1", JobKind.INCREMENTAL).kind == JobKind.FULL


def test_immediate_request_pulls_job_forward(queue) -> None:
    ack = queue.enqueue("acc-1", delay_seconds=600)
    assert queue.claim("w1") is None

    queue.enqueue("acc-1", immediate=True)

    assert queue.get(ack.job_id).scheduled_at <= utcnow()
    assert queue.claim("w1").id == ack.job_id


def test_running_job_is_not_upgraded(queue) -> None:
    ack = queue.enqueue("acc-1")
    queue.claim("w1")

    again = queue.enqueue("acc-1", JobKind.FULL, immediate=True)

    assert again.deduplicated
    assert again.status == JobStatus.RUNNING
    assert again.kind == JobKind.INCREMENTAL
    assert again.job_id == ack.job_id


def test_claim_takes_oldest_due_job(queue) -> None:
    first = queue.enqueue("acc-1")
    second = queue.enqueue("acc-2")

    job = queue.claim("w1", lease_seconds=60)

    assert job.id == first.job_id
    assert job.status == JobStatus.RUNNING
    assert job.attempt == 1
    assert job.worker_id == "w1"
    assert job.lease_expires_at > utcnow()
    assert queue.claim("w2").id == second.job_id
    assert queue.claim("w3") is None


def test_finished_job_frees_account(queue) -> None:
    first = queue.enqueue("acc-1")
    queue.claim("w1")

    done = queue.complete(first.job_id, processed=7, skipped=2)
    follow_up = queue.enqueue("acc-1")

    assert done.status == JobStatus.SUCCESS
    assert (done.processed, done.skipped) == (7, 2)
    assert done.finished_at is not None
    assert follow_up.accepted
    assert follow_up.job_id != first.job_id
    assert queue.latest_finished("acc-1").id == first.job_id
    assert [job.id for job in queue.list_for_account("acc-1")] == [follow_up.job_id, first.job_id]


def test_finished_job_cannot_change_again(queue) -> None:
    ack = queue.enqueue("acc-1")
    queue.claim("w1")
    queue.fail(ack.job_id, "IMAP_AUTH_FAILED: rejected")

    with pytest.raises(InvalidStateTransitionError):
        queue.complete(ack.job_id)
    with pytest.raises(InvalidStateTransitionError):
        queue.retry(ack.job_id, "again", delay_seconds=0)


def test_pending_job_cannot_finish(queue) -> None:
    ack = queue.enqueue("acc-1")

    with pytest.raises(InvalidStateTransitionError):
        queue.complete(ack.job_id)


def test_retry_keeps_attempt_count(queue) -> None:
    ack = queue.enqueue("acc-1")
    queue.claim("w1")

    retried = queue.retry(ack.job_id, "IMAP_CONNECTION_FAILED: reset", delay_seconds=0)

    assert retried.status == JobStatus.PENDING
    assert retried.trigger == JobTrigger.RETRY
    assert retried.attempt == 1
    assert retried.worker_id is None
    assert retried.error.startswith("IMAP_CONNECTION_FAILED")

    again = queue.claim("w2")
    assert again.id == ack.job_id
    assert again.attempt == 2
    assert again.error is None
    assert again.attempts_left == 1


def test_lease_belongs_to_claiming_worker(queue) -> None:
    ack = queue.enqueue("acc-1")
    queue.claim("w1", lease_seconds=30)

    renewed = queue.renew_lease(ack.job_id, "w1", lease_seconds=300)
    assert renewed.lease_expires_at > utcnow() + timedelta(seconds=200)

    with pytest.raises(LeaseLostError):
        queue.renew_lease(ack.job_id, "w2")


def test_expired_lease_fails_job_and_unlocks_account(queue) -> None:
    ack = queue.enqueue("acc-1")
    queue.claim("w1", lease_seconds=30)

    assert queue.recover_expired() == []
    recovered = queue.recover_expired(now=utcnow() + timedelta(seconds=31))

    assert recovered == [ack.job_id]
    job = queue.get(ack.job_id)
    assert job.status == JobStatus.ERROR
    assert job.error == "SYNC_ERROR: Worker lease expired"
    assert queue.enqueue("acc-1").accepted
    with pytest.raises(LeaseLostError):
        queue.renew_lease(ack.job_id, "w1")


def test_unknown_job(queue) -> None:
    with pytest.raises(JobNotFoundError):
        queue.get("missing")


def test_stats_cover_every_status(queue) -> None:
    done = queue.enqueue("acc-1")
    queue.claim("w1")
    queue.complete(done.job_id)
    queue.enqueue("acc-2")

    assert queue.stats() == {"pending": 1, "running": 0, "success": 1, "error": 0}
