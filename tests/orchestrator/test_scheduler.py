"""Tests for sync scheduling and the async worker pool."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import List, Optional

import pytest

from mailsync.configuration import SyncSettings
from mailsync.errors import AccountNotFoundError, AuthenticationError, ImapConnectionError, SyncTimeoutError
from mailsync.orchestrator import JobKind, JobStatus, JobTrigger, RetryPolicy, SyncJobQueue, SyncScheduler


@dataclass
class FakeOutcome:
    processed: int = 0
    skipped: int = 0


class FakeEngine:
    """Stands in for the blocking sync pipeline."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: List[dict] = []

    def run(self, account_id: str, *, full: bool = False, timeout_seconds=None, stop=None):
        self.calls.append({"account_id": account_id, "full": full, "timeout_seconds": timeout_seconds})
        result = self.results.pop(0) if self.results else FakeOutcome(processed=1)
        if callable(result):
            return result(stop)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeConnections:
    def __init__(self) -> None:
        self.aborted: List[str] = []

    def abort(self, account_id: str) -> bool:
        self.aborted.append(account_id)
        return True


@pytest.fixture
def queue(db) -> SyncJobQueue:
    return SyncJobQueue(db, max_attempts=3)


@pytest.fixture
def scheduler_settings() -> SyncSettings:
    return SyncSettings(job_timeout_seconds=30, timeout_grace_seconds=5, lease_seconds=30, poll_seconds=0.01)


@pytest.fixture
def make_scheduler(queue, account_store, scheduler_settings):
    def _make(engine: FakeEngine, retry_policy: Optional[RetryPolicy] = None, connections=None) -> SyncScheduler:
        return SyncScheduler(
            queue=queue,
            accounts=account_store,
            engine=engine,
            connections=connections or FakeConnections(),
            settings=scheduler_settings,
            retry_policy=retry_policy or RetryPolicy(base_delay_seconds=0, jitter_factor=0),
        )

    return _make


# ============================================================================
# Triggers
# ============================================================================


def test_trigger_enqueues_manual_job(make_scheduler, queue, account) -> None:
    scheduler = make_scheduler(FakeEngine())

    ack = scheduler.trigger(account.id, JobKind.FULL)
    again = scheduler.trigger(account.id)

    job = queue.get(ack.job_id)
    assert job.trigger == JobTrigger.MANUAL
    assert job.kind == JobKind.FULL
    assert again.deduplicated


def test_trigger_for_unknown_account(make_scheduler) -> None:
    with pytest.raises(AccountNotFoundError):
        make_scheduler(FakeEngine()).trigger("missing")


def test_enqueue_due_skips_disabled_accounts(make_scheduler, queue, account_store, account) -> None:
    paused = account_store.create(
        owner_id="user-1",
        email_address="paused@crm.example",
        password="secret",
        imap_host="imap.crm.example",
        sync_enabled=False,
    )
    scheduler = make_scheduler(FakeEngine())

    acks = scheduler.enqueue_due()
    repeat = scheduler.enqueue_due()

    assert len(acks) == 1
    assert acks[0].accepted
    assert repeat[0].deduplicated
    assert scheduler.recover_expired() == []
    assert queue.live_job(paused.id) is None
    assert queue.live_job(account.id).id == acks[0].job_id


# ============================================================================
# Job execution
# ============================================================================


@pytest.mark.asyncio
async def test_run_once_without_due_job(make_scheduler) -> None:
    assert await make_scheduler(FakeEngine()).run_once("w1") is None


@pytest.mark.asyncio
async def test_successful_job_records_counts(make_scheduler, account) -> None:
    engine = FakeEngine(FakeOutcome(processed=3, skipped=1))
    scheduler = make_scheduler(engine)
    scheduler.trigger(account.id, JobKind.FULL)

    job = await scheduler.run_once("w1")

    assert job.status == JobStatus.SUCCESS
    assert (job.processed, job.skipped) == (3, 1)
    assert engine.calls == [{"account_id": account.id, "full": True, "timeout_seconds": 30}]


@pytest.mark.asyncio
async def test_transient_failure_is_retried(make_scheduler, queue, account) -> None:
    engine = FakeEngine(ImapConnectionError("reset"), FakeOutcome(processed=2))
    scheduler = make_scheduler(engine)
    ack = scheduler.trigger(account.id)

    retried = await scheduler.run_once("w1")
    assert retried.status == JobStatus.PENDING
    assert retried.trigger == JobTrigger.RETRY
    assert "CONNECTION_ERROR" in retried.error

    done = await scheduler.run_once("w1")
    assert done.id == ack.job_id
    assert done.status == JobStatus.SUCCESS
    assert done.attempt == 2


@pytest.mark.asyncio
async def test_retries_stop_at_attempt_budget(make_scheduler, account) -> None:
    scheduler = make_scheduler(
        FakeEngine(ImapConnectionError("reset"), ImapConnectionError("reset")),
        retry_policy=RetryPolicy(max_attempts=2, base_delay_seconds=0, jitter_factor=0),
    )
    scheduler.trigger(account.id)

    await scheduler.run_once("w1")
    job = await scheduler.run_once("w1")

    assert job.status == JobStatus.ERROR
    assert job.attempt == 2


@pytest.mark.asyncio
async def test_authentication_failure_is_final(make_scheduler, account) -> None:
    scheduler = make_scheduler(FakeEngine(AuthenticationError(details={"processed": 0})))
    scheduler.trigger(account.id)

    job = await scheduler.run_once("w1")

    assert job.status == JobStatus.ERROR
    assert job.error.startswith(AuthenticationError.code)
    assert await scheduler.run_once("w1") is None


@pytest.mark.asyncio
async def test_budget_timeout_keeps_partial_counts(make_scheduler, account) -> None:
    scheduler = make_scheduler(FakeEngine(SyncTimeoutError(details={"processed": 4, "skipped": 1})))
    scheduler.trigger(account.id)

    job = await scheduler.run_once("w1")

    assert job.status == JobStatus.ERROR
    assert (job.processed, job.skipped) == (4, 1)
    assert job.error.startswith("SYNC_TIMEOUT")


@pytest.mark.asyncio
async def test_unexpected_exception_fails_job(make_scheduler, account) -> None:
    scheduler = make_scheduler(FakeEngine(ValueError("bug")))
    scheduler.trigger(account.id)

    job = await scheduler.run_once("w1")

    assert job.status == JobStatus.ERROR
    assert job.error == "ValueError: bug"


@pytest.mark.asyncio
async def test_hard_limit_aborts_session_and_waits_for_pipeline(
    make_scheduler, scheduler_settings, account
) -> None:
    released = threading.Event()

    def hang_until_stopped(stop: threading.Event):
        assert stop.wait(5)
        released.set()
        raise SyncTimeoutError(details={"processed": 2})

    connections = FakeConnections()
    scheduler = make_scheduler(FakeEngine(hang_until_stopped), connections=connections)
    # below the validated minimum so the test stays fast
    scheduler_settings.job_timeout_seconds = 0.05
    scheduler_settings.timeout_grace_seconds = 0
    scheduler.trigger(account.id)

    job = await scheduler.run_once("w1")

    assert released.is_set()
    assert connections.aborted == [account.id]
    assert job.status == JobStatus.ERROR
    assert job.processed == 2
    assert job.error.startswith("SYNC_TIMEOUT")


# ============================================================================
# Lifecycle
# ============================================================================


@pytest.mark.asyncio
async def test_started_scheduler_syncs_accounts(make_scheduler, scheduler_settings, queue, account) -> None:
    scheduler_settings.worker_count = 2
    engine = FakeEngine(FakeOutcome(processed=5))
    scheduler = make_scheduler(engine)

    scheduler.start()
    scheduler.start()
    try:
        assert scheduler.running
        for _ in range(200):
            finished = queue.latest_finished(account.id)
            if finished is not None:
                break
            await asyncio.sleep(0.02)
    finally:
        await scheduler.shutdown()

    assert not scheduler.running
    assert finished is not None
    assert finished.status == JobStatus.SUCCESS
    assert finished.processed == 5
    assert len(engine.calls) == 1
