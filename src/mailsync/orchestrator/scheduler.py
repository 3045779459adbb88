"""Periodic sync scheduling and the async worker pool.

``SyncScheduler`` owns an APScheduler ``AsyncIOScheduler`` that enqueues an
incremental job for every syncable account at a fixed interval and
periodically fails jobs whose worker lease expired. A fixed number of
asyncio worker tasks claim jobs from the durable queue and run the
blocking sync pipeline in a thread, renewing the job lease while it runs.

Each job gets two time limits: the pipeline's own deadline, checked before
every batch fetch, and a hard limit slightly above it. When the hard limit
hits, the worker signals the pipeline to stop, force-closes the account's
IMAP socket and waits for the thread to return before failing the job, so
no batch is ever committed after its job has been marked finished.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import threading
from datetime import datetime
from typing import List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mailsync.configuration import SyncSettings
from mailsync.errors import MailSyncError
from mailsync.ingestion.imap.accounts import AccountStore
from mailsync.ingestion.imap.connection_manager import ImapConnectionManager
from mailsync.ingestion.imap.sync_engine import MailboxSyncEngine

from .exceptions import LeaseLostError
from .models import JobAck, JobKind, JobTrigger, SyncJob
from .queue import SyncJobQueue
from .retry_policy import RetryPolicy, classify_failure

logger = logging.getLogger(__name__)


def _error_counts(exc: BaseException) -> Tuple[int, int]:
    details = exc.details if isinstance(exc, MailSyncError) else {}
    return int(details.get("processed", 0)), int(details.get("skipped", 0))


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, MailSyncError):
        return f"{exc.code}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"


class SyncScheduler:
    """Coordinates sync jobs using the persistent queue and async workers."""

    def __init__(
        self,
        *,
        queue: SyncJobQueue,
        accounts: AccountStore,
        engine: MailboxSyncEngine,
        connections: ImapConnectionManager,
        settings: SyncSettings,
        retry_policy: Optional[RetryPolicy] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._queue = queue
        self._accounts = accounts
        self._engine = engine
        self._connections = connections
        self._settings = settings
        self._retry_policy = retry_policy or RetryPolicy()
        self._loop = loop
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._worker_prefix = f"{socket.gethostname()}-{os.getpid()}"

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, account_id: str, kind: JobKind = JobKind.INCREMENTAL, *, immediate: bool = True) -> JobAck:
        """Explicit sync request from the UI; never blocks on the sync itself."""
        self._accounts.get(account_id)
        ack = self._queue.enqueue(account_id, kind, immediate=immediate, trigger=JobTrigger.MANUAL)
        logger.info(
            "Sync triggered",
            extra={
                "account_id": account_id,
                "job_id": ack.job_id,
                "kind": ack.kind.value,
                "deduplicated": ack.deduplicated,
            },
        )
        return ack

    def enqueue_due(self) -> List[JobAck]:
        """Periodic trigger: one incremental job per syncable account."""
        acks = [
            self._queue.enqueue(account.id, JobKind.INCREMENTAL, trigger=JobTrigger.SCHEDULE)
            for account in self._accounts.list_syncable()
        ]
        queued = sum(1 for ack in acks if ack.accepted)
        logger.debug("Periodic sync enqueue", extra={"accounts": len(acks), "queued": queued})
        return acks

    def recover_expired(self) -> List[str]:
        return self._queue.recover_expired()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the interval jobs and workers on the running event loop."""
        if self._running:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._scheduler = AsyncIOScheduler(event_loop=loop)
        self._scheduler.add_job(
            self.enqueue_due,
            trigger=IntervalTrigger(seconds=self._settings.interval_seconds),
            id="enqueue-due-syncs",
            replace_existing=True,
            next_run_time=datetime.now(),
        )
        self._scheduler.add_job(
            self.recover_expired,
            trigger=IntervalTrigger(seconds=self._settings.lease_seconds),
            id="recover-expired-jobs",
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        self._workers = [
            loop.create_task(self._worker_loop(f"{self._worker_prefix}-{index}"))
            for index in range(self._settings.worker_count)
        ]
        logger.info("Sync scheduler started", extra={"workers": self._settings.worker_count})

    async def shutdown(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        logger.info("Sync scheduler stopped")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: str) -> None:
        while self._running:
            try:
                job = await self.run_once(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the worker alive
                logger.exception("Sync worker iteration failed", extra={"worker_id": worker_id})
                job = None
            if job is None:
                await asyncio.sleep(self._settings.poll_seconds)

    async def run_once(self, worker_id: str) -> Optional[SyncJob]:
        """Claim and run a single due job; ``None`` when nothing is due."""
        job = await asyncio.to_thread(self._queue.claim, worker_id, lease_seconds=self._settings.lease_seconds)
        if job is None:
            return None
        return await self.run_job(job, worker_id)

    async def run_job(self, job: SyncJob, worker_id: str) -> SyncJob:
        stop = threading.Event()
        work = asyncio.ensure_future(
            asyncio.to_thread(
                self._engine.run,
                job.account_id,
                full=job.kind == JobKind.FULL,
                timeout_seconds=self._settings.job_timeout_seconds,
                stop=stop,
            )
        )
        heartbeat = asyncio.ensure_future(self._heartbeat(job, worker_id, stop))
        hard_limit = self._settings.job_timeout_seconds + self._settings.timeout_grace_seconds
        try:
            try:
                outcome = await asyncio.wait_for(asyncio.shield(work), timeout=hard_limit)
            except asyncio.TimeoutError:
                return await self._abort(job, work, stop)
            except Exception as exc:  # noqa: BLE001 - every failure is recorded on the job
                return await self._handle_failure(job, exc)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        return await asyncio.to_thread(
            self._queue.complete, job.id, processed=outcome.processed, skipped=outcome.skipped
        )

    async def _abort(self, job: SyncJob, work: asyncio.Future, stop: threading.Event) -> SyncJob:
        logger.error(
            "Sync exceeded hard time limit, aborting session",
            extra={"job_id": job.id, "account_id": job.account_id},
        )
        stop.set()
        self._connections.abort(job.account_id)
        processed = skipped = 0
        try:
            outcome = await work
            processed, skipped = outcome.processed, outcome.skipped
        except Exception as exc:  # noqa: BLE001 - the session was closed under the pipeline
            processed, skipped = _error_counts(exc)
        return await asyncio.to_thread(
            self._queue.fail,
            job.id,
            "SYNC_TIMEOUT: Sync exceeded its time budget",
            processed=processed,
            skipped=skipped,
        )

    async def _handle_failure(self, job: SyncJob, exc: BaseException) -> SyncJob:
        processed, skipped = _error_counts(exc)
        failure = classify_failure(exc)
        if not isinstance(exc, MailSyncError):
            logger.exception(
                "Unexpected sync failure",
                extra={"job_id": job.id, "account_id": job.account_id},
                exc_info=exc,
            )

        if self._retry_policy.should_retry(job.attempt, exc):
            delay = self._retry_policy.calculate_delay(job.attempt - 1)
            return await asyncio.to_thread(self._queue.retry, job.id, _error_text(exc), delay_seconds=delay)

        logger.warning(
            "Sync job failed",
            extra={
                "job_id": job.id,
                "account_id": job.account_id,
                "failure_type": failure.value,
                "attempt": job.attempt,
            },
        )
        return await asyncio.to_thread(
            self._queue.fail, job.id, _error_text(exc), processed=processed, skipped=skipped
        )

    async def _heartbeat(self, job: SyncJob, worker_id: str, stop: threading.Event) -> None:
        interval = max(1.0, self._settings.lease_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(
                    self._queue.renew_lease, job.id, worker_id, lease_seconds=self._settings.lease_seconds
                )
            except LeaseLostError:
                logger.warning("Lost lease on running job", extra={"job_id": job.id, "worker_id": worker_id})
                stop.set()
                return


__all__ = ["SyncScheduler"]
