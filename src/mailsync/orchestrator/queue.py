"""Durable sync job queue.

Jobs live in the ``sync_jobs`` table of the shared database. A partial
unique index allows at most one live (pending or running) job per account,
which is what serializes syncs of one account across workers and
processes. Workers claim jobs atomically and hold a renewable lease; a
crashed worker's job is failed once its lease expires so the account is
unlocked again.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from mailsync.storage.database import MailDatabase, from_iso, to_iso, utcnow

from .exceptions import InvalidStateTransitionError, JobNotFoundError, LeaseLostError
from .models import VALID_TRANSITIONS, JobAck, JobKind, JobStatus, JobTrigger, SyncJob

logger = logging.getLogger(__name__)


def _row_to_job(row) -> SyncJob:
    return SyncJob(
        id=row["id"],
        account_id=row["account_id"],
        kind=JobKind(row["kind"]),
        status=JobStatus(row["status"]),
        trigger=JobTrigger(row["trigger"]),
        attempt=row["attempt"],
        max_attempts=row["max_attempts"],
        scheduled_at=from_iso(row["scheduled_at"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        started_at=from_iso(row["started_at"]),
        finished_at=from_iso(row["finished_at"]),
        lease_expires_at=from_iso(row["lease_expires_at"]),
        worker_id=row["worker_id"],
        processed=row["processed"],
        skipped=row["skipped"],
        error=row["error"],
    )


class SyncJobQueue:
    """SQLite-backed queue of per-account sync jobs."""

    def __init__(self, db: MailDatabase, *, max_attempts: int = 3) -> None:
        self._db = db
        self._max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        account_id: str,
        kind: JobKind = JobKind.INCREMENTAL,
        *,
        immediate: bool = False,
        trigger: JobTrigger = JobTrigger.SCHEDULE,
        delay_seconds: float = 0,
    ) -> JobAck:
        """Queue a sync unless the account already has a live job.

        The existing live job is returned instead of a duplicate. A pending
        incremental job is upgraded when a full sync is requested and pulled
        forward when ``immediate`` is set.
        """
        kind = JobKind(kind)
        try:
            with self._db.transaction():
                live = self.live_job(account_id)
                if live is not None:
                    return self._merge_into_live(live, kind, immediate)
                return self._insert(account_id, kind, trigger, delay_seconds)
        except sqlite3.IntegrityError:
            # another process inserted the live job between our read and write
            live = self.live_job(account_id)
            if live is None:
                raise
            return JobAck(job_id=live.id, status=live.status, kind=live.kind, deduplicated=True)

    def _insert(self, account_id: str, kind: JobKind, trigger: JobTrigger, delay_seconds: float) -> JobAck:
        now = utcnow()
        job_id = uuid.uuid4().hex
        self._db.execute(
            """
            INSERT INTO sync_jobs(
                id, account_id, kind, status, trigger, attempt, max_attempts,
                scheduled_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (
                job_id,
                account_id,
                kind.value,
                JobStatus.PENDING.value,
                JobTrigger(trigger).value,
                self._max_attempts,
                to_iso(now + timedelta(seconds=delay_seconds)),
                to_iso(now),
                to_iso(now),
            ),
        )
        logger.debug(
            "Enqueued sync job",
            extra={"job_id": job_id, "account_id": account_id, "kind": kind.value, "trigger": JobTrigger(trigger).value},
        )
        return JobAck(job_id=job_id, status=JobStatus.PENDING, kind=kind)

    def _merge_into_live(self, live: SyncJob, kind: JobKind, immediate: bool) -> JobAck:
        if live.status == JobStatus.PENDING:
            changes: Dict[str, str] = {}
            if kind == JobKind.FULL and live.kind == JobKind.INCREMENTAL:
                changes["kind"] = JobKind.FULL.value
            if immediate and live.scheduled_at > utcnow():
                changes["scheduled_at"] = to_iso(utcnow())
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                self._db.execute(
                    f"UPDATE sync_jobs SET {assignments}, updated_at = ? WHERE id = ? AND status = ?",
                    (*changes.values(), to_iso(utcnow()), live.id, JobStatus.PENDING.value),
                )
                live = self.get(live.id)
        logger.debug(
            "Sync already queued for account",
            extra={"job_id": live.id, "account_id": live.account_id, "status": live.status.value},
        )
        return JobAck(job_id=live.id, status=live.status, kind=live.kind, deduplicated=True)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def claim(self, worker_id: str, *, lease_seconds: int = 120) -> Optional[SyncJob]:
        """Atomically take the oldest due job of an account with nothing running."""
        now = utcnow()
        with self._db.transaction():
            row = self._db.query_one(
                """
                SELECT id FROM sync_jobs AS j
                WHERE status = ? AND scheduled_at <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM sync_jobs r WHERE r.account_id = j.account_id AND r.status = ?
                  )
                ORDER BY scheduled_at, created_at
                LIMIT 1
                """,
                (JobStatus.PENDING.value, to_iso(now), JobStatus.RUNNING.value),
            )
            if row is None:
                return None
            claimed = self._db.execute(
                """
                UPDATE sync_jobs SET
                    status = ?, attempt = attempt + 1, started_at = ?, lease_expires_at = ?,
                    worker_id = ?, error = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.RUNNING.value,
                    to_iso(now),
                    to_iso(now + timedelta(seconds=lease_seconds)),
                    worker_id,
                    to_iso(now),
                    row["id"],
                    JobStatus.PENDING.value,
                ),
            ).rowcount
            if not claimed:
                return None
            job = self.get(row["id"])
        logger.info(
            "Claimed sync job",
            extra={"job_id": job.id, "account_id": job.account_id, "worker_id": worker_id, "attempt": job.attempt},
        )
        return job

    def renew_lease(self, job_id: str, worker_id: str, *, lease_seconds: int = 120) -> SyncJob:
        with self._db.transaction():
            updated = self._db.execute(
                """
                UPDATE sync_jobs SET lease_expires_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND worker_id = ?
                """,
                (
                    to_iso(utcnow() + timedelta(seconds=lease_seconds)),
                    to_iso(utcnow()),
                    job_id,
                    JobStatus.RUNNING.value,
                    worker_id,
                ),
            ).rowcount
        if not updated:
            raise LeaseLostError(f"Worker {worker_id} no longer holds job {job_id}")
        return self.get(job_id)

    def complete(self, job_id: str, *, processed: int = 0, skipped: int = 0) -> SyncJob:
        return self._finish(job_id, JobStatus.SUCCESS, processed=processed, skipped=skipped)

    def fail(self, job_id: str, error: str, *, processed: int = 0, skipped: int = 0) -> SyncJob:
        return self._finish(job_id, JobStatus.ERROR, error=error, processed=processed, skipped=skipped)

    def retry(self, job_id: str, error: str, *, delay_seconds: float) -> SyncJob:
        """Return a running job to pending with a backed-off schedule.

        The attempt counter is kept so the next claim continues counting.
        """
        with self._db.transaction():
            job = self._transition(job_id, JobStatus.PENDING)
            now = utcnow()
            self._db.execute(
                """
                UPDATE sync_jobs SET
                    status = ?, trigger = ?, scheduled_at = ?, error = ?,
                    worker_id = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    JobStatus.PENDING.value,
                    JobTrigger.RETRY.value,
                    to_iso(now + timedelta(seconds=delay_seconds)),
                    error[:1000],
                    to_iso(now),
                    job_id,
                ),
            )
        logger.info(
            "Sync job rescheduled",
            extra={
                "job_id": job_id,
                "account_id": job.account_id,
                "attempt": job.attempt,
                "delay_seconds": round(delay_seconds, 1),
            },
        )
        return self.get(job_id)

    def recover_expired(self, *, now: Optional[datetime] = None) -> List[str]:
        """Fail running jobs whose lease ran out (crashed or hung workers)."""
        now = now or utcnow()
        with self._db.transaction():
            rows = self._db.query(
                "SELECT id, account_id FROM sync_jobs WHERE status = ? AND lease_expires_at < ?",
                (JobStatus.RUNNING.value, to_iso(now)),
            )
            for row in rows:
                self._db.execute(
                    """
                    UPDATE sync_jobs SET status = ?, error = ?, finished_at = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        JobStatus.ERROR.value,
                        "SYNC_ERROR: Worker lease expired",
                        to_iso(now),
                        to_iso(now),
                        row["id"],
                        JobStatus.RUNNING.value,
                    ),
                )
        for row in rows:
            logger.warning("Recovered expired sync job", extra={"job_id": row["id"], "account_id": row["account_id"]})
        return [row["id"] for row in rows]

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        processed: int = 0,
        skipped: int = 0,
    ) -> SyncJob:
        with self._db.transaction():
            self._transition(job_id, status)
            now = to_iso(utcnow())
            self._db.execute(
                """
                UPDATE sync_jobs SET
                    status = ?, error = ?, processed = ?, skipped = ?, finished_at = ?,
                    lease_expires_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (status.value, error[:1000] if error else None, processed, skipped, now, now, job_id),
            )
        job = self.get(job_id)
        log = logger.info if status == JobStatus.SUCCESS else logger.warning
        log(
            "Sync job finished",
            extra={
                "job_id": job_id,
                "account_id": job.account_id,
                "status": status.value,
                "processed": processed,
                "skipped": skipped,
            },
        )
        return job

    def _transition(self, job_id: str, target: JobStatus) -> SyncJob:
        job = self.get(job_id)
        if target not in VALID_TRANSITIONS[job.status]:
            raise InvalidStateTransitionError(
                f"Cannot move job {job_id} from {job.status.value} to {target.value}"
            )
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> SyncJob:
        row = self._db.query_one("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))
        if row is None:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    def live_job(self, account_id: str) -> Optional[SyncJob]:
        row = self._db.query_one(
            "SELECT * FROM sync_jobs WHERE account_id = ? AND status IN (?, ?)",
            (account_id, JobStatus.PENDING.value, JobStatus.RUNNING.value),
        )
        return _row_to_job(row) if row else None

    def latest_for_account(self, account_id: str) -> Optional[SyncJob]:
        row = self._db.query_one(
            "SELECT * FROM sync_jobs WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (account_id,),
        )
        return _row_to_job(row) if row else None

    def latest_finished(self, account_id: str) -> Optional[SyncJob]:
        row = self._db.query_one(
            """
            SELECT * FROM sync_jobs WHERE account_id = ? AND status IN (?, ?)
            ORDER BY finished_at DESC, rowid DESC LIMIT 1
            """,
            (account_id, JobStatus.SUCCESS.value, JobStatus.ERROR.value),
        )
        return _row_to_job(row) if row else None

    def list_for_account(self, account_id: str, *, limit: int = 20) -> List[SyncJob]:
        rows = self._db.query(
            "SELECT * FROM sync_jobs WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (account_id, limit),
        )
        return [_row_to_job(row) for row in rows]

    def stats(self) -> Dict[str, int]:
        rows = self._db.query("SELECT status, COUNT(*) AS total FROM sync_jobs GROUP BY status")
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts


__all__ = ["SyncJobQueue"]
