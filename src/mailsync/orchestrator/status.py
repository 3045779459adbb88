"""Sync status reporting for the inbox UI and the CLI."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from mailsync.ingestion.imap.accounts import AccountStatus, AccountStore
from mailsync.ingestion.imap.sync_state import SyncStateTracker
from mailsync.storage.database import to_iso
from mailsync.storage.repository import EmailRepository

from .models import JobStatus, JobTrigger, SyncJob
from .queue import SyncJobQueue


def _job_summary(job: Optional[SyncJob]) -> Optional[Dict[str, Any]]:
    if job is None:
        return None
    return {
        "job_id": job.id,
        "kind": job.kind.value,
        "status": job.status.value,
        "trigger": job.trigger.value,
        "attempt": job.attempt,
        "max_attempts": job.max_attempts,
        "scheduled_at": to_iso(job.scheduled_at),
        "started_at": to_iso(job.started_at),
        "finished_at": to_iso(job.finished_at),
        "processed": job.processed,
        "skipped": job.skipped,
        "error": job.error,
    }


class SyncStatusService:
    """Answers "what is this account's sync doing" from persisted state."""

    def __init__(
        self,
        *,
        accounts: AccountStore,
        queue: SyncJobQueue,
        state: SyncStateTracker,
        repository: EmailRepository,
    ) -> None:
        self._accounts = accounts
        self._queue = queue
        self._state = state
        self._repository = repository

    def get_status(self, account_id: str) -> Dict[str, Any]:
        """Status report for one account.

        ``status`` is ``syncing`` while a job runs or waits for a retry,
        ``error`` when the account is disabled or its last job failed, and
        ``idle`` otherwise.
        """
        account = self._accounts.get(account_id)
        live = self._queue.live_job(account_id)
        last = self._queue.latest_finished(account_id)

        if account.status == AccountStatus.ERROR:
            status = "error"
        elif live is not None and (live.status == JobStatus.RUNNING or live.trigger == JobTrigger.RETRY):
            status = "syncing"
        elif last is not None and last.status == JobStatus.ERROR:
            status = "error"
        else:
            status = "idle"

        counts = self._repository.counts(account_id)
        error = account.status_error if account.status == AccountStatus.ERROR else None
        if error is None and status == "error" and last is not None:
            error = last.error

        return {
            "account_id": account_id,
            "email_address": account.email_address,
            "status": status,
            "error": error,
            "last_sync_at": to_iso(account.last_sync_at or self._state.last_sync_at(account_id)),
            "counts": {"total": counts.total, "unread": counts.unread},
            "folders": [
                {
                    "folder": cursor.folder,
                    "status": cursor.last_sync_status.value,
                    "message_count": counts.by_folder.get(cursor.folder, {}).get("total", 0),
                    "last_sync_at": to_iso(cursor.last_sync_at),
                    "error": cursor.last_sync_error,
                }
                for cursor in self._state.list_for_account(account_id)
            ],
            "queue": {
                "live": _job_summary(live),
                "last": _job_summary(last),
            },
        }

    def overview(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        accounts: List[Dict[str, Any]] = [
            self.get_status(account.id) for account in self._accounts.list(owner_id)
        ]
        return {"accounts": accounts, "queue": self._queue.stats()}


__all__ = ["SyncStatusService"]
