"""Domain models for the sync orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Set


class JobKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class JobTrigger(str, Enum):
    SCHEDULE = "schedule"
    MANUAL = "manual"
    RETRY = "retry"


LIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)

VALID_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {
        JobStatus.RUNNING,  # claimed by a worker
        JobStatus.PENDING,  # upgraded or pulled forward
    },
    JobStatus.RUNNING: {
        JobStatus.SUCCESS,
        JobStatus.ERROR,
        JobStatus.PENDING,  # transient failure with attempts left
        JobStatus.RUNNING,  # lease renewal
    },
    JobStatus.SUCCESS: set(),
    JobStatus.ERROR: set(),
}


@dataclass(slots=True)
class SyncJob:
    """One queued or executed sync of one account."""

    id: str
    account_id: str
    kind: JobKind
    status: JobStatus
    trigger: JobTrigger
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    processed: int = 0
    skipped: int = 0
    error: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempt)


@dataclass(slots=True)
class JobAck:
    """Answer to a sync trigger."""

    job_id: str
    status: JobStatus
    kind: JobKind
    deduplicated: bool = False

    @property
    def accepted(self) -> bool:
        return not self.deduplicated


__all__ = [
    "JobAck",
    "JobKind",
    "JobStatus",
    "JobTrigger",
    "LIVE_STATUSES",
    "SyncJob",
    "VALID_TRANSITIONS",
]
