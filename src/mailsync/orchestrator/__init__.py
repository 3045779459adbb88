"""Sync orchestrator package."""

from .exceptions import InvalidStateTransitionError, JobNotFoundError, LeaseLostError
from .models import VALID_TRANSITIONS, JobAck, JobKind, JobStatus, JobTrigger, SyncJob
from .queue import SyncJobQueue
from .retry_policy import FailureType, RetryPolicy, RetryStrategy, classify_failure, load_retry_policy
from .scheduler import SyncScheduler
from .status import SyncStatusService

__all__ = [
    "FailureType",
    "InvalidStateTransitionError",
    "JobAck",
    "JobKind",
    "JobNotFoundError",
    "JobStatus",
    "JobTrigger",
    "LeaseLostError",
    "RetryPolicy",
    "RetryStrategy",
    "SyncJob",
    "SyncJobQueue",
    "SyncScheduler",
    "SyncStatusService",
    "VALID_TRANSITIONS",
    "classify_failure",
    "load_retry_policy",
]
