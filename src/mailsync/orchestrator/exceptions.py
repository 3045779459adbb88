"""Custom exceptions for sync job state handling."""

from __future__ import annotations


class InvalidStateTransitionError(ValueError):
    """Raised when a job is moved along a transition not in VALID_TRANSITIONS.

    Example:
        Completing a job that already finished with an error.
    """

    pass


class JobNotFoundError(KeyError):
    """Raised when a job id is not present in the queue table."""

    pass


class LeaseLostError(RuntimeError):
    """Raised when a worker acts on a job whose lease it no longer holds.

    This happens after the lease expired and the job was recovered, or when
    another worker id is recorded on the row.
    """

    pass
