"""Retry policy for failed sync jobs.

Only transient failures (network, TLS, timeouts while talking to the
server) are retried, with exponential backoff and jitter up to the
policy's attempt budget. Authentication failures and exhausted time
budgets are final for the job: the former need new credentials, the
latter resume on the next scheduled run.
"""

from __future__ import annotations

import logging
import random
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from mailsync.configuration import RetrySettings
from mailsync.errors import (
    AuthenticationError,
    ConfigurationError,
    ImapConnectionError,
    MailSyncError,
    SyncTimeoutError,
)

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """Retry strategy types for different backoff patterns."""

    EXPONENTIAL_BACKOFF = "exponential_backoff"  # 60s, 120s, 240s...
    LINEAR_BACKOFF = "linear_backoff"  # 60s, 120s, 180s...
    FIXED_DELAY = "fixed_delay"
    IMMEDIATE = "immediate"  # testing only
    NO_RETRY = "no_retry"


class FailureType(str, Enum):
    """Failure classification for retry decisions."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


def classify_failure(exc: BaseException) -> FailureType:
    if isinstance(exc, AuthenticationError):
        return FailureType.PERMANENT
    if isinstance(exc, SyncTimeoutError):
        return FailureType.TIMEOUT
    if isinstance(exc, ImapConnectionError):
        return FailureType.TRANSIENT
    if isinstance(exc, MailSyncError) and not exc.recoverable:
        return FailureType.PERMANENT
    return FailureType.UNKNOWN


class RetryPolicy(BaseModel):
    """Backoff applied when a sync job fails.

    Attributes:
        strategy: Backoff strategy to use
        max_attempts: Total attempts per job, the first run included
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Cap applied before jitter
        jitter_factor: Random +/- fraction applied to every delay
        backoff_multiplier: Growth factor for exponential backoff
    """

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: int = Field(default=60, ge=0, le=3600)
    max_delay_seconds: int = Field(default=3600, ge=1, le=86400)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        policy = cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_factor=settings.jitter_factor,
        )
        if settings.policy_path is not None:
            policy = load_retry_policy(settings.policy_path, base=policy)
        return policy

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        """``attempt`` is the 1-based attempt that just failed."""
        if self.strategy == RetryStrategy.NO_RETRY:
            return False
        if classify_failure(exc) != FailureType.TRANSIENT:
            return False
        return attempt < self.max_attempts

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed), jitter applied."""
        base_delay = self.base_delay_seconds
        if self.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = base_delay * (self.backoff_multiplier**attempt)
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = base_delay * (attempt + 1)
        elif self.strategy == RetryStrategy.FIXED_DELAY:
            delay = base_delay
        else:
            delay = 0

        delay = min(delay, self.max_delay_seconds)

        # Add jitter to avoid thundering herd
        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            delay = max(1.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return float(delay)


def load_retry_policy(path: Path, *, base: Optional[RetryPolicy] = None) -> RetryPolicy:
    """Load a policy from YAML, overriding the fields of ``base``.

    The file holds a single ``retry_policy`` mapping::

        retry_policy:
          strategy: exponential_backoff
          max_attempts: 5
          base_delay_seconds: 30
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            config = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read retry policy {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in retry policy {path}: {exc}") from exc

    if not isinstance(config, dict) or not isinstance(config.get("retry_policy"), dict):
        raise ConfigurationError("Retry policy file must contain a 'retry_policy' mapping")

    merged = (base or RetryPolicy()).model_dump()
    merged.update(config["retry_policy"])
    try:
        policy = RetryPolicy.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid retry policy: {exc}") from exc
    logger.info("Loaded retry policy", extra={"path": str(path), "strategy": policy.strategy.value})
    return policy


__all__ = [
    "FailureType",
    "RetryPolicy",
    "RetryStrategy",
    "classify_failure",
    "load_retry_policy",
]
