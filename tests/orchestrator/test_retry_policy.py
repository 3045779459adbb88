"""Unit tests for the sync retry policy."""

from pathlib import Path

import pytest

from mailsync.configuration import RetrySettings
from mailsync.errors import (
    AuthenticationError,
    ConfigurationError,
    FolderSyncError,
    ImapConnectionError,
    SyncTimeoutError,
)
from mailsync.orchestrator.retry_policy import (
    FailureType,
    RetryPolicy,
    RetryStrategy,
    classify_failure,
    load_retry_policy,
)


class TestFailureClassification:
    """Test mapping of errors onto failure types."""

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (ImapConnectionError(), FailureType.TRANSIENT),
            (AuthenticationError(), FailureType.PERMANENT),
            (SyncTimeoutError(), FailureType.TIMEOUT),
            (RuntimeError("boom"), FailureType.UNKNOWN),
        ],
    )
    def test_classify(self, exc, expected):
        assert classify_failure(exc) == expected

    def test_unrecoverable_mailsync_error_is_permanent(self):
        assert classify_failure(FolderSyncError()) == FailureType.PERMANENT


class TestRetryDecision:
    """Test which failures get another attempt."""

    def test_transient_failure_retried_until_budget(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1, ImapConnectionError())
        assert policy.should_retry(2, ImapConnectionError())
        assert not policy.should_retry(3, ImapConnectionError())

    def test_auth_and_timeout_never_retried(self):
        policy = RetryPolicy(max_attempts=5)

        assert not policy.should_retry(1, AuthenticationError())
        assert not policy.should_retry(1, SyncTimeoutError())
        assert not policy.should_retry(1, ValueError("bug"))

    def test_no_retry_strategy(self):
        policy = RetryPolicy(strategy=RetryStrategy.NO_RETRY)
        assert not policy.should_retry(1, ImapConnectionError())


class TestDelayCalculation:
    """Test backoff delays without jitter."""

    def test_exponential(self):
        policy = RetryPolicy(base_delay_seconds=60, jitter_factor=0)
        assert [policy.calculate_delay(n) for n in range(3)] == [60, 120, 240]

    def test_linear(self):
        policy = RetryPolicy(strategy=RetryStrategy.LINEAR_BACKOFF, base_delay_seconds=60, jitter_factor=0)
        assert [policy.calculate_delay(n) for n in range(3)] == [60, 120, 180]

    def test_fixed_and_immediate(self):
        fixed = RetryPolicy(strategy=RetryStrategy.FIXED_DELAY, base_delay_seconds=45, jitter_factor=0)
        immediate = RetryPolicy(strategy=RetryStrategy.IMMEDIATE)

        assert fixed.calculate_delay(4) == 45
        assert immediate.calculate_delay(4) == 0

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=600, max_delay_seconds=900, jitter_factor=0)
        assert policy.calculate_delay(5) == 900

    def test_jitter_stays_within_factor(self):
        policy = RetryPolicy(base_delay_seconds=100, jitter_factor=0.2)
        for _ in range(50):
            assert 80 <= policy.calculate_delay(0) <= 120


class TestPolicyLoading:
    """Test settings and YAML overrides."""

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(RetrySettings(max_attempts=4, base_delay_seconds=5))

        assert policy.max_attempts == 4
        assert policy.base_delay_seconds == 5

    def test_yaml_overrides_settings(self, tmp_path: Path):
        path = tmp_path / "retry.yaml"
        path.write_text("retry_policy:\n  strategy: linear_backoff\n  max_attempts: 6\n", encoding="utf-8")

        policy = RetryPolicy.from_settings(RetrySettings(base_delay_seconds=7, policy_path=path))

        assert policy.strategy == RetryStrategy.LINEAR_BACKOFF
        assert policy.max_attempts == 6
        assert policy.base_delay_seconds == 7

    @pytest.mark.parametrize(
        "content",
        [
            "retry_policy: [1, 2]\n",
            "other: {}\n",
            "retry_policy:\n  max_attempts: 99\n",
            "retry_policy: {strategy: [unclosed\n",
        ],
    )
    def test_invalid_files_rejected(self, tmp_path: Path, content: str):
        path = tmp_path / "retry.yaml"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_retry_policy(path)

    def test_missing_file_rejected(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_retry_policy(tmp_path / "absent.yaml")
