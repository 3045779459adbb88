"""Tests for the mailsync command line interface."""

import json
import re
from pathlib import Path

import pytest
from typer.testing import CliRunner

from mailsync.cli import cli, console


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich tables from wrapping cell contents."""
    monkeypatch.setattr(console, "width", 200)


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Config file pointing every location into the temp directory."""
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "home": str(tmp_path / "home"),
                "database": {"path": str(tmp_path / "home" / "mailsync.db")},
                "attachments": {"root": str(tmp_path / "home" / "attachments")},
                "security": {"key_path": str(tmp_path / "home" / "secret.key")},
            }
        )
    )
    return path


@pytest.fixture
def invoke(runner, config_path):
    def _invoke(*args, **kwargs):
        return runner.invoke(cli, ["--config", str(config_path), *args], **kwargs)

    return _invoke


@pytest.fixture
def account_id(invoke) -> str:
    result = invoke(
        "accounts", "add",
        "--owner", "user-1",
        "--email", "rep@crm.example",
        "--host", "imap.crm.example",
        "--password", "app-password",
    )
    assert result.exit_code == 0, result.output
    return re.search(r"\(([0-9a-f]{32})\)", result.output).group(1)


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


def test_add_account_prompts_for_password(invoke):
    result = invoke(
        "accounts", "add", "--owner", "user-1", "--email", "Sales@CRM.example", "--host", "imap.crm.example",
        input="app-password\n",
    )

    assert result.exit_code == 0, result.output
    assert "Added account" in result.output
    assert "sales@crm.example" in result.output


def test_add_account_rejects_plain_imap(invoke):
    result = invoke(
        "accounts", "add", "--owner", "user-1", "--email", "rep@crm.example", "--host", "imap.crm.example",
        "--port", "143", "--password", "pw",
    )

    assert result.exit_code == 1
    assert "993" in result.output


def test_list_accounts(invoke, account_id):
    result = invoke("accounts", "list")

    assert result.exit_code == 0
    assert "rep@crm.example" in result.output
    assert account_id[:12] in result.output


def test_list_without_accounts(invoke):
    result = invoke("accounts", "list", "--owner", "nobody")

    assert result.exit_code == 0
    assert "No accounts configured" in result.output


def test_update_account(invoke, account_id):
    result = invoke("accounts", "update", account_id, "--no-sync", "--host", "mail.crm.example")

    assert result.exit_code == 0, result.output
    assert "Updated" in result.output
    listing = invoke("accounts", "list").output
    assert "mail.crm.example:993" in listing
    assert "off" in listing


def test_update_with_blank_password_keeps_secret(invoke, account_id):
    result = invoke("accounts", "update", account_id, "--password", input="\n")

    assert result.exit_code == 0, result.output
    assert "status: active" in result.output


def test_update_unknown_account(invoke):
    result = invoke("accounts", "update", "missing", "--no-sync")

    assert result.exit_code == 1


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


def test_trigger_is_deduplicated(invoke, account_id):
    first = invoke("sync", "trigger", account_id)
    second = invoke("sync", "trigger", account_id, "--full")

    assert first.exit_code == 0, first.output
    assert "Queued incremental sync" in first.output
    assert second.exit_code == 0
    assert "already pending" in second.output
    assert "full" in second.output


def test_trigger_unknown_account(invoke):
    result = invoke("sync", "trigger", "missing")

    assert result.exit_code == 1


def test_status_json(invoke, account_id):
    invoke("sync", "trigger", account_id)

    result = invoke("sync", "status", account_id, "--json")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    [report] = payload["accounts"]
    assert report["status"] == "idle"
    assert report["queue"]["live"]["trigger"] == "manual"


def test_status_overview(invoke, account_id):
    result = invoke("sync", "status")

    assert result.exit_code == 0, result.output
    assert "rep@crm.example" in result.output
    assert "never" in result.output
    assert "pending=0" in result.output


def test_jobs_listing(invoke, account_id):
    assert "No jobs found" in invoke("sync", "jobs", account_id).output

    invoke("sync", "trigger", account_id)
    result = invoke("sync", "jobs", account_id)

    assert result.exit_code == 0
    assert "Sync Jobs (1 shown)" in result.output
    assert "incremental" in result.output
    assert "manual" in result.output


# ---------------------------------------------------------------------------
# worker / threads / attachments
# ---------------------------------------------------------------------------


def test_worker_once_without_accounts(invoke):
    result = invoke("worker", "run", "--once")

    assert result.exit_code == 0, result.output
    assert "Ran 0 job(s)" in result.output


def test_reconcile_threads(invoke, account_id):
    result = invoke("threads", "reconcile", account_id)

    assert result.exit_code == 0, result.output
    assert "Merged 0 thread(s)" in result.output


def test_fetch_unknown_attachment(invoke):
    result = invoke("attachments", "fetch", "42")

    assert result.exit_code == 1


def test_retry_attachments_without_failures(invoke, account_id):
    result = invoke("attachments", "retry", account_id)

    assert result.exit_code == 0, result.output
    assert "Recovered 0 attachment(s)" in result.output


# ---------------------------------------------------------------------------
# global options
# ---------------------------------------------------------------------------


def test_invalid_log_level(invoke):
    result = invoke("--log-level", "LOUD", "accounts", "list")

    assert result.exit_code != 0


def test_invalid_config_file(runner, tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    result = runner.invoke(cli, ["--config", str(path), "accounts", "list"])

    assert result.exit_code == 1
