"""Tests for cross-folder and cross-epoch duplicate detection."""

from __future__ import annotations

from mailsync.ingestion.imap.deduplicator import DedupDecision
from mailsync.ingestion.imap.email_parser import ParseFailure


def test_unknown_message_is_new(deduplicator, account):
    result = deduplicator.classify(account.id, "INBOX", 1, 1, "hash")

    assert result.decision == DedupDecision.NEW
    assert result.email_id is None


def test_same_uid_is_known(deduplicator, ingest, make_email, account, parse_raw):
    raw = make_email(message_id="a@x")
    email_id, _ = ingest(raw, uid=7)
    message = parse_raw(raw, uid=7)

    result = deduplicator.classify(account.id, "INBOX", 1, 7, message.dedup_hash)

    assert result.decision == DedupDecision.KNOWN
    assert result.email_id == email_id


def test_other_folder_is_a_copy(deduplicator, ingest, make_email, account, parse_raw):
    raw = make_email(message_id="a@x")
    email_id, _ = ingest(raw, uid=7)
    message = parse_raw(raw, uid=3, folder="Archive")

    result = deduplicator.classify(account.id, "Archive", 1, 3, message.dedup_hash)

    assert result.decision == DedupDecision.COPY
    assert result.email_id == email_id


def test_new_epoch_of_same_folder_is_known(deduplicator, ingest, make_email, account, parse_raw):
    raw = make_email(message_id="a@x")
    email_id, _ = ingest(raw, uid=7, uidvalidity=1)
    message = parse_raw(raw, uid=2, uidvalidity=2)

    result = deduplicator.classify(account.id, "INBOX", 2, 2, message.dedup_hash)
    assert result.decision == DedupDecision.KNOWN

    deduplicator.record_sighting(account.id, "INBOX", 2, 2, email_id)
    assert deduplicator.known_uids(account.id, "INBOX", 1, [7]) == set()
    assert deduplicator.known_uids(account.id, "INBOX", 2, [1, 2, 3]) == {2}


def test_known_uids_include_parse_failures(deduplicator, account):
    failure = ParseFailure(uid=5, folder="INBOX", uidvalidity=1, error="boom")
    deduplicator.record_parse_failure(account.id, failure)

    assert deduplicator.known_uids(account.id, "INBOX", 1, range(1, 1200)) == {5}
    assert deduplicator.parse_failure_count(account.id) == 1

    deduplicator.record_parse_failure(account.id, failure)
    assert deduplicator.parse_failure_count(account.id) == 1
