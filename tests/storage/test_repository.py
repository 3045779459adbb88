"""Tests for the inbox read/mutation boundary."""

from __future__ import annotations

import pytest

from mailsync.ingestion.imap.attachment_models import AttachmentPart, AttachmentStatus
from mailsync.storage.repository import BulkAction


@pytest.fixture
def mailbox(ingest, make_email):
    """Three messages: two in INBOX (one read), one archived."""
    ids = {}
    ids["pricing"], _ = ingest(
        make_email(message_id="p@x", subject="Pricing for 2024", body="Our 50% discount offer"),
        uid=1,
    )
    ids["contract"], _ = ingest(
        make_email(
            message_id="c@x",
            subject="Contract draft",
            sender="Bob Legal <bob@customer.example>",
            body="Redlines attached",
            date="Tue, 02 Jan 2024 10:00:00 +0000",
        ),
        uid=2,
        flags=("\\Seen",),
    )
    ids["archived"], _ = ingest(
        make_email(
            message_id="a@x",
            subject="Old thread",
            body="From last year",
            date="Sun, 31 Dec 2023 10:00:00 +0000",
        ),
        uid=1,
        folder="Archive",
    )
    return ids


# =============================================================================
# Queries
# =============================================================================


def test_list_is_newest_first_and_paged(repository, account, mailbox):
    page = repository.list_emails(account.id, limit=2)

    assert [e.id for e in page.items] == [mailbox["contract"], mailbox["pricing"]]
    assert page.total == 3
    assert page.has_more

    rest = repository.list_emails(account.id, limit=2, offset=2)
    assert [e.id for e in rest.items] == [mailbox["archived"]]
    assert not rest.has_more


def test_list_filters(repository, account, mailbox):
    inbox = repository.list_emails(account.id, folder="INBOX")
    unread = repository.list_emails(account.id, folder="INBOX", is_read=False)
    matching = repository.list_emails(account.id, query="contract")

    assert inbox.total == 2
    assert [e.id for e in unread.items] == [mailbox["pricing"]]
    assert [e.id for e in matching.items] == [mailbox["contract"]]
    assert repository.list_emails("someone-else").total == 0


def test_search_escapes_wildcards(repository, account, mailbox):
    assert [e.id for e in repository.search(account.id, "50%")] == [mailbox["pricing"]]
    assert repository.search(account.id, "50_") == []
    assert [e.id for e in repository.search(account.id, "redlines")] == [mailbox["contract"]]
    assert {e.id for e in repository.search(account.id, "bob@customer")} == {mailbox["contract"]}


def test_get_email_carries_labels_and_bodies(repository, deduplicator, account, mailbox):
    deduplicator.record_sighting(account.id, "Customers", 1, 9, mailbox["pricing"])

    detail = repository.get_email(mailbox["pricing"])

    assert detail.labels == ["Customers", "INBOX"]
    assert "discount" in detail.body_plain
    assert detail.from_address == "alice@customer.example"
    assert detail.attachments == []
    assert repository.get_email(999) is None


def test_get_email_lists_attachments(repository, attachment_store, account, ingest, make_email):
    email_id, _ = ingest(
        make_email(message_id="att@x", attachments=[("quote.pdf", b"%PDF", "application/pdf")]),
        uid=5,
    )
    attachment_store.persist(
        account.id,
        email_id,
        AttachmentPart(filename="quote.pdf", payload=b"%PDF"),
        folder="INBOX",
        uidvalidity=1,
        uid=5,
    )

    detail = repository.get_email(email_id)

    assert detail.has_attachments
    assert [a.filename for a in detail.attachments] == ["quote.pdf"]
    assert detail.attachments[0].status == AttachmentStatus.STORED


def test_counts_per_folder(repository, account, mailbox):
    repository.set_starred(mailbox["archived"], True)

    counts = repository.counts(account.id)

    assert counts.total == 3
    assert counts.unread == 2
    assert counts.starred == 1
    assert counts.by_folder["INBOX"] == {"total": 2, "unread": 1}
    assert counts.as_dict()["by_folder"]["Archive"]["unread"] == 1


def test_thread_listing(repository, account, mailbox):
    page = repository.list_threads(account.id)

    assert page.total == 3
    view = repository.get_thread(page.items[0].id)
    assert len(view.emails) == 1
    assert repository.get_thread(12345) is None


# =============================================================================
# Mutations
# =============================================================================


def test_star_reports_change_only_once(repository, mailbox):
    assert repository.set_starred(mailbox["pricing"], True)
    assert not repository.set_starred(mailbox["pricing"], True)
    assert repository.get_email(mailbox["pricing"]).is_starred


def test_move_changes_visible_folder(repository, account, mailbox):
    assert repository.move(mailbox["pricing"], "Customers")
    assert not repository.move(mailbox["pricing"], "Customers")
    assert repository.list_emails(account.id, folder="Customers").total == 1

    with pytest.raises(ValueError):
        repository.move(mailbox["pricing"], "")


def test_bulk_mark_read_updates_thread_counters(repository, threads, mailbox):
    ids = [mailbox["pricing"], mailbox["contract"], mailbox["archived"]]

    changed = repository.bulk_update(ids, BulkAction.MARK_READ)

    assert changed == 2
    for email_id in ids:
        email = repository.get_email(email_id)
        assert email.is_read
        assert threads.get(email.thread_id).unread_count == 0


def test_bulk_move_requires_folder(repository, mailbox):
    with pytest.raises(ValueError):
        repository.bulk_update([mailbox["pricing"]], "move")

    assert repository.bulk_update([mailbox["pricing"], mailbox["contract"]], "move", folder="Deals") == 2
