"""Tests for the SQLite account store and classification cache."""

from __future__ import annotations

import sqlite3

import pytest

from mailhub.email.storage import EmailStorage


def add(storage: EmailStorage, name: str = "Work", email: str = "work@example.com", provider: str = "imap") -> int:
    return storage.insert_account(name, email, provider, "opaque-token")


def classification(urgency: float = 0.5, importance: float = 0.2) -> dict:
    return {
        "urgency_score": urgency,
        "importance_score": importance,
        "is_urgent": urgency >= 0.3,
        "is_important": importance >= 0.3,
        "reasons": ["Email is unread"],
    }


def message(message_id: str = "m1", subject: str = "Hi") -> dict:
    return {
        "message_id": message_id,
        "subject": subject,
        "sender": "alice@example.com",
        "recipients": ["bob@example.com"],
        "snippet": "preview",
        "received_at": "2024-06-01T10:00:00+00:00",
        "is_read": False,
        "has_attachments": True,
        "labels": ["FLAGGED"],
        "mailbox": "INBOX",
    }


def test_schema_is_created(storage: EmailStorage) -> None:
    """Both tables exist after initialization."""
    with sqlite3.connect(storage.db_path) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"email_accounts", "email_search_results"} <= tables


def test_account_name_is_unique(storage: EmailStorage) -> None:
    """The unique constraint rejects a second account with the same name."""
    add(storage)
    with pytest.raises(sqlite3.IntegrityError):
        add(storage, email="other@example.com")


def test_insert_and_read_account(storage: EmailStorage) -> None:
    account_id = storage.insert_account(
        "Work", "work@example.com", "imap", "opaque-token",
        default_mailbox="Archive", custom_urgent_keywords=["asap"],
    )
    row = storage.get_account(account_id)
    assert row["account_name"] == "Work"
    assert row["is_active"] is True
    assert row["default_mailbox"] == "Archive"
    assert row["custom_urgent_keywords"] == ["asap"]
    assert row["custom_important_keywords"] == []
    assert storage.get_account_by_name("Work")["id"] == account_id
    assert storage.get_account(9999) is None


def test_accounts_listed_newest_first(storage: EmailStorage) -> None:
    first = add(storage, "A", "a@example.com")
    second = add(storage, "B", "b@example.com")
    assert [row["id"] for row in storage.get_all_accounts()] == [second, first]


def test_get_account_by_email_skips_inactive(storage: EmailStorage) -> None:
    account_id = add(storage)
    storage.update_account(account_id, is_active=False)
    assert storage.get_account_by_email("work@example.com") is None
    assert storage.get_account_by_email("work@example.com", active_only=False)["id"] == account_id


def test_update_account_touches_updated_at(storage: EmailStorage) -> None:
    account_id = add(storage)
    before = storage.get_account(account_id)
    assert storage.update_account(account_id, default_mailbox="Work", unknown_column="x")
    after = storage.get_account(account_id)
    assert after["default_mailbox"] == "Work"
    assert after["updated_at"] >= before["updated_at"]
    assert after["created_at"] == before["created_at"]


def test_update_sync_status(storage: EmailStorage) -> None:
    account_id = add(storage)
    storage.update_sync_status(account_id, "connection refused")
    row = storage.get_account(account_id)
    assert row["sync_error"] == "connection refused"
    assert row["last_sync_at"] is not None

    storage.update_sync_status(account_id, None)
    assert storage.get_account(account_id)["sync_error"] is None


def test_upsert_overwrites_in_place(storage: EmailStorage) -> None:
    """A (account, message) pair has at most one cached row."""
    account_id = add(storage)
    storage.upsert_result(account_id, message(subject="First"), classification(0.1, 0.1), "q1")
    storage.upsert_result(account_id, message(subject="Second"), classification(0.9, 0.4), "q2")

    assert storage.count_cached_results(account_id) == 1
    row = storage.get_cached_result(account_id, "m1")
    assert row["subject"] == "Second"
    assert row["urgency_score"] == pytest.approx(0.9)
    assert row["is_urgent"] is True
    assert row["search_query"] == "q2"
    assert row["reasons"] == ["Email is unread"]
    assert row["recipients"] == ["bob@example.com"]
    assert row["labels"] == ["FLAGGED"]


def test_same_message_id_in_two_accounts(storage: EmailStorage) -> None:
    first = add(storage, "A", "a@example.com")
    second = add(storage, "B", "b@example.com")
    storage.upsert_result(first, message(), classification())
    storage.upsert_result(second, message(), classification())
    assert storage.count_cached_results() == 2


def test_delete_account_cascades(storage: EmailStorage) -> None:
    """Removing an account removes its cached classifications."""
    account_id = add(storage)
    other = add(storage, "Other", "other@example.com")
    storage.upsert_result(account_id, message("m1"), classification())
    storage.upsert_result(account_id, message("m2"), classification())
    storage.upsert_result(other, message("m1"), classification())

    assert storage.delete_account(account_id) is True
    assert storage.count_cached_results(account_id) == 0
    assert storage.count_cached_results(other) == 1
    assert storage.delete_account(account_id) is False


def test_list_cached_results_filters_and_ranks(storage: EmailStorage) -> None:
    account_id = add(storage)
    storage.upsert_result(account_id, message("low"), classification(0.1, 0.1))
    storage.upsert_result(account_id, message("high"), classification(0.9, 0.1))
    storage.upsert_result(account_id, message("mid"), classification(0.1, 0.9))

    ranked = storage.list_cached_results()
    assert [row["message_id"] for row in ranked] == ["high", "mid", "low"]

    urgent = storage.list_cached_results(urgent_only=True)
    assert [row["message_id"] for row in urgent] == ["high"]

    important = storage.list_cached_results(account_id=account_id, important_only=True, limit=5)
    assert [row["message_id"] for row in important] == ["mid"]
