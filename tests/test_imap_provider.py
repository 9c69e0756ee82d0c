"""Tests for the IMAP provider client."""

from __future__ import annotations

import imaplib
import re
from email.message import EmailMessage as MimeMessage
from typing import Any, Dict, List, Tuple

import pytest

from mailhub.email.errors import ProviderError
from mailhub.email.providers import imap as imap_module
from mailhub.email.providers.base import SearchCriteria
from mailhub.email.providers.imap import (
    IMAPProvider,
    build_search_criteria,
    parse_fetch_response,
    parse_mailbox_list,
)


def raw_message(message_id: str, subject: str, body: str = "Hello there", attachment: bool = False) -> bytes:
    msg = MimeMessage()
    msg["Message-ID"] = f"<{message_id}@example.com>"
    msg["Subject"] = subject
    msg["From"] = "Alice <alice@example.com>"
    msg["To"] = "bob@example.com, carol@example.com"
    msg["Date"] = "Mon, 03 Jun 2024 09:30:00 +0200"
    msg.set_content(body)
    if attachment:
        msg.add_attachment(b"data", maintype="application", subtype="pdf", filename="invoice.pdf")
    return msg.as_bytes()


class DummyIMAP:
    """In-memory IMAP server double recording the commands it receives."""

    error = imaplib.IMAP4.error
    abort = imaplib.IMAP4.abort

    mailbox: Dict[bytes, Tuple[bytes, bytes]] = {}
    instances: List["DummyIMAP"] = []
    fail_login = False
    fail_starttls = False

    def __init__(self, host: str, port: int, timeout: float = None) -> None:
        self.host = host
        self.port = port
        self.calls: List[Any] = []
        type(self).instances.append(self)

    def starttls(self, ssl_context=None):
        self.calls.append("starttls")
        if self.fail_starttls:
            raise imaplib.IMAP4.error("STARTTLS not supported")
        return "OK", [b"Begin TLS"]

    def login(self, user: str, password: str):
        self.calls.append("login")
        if self.fail_login:
            raise imaplib.IMAP4.error("AUTHENTICATIONFAILED")
        return "OK", [b"Logged in"]

    def select(self, mailbox: str, readonly: bool = False):
        self.calls.append(("select", mailbox, readonly))
        return "OK", [str(len(self.mailbox)).encode()]

    def uid(self, command: str, *args: Any):
        self.calls.append(("uid", command) + args)
        if command == "SEARCH":
            if args == ("FLAGGED",):
                uids = [u for u, (flags, _) in self.mailbox.items() if b"\\Flagged" in flags]
            elif args == ("UNSEEN",):
                uids = [u for u, (flags, _) in self.mailbox.items() if b"\\Seen" not in flags]
            else:
                uids = list(self.mailbox)
            return "OK", [b" ".join(uids)]
        if command == "FETCH":
            data: List[Any] = []
            for uid in args[0].encode().split(b","):
                flags, raw = self.mailbox[uid]
                header = b"1 (UID " + uid + b" FLAGS (" + flags + b") BODY[] {" + str(len(raw)).encode() + b"}"
                data.extend([(header, raw), b")"])
            return "OK", data
        raise AssertionError(command)

    def list(self, directory: str = '""', pattern: str = "*"):
        return "OK", [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
            b'(\\HasNoChildren) "/" "Work Projects"',
            b'(\\HasNoChildren) "." Archive',
        ]

    def noop(self):
        return "OK", [b"NOOP completed"]

    def logout(self):
        self.calls.append("logout")
        return "BYE", [b""]

    def shutdown(self):
        self.calls.append("shutdown")


@pytest.fixture
def dummy_imap(monkeypatch: pytest.MonkeyPatch):
    """Replace imaplib's connection classes with the in-memory double."""
    server = type("Server", (DummyIMAP,), {
        "mailbox": {
            b"1": (b"\\Seen", raw_message("one", "Old news")),
            b"2": (b"\\Flagged", raw_message("two", "Flagged item", attachment=True)),
            b"3": (b"", raw_message("three", "Café meeting")),
        },
        "instances": [],
    })
    monkeypatch.setattr(imap_module.imaplib, "IMAP4_SSL", server)
    monkeypatch.setattr(imap_module.imaplib, "IMAP4", server)
    return server


def provider(**overrides: Any) -> IMAPProvider:
    creds = {"host": "imap.example.com", "port": 993, "username": "bob", "password": "pw", "tls": True}
    creds.update(overrides)
    return IMAPProvider(7, creds)


def test_query_translation() -> None:
    assert build_search_criteria("") == ["ALL"]
    assert build_search_criteria("FLAGGED UNSEEN") == ["FLAGGED", "UNSEEN"]
    assert build_search_criteria("from:john@example.com") == ["FROM", '"john@example.com"']
    assert build_search_criteria('subject:"quarterly report" is:unread') == ["SUBJECT", '"quarterly report"', "UNSEEN"]
    assert build_search_criteria("is:starred since:2024-01-05") == ["FLAGGED", "SINCE", "05-Jan-2024"]
    assert build_search_criteria("before:2024/12/31") == ["BEFORE", "31-Dec-2024"]
    assert build_search_criteria('deadline "next week"') == ["TEXT", '"deadline"', "TEXT", '"next week"']


def test_query_translation_falls_back_to_text() -> None:
    """Unknown operators and bad dates are searched as plain text."""
    assert build_search_criteria("label:work") == ["TEXT", '"label:work"']
    assert build_search_criteria("since:yesterday") == ["TEXT", '"since:yesterday"']


def test_parse_mailbox_list_skips_noselect() -> None:
    lines = DummyIMAP.list(None)[1] + [(b'(\\HasNoChildren) "/" {5}', b"Sent!")]
    assert parse_mailbox_list(lines) == ["INBOX", "Work Projects", "Archive", "Sent!"]


def test_parse_fetch_response_with_trailing_flags() -> None:
    data = [(b"1 (UID 9 BODY[] {3}", b"abc"), b" FLAGS (\\Seen))"]
    assert parse_fetch_response(data) == {b"9": ((b"\\Seen",), b"abc")}


@pytest.mark.asyncio
async def test_search_returns_newest_first(dummy_imap) -> None:
    client = provider()
    messages = await client.search(SearchCriteria("", max_results=2))

    assert [m.message_id for m in messages] == ["three@example.com", "two@example.com"]
    three, two = messages
    assert three.subject == "Café meeting"
    assert three.is_read is False
    assert three.sender == "Alice <alice@example.com>"
    assert three.recipients == ["bob@example.com", "carol@example.com"]
    assert three.snippet == "Hello there"
    assert three.mailbox == "INBOX"
    assert three.received_at.utcoffset().total_seconds() == 0
    assert three.received_at.hour == 7
    assert two.labels == ["FLAGGED"]
    assert two.has_attachments is True

    conn = dummy_imap.instances[-1]
    assert ("select", "INBOX", True) in conn.calls
    fetch = [c for c in conn.calls if c[:2] == ("uid", "FETCH")][0]
    assert "BODY.PEEK[]" in fetch[-1]
    assert conn.calls[-1] == "logout"


@pytest.mark.asyncio
async def test_search_translates_query(dummy_imap) -> None:
    await provider().search(SearchCriteria("from:alice@example.com", max_results=5, mailbox="Archive"))
    conn = dummy_imap.instances[-1]
    assert ("select", "Archive", True) in conn.calls
    assert ("uid", "SEARCH", "FROM", '"alice@example.com"') in conn.calls


@pytest.mark.asyncio
async def test_starttls_before_login(dummy_imap) -> None:
    await provider(tls=False, port=143).validate_connection()
    calls = dummy_imap.instances[-1].calls
    assert calls.index("starttls") < calls.index("login")


@pytest.mark.asyncio
async def test_starttls_refusal_never_sends_credentials(dummy_imap) -> None:
    dummy_imap.fail_starttls = True
    with pytest.raises(ProviderError, match="STARTTLS"):
        await provider(tls=False).search(SearchCriteria("x"))
    assert "login" not in dummy_imap.instances[-1].calls


@pytest.mark.asyncio
async def test_login_failure_is_provider_error(dummy_imap) -> None:
    dummy_imap.fail_login = True
    with pytest.raises(ProviderError) as exc:
        await provider().search(SearchCriteria("x"))
    assert exc.value.provider == "imap"
    assert exc.value.account_id == 7
    assert "AUTHENTICATIONFAILED" in exc.value.cause


@pytest.mark.asyncio
async def test_failed_login_closes_socket(dummy_imap) -> None:
    dummy_imap.fail_login = True
    with pytest.raises(ProviderError):
        await provider().list_mailboxes()
    assert dummy_imap.instances[-1].calls == ["login", "shutdown"]


@pytest.mark.asyncio
async def test_validate_connection(dummy_imap) -> None:
    assert await provider().validate_connection() is True
    dummy_imap.fail_login = True
    assert await provider().validate_connection() is False


@pytest.mark.asyncio
async def test_fetch_urgent_probes_inbox(dummy_imap) -> None:
    messages = await provider().fetch_urgent(limit=2)

    assert len(messages) == 2
    assert len({m.message_id for m in messages}) == 2
    searches = [c[2:] for c in dummy_imap.instances[-1].calls if c[:2] == ("uid", "SEARCH")]
    assert searches == [("FLAGGED",), ("ALL",), ("UNSEEN",)]
    fetches = [c[2] for c in dummy_imap.instances[-1].calls if c[:2] == ("uid", "FETCH")]
    assert fetches and all(len(uids.split(",")) <= 2 for uids in fetches)
    assert len(dummy_imap.instances) == 1


@pytest.mark.asyncio
async def test_list_mailboxes(dummy_imap) -> None:
    assert await provider().list_mailboxes() == ["INBOX", "Work Projects", "Archive"]


@pytest.mark.asyncio
async def test_message_without_message_id_gets_mailbox_uid(dummy_imap) -> None:
    raw = re.sub(rb"Message-ID: <[^>]+>\r?\n", b"", raw_message("x", "No id"))
    dummy_imap.mailbox = {b"42": (b"\\Seen", raw)}
    messages = await provider().search(SearchCriteria("", max_results=1))
    assert messages[0].message_id == "INBOX/42"
