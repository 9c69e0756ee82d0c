"""
IMAP email provider implementation.
Supports generic IMAP servers over SSL/TLS or STARTTLS.
"""

import imaplib
import email
import re
import ssl
from email.header import decode_header
from email.utils import parseaddr, parsedate_to_datetime
import logging
import asyncio
from contextlib import contextmanager
from typing import List, Dict, Any, Optional, Tuple
from datetime import datetime, timezone

from ..errors import ProviderError
from .base import EmailProvider, EmailMessage, SearchCriteria, ProviderType, dedupe_messages, make_snippet

logger = logging.getLogger(__name__)

RAW_SEARCH_KEYS = {'ALL', 'FLAGGED', 'UNFLAGGED', 'UNSEEN', 'SEEN', 'ANSWERED', 'UNANSWERED', 'RECENT', 'NEW', 'OLD'}

# Operator -> IMAP SEARCH key taking one string argument
STRING_OPERATORS = {
    'from': 'FROM',
    'to': 'TO',
    'cc': 'CC',
    'subject': 'SUBJECT',
    'body': 'BODY',
}
DATE_OPERATORS = {
    'since': 'SINCE',
    'after': 'SINCE',
    'before': 'BEFORE',
}
FLAG_OPERATORS = {
    'unread': 'UNSEEN',
    'unseen': 'UNSEEN',
    'read': 'SEEN',
    'seen': 'SEEN',
    'starred': 'FLAGGED',
    'flagged': 'FLAGGED',
    'answered': 'ANSWERED',
}

# Month names are fixed by RFC 3501, independent of locale
MONTHS = ('Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec')

TOKEN_RE = re.compile(r'(\w+):(?:"([^"]*)"|(\S+))|"([^"]*)"|(\S+)')
DATE_RE = re.compile(r'^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$')
UID_RE = re.compile(rb'UID (\d+)')
LIST_RE = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delimiter>"(?:[^"\\]|\\.)*"|NIL) (?P<name>.*)$')

URGENT_PROBES = ('FLAGGED', 'ALL', 'UNSEEN')


def _quote(value: str) -> str:
    """Quote a string argument for an IMAP command."""
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def _imap_date(value: str) -> Optional[str]:
    match = DATE_RE.match(value)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        parsed = datetime(year, month, day)
    except ValueError:
        return None
    return f"{parsed.day:02d}-{MONTHS[parsed.month - 1]}-{parsed.year}"


def build_search_criteria(query: str) -> List[str]:
    """
    Translate a mail search query into IMAP SEARCH keys.

    Supports ``from:``, ``to:``, ``cc:``, ``subject:``, ``body:``,
    ``is:unread|read|starred|flagged|answered``, ``since:``/``after:`` and
    ``before:`` with YYYY-MM-DD dates, quoted phrases and bare words (matched
    with TEXT). A query made only of raw IMAP keys such as ``FLAGGED UNSEEN``
    is passed through unchanged.
    """
    query = (query or '').strip()
    if not query:
        return ['ALL']

    words = query.split()
    if all(word in RAW_SEARCH_KEYS for word in words):
        return words

    keys: List[str] = []
    for match in TOKEN_RE.finditer(query):
        operator, op_quoted, op_value, phrase, word = match.groups()
        if operator is not None:
            op = operator.lower()
            value = op_quoted if op_quoted is not None else op_value
            if op in STRING_OPERATORS and value:
                keys.extend([STRING_OPERATORS[op], _quote(value)])
                continue
            if op in DATE_OPERATORS:
                date_value = _imap_date(value or '')
                if date_value:
                    keys.extend([DATE_OPERATORS[op], date_value])
                    continue
            if op == 'is' and (value or '').lower() in FLAG_OPERATORS:
                keys.append(FLAG_OPERATORS[value.lower()])
                continue
            # Unknown operator: search the whole token as text
            keys.extend(['TEXT', _quote(match.group(0).replace('"', ''))])
        elif phrase is not None:
            if phrase:
                keys.extend(['TEXT', _quote(phrase)])
        elif word:
            keys.extend(['TEXT', _quote(word)])

    return keys or ['ALL']


def parse_mailbox_list(lines: List[Any]) -> List[str]:
    """Extract selectable mailbox names from a LIST response."""
    names = []
    for item in lines:
        if item is None:
            continue
        literal_name = None
        if isinstance(item, tuple):
            # Name delivered as a literal: (b'(\\HasNoChildren) "/" {5}', b'INBOX')
            item, literal_name = item[0], item[1]
        match = LIST_RE.match(item)
        if not match:
            continue
        flags = match.group('flags').decode(errors='replace').lower()
        if '\\noselect' in flags or '\\nonexistent' in flags:
            continue
        if literal_name is not None:
            name = literal_name.decode(errors='replace')
        else:
            name = match.group('name').decode(errors='replace').strip()
            if name.startswith('"') and name.endswith('"'):
                name = name[1:-1].replace('\\"', '"').replace('\\\\', '\\')
        if name:
            names.append(name)
    return names


def parse_fetch_response(data: List[Any]) -> Dict[bytes, Tuple[Tuple[bytes, ...], bytes]]:
    """Map UID -> (flags, raw message) from a UID FETCH (FLAGS BODY.PEEK[]) response."""
    messages: Dict[bytes, Tuple[Tuple[bytes, ...], bytes]] = {}
    last_uid = None
    for item in data:
        if isinstance(item, tuple):
            header, raw = item[0], item[1]
            uid_match = UID_RE.search(header)
            if not uid_match:
                last_uid = None
                continue
            last_uid = uid_match.group(1)
            messages[last_uid] = (imaplib.ParseFlags(header), raw)
        elif isinstance(item, bytes) and last_uid is not None and b'FLAGS' in item:
            # Some servers send FLAGS after the message literal
            flags, raw = messages[last_uid]
            trailing = imaplib.ParseFlags(item)
            messages[last_uid] = (flags or trailing, raw)
    return messages


class IMAPProvider(EmailProvider):
    """
    IMAP email provider for generic email servers.

    One connection per logical call: connect, login, work, logout. Mailboxes
    are always selected read-only and bodies fetched with BODY.PEEK so a search
    never marks mail as read.
    """

    def __init__(
        self,
        account_id: int,
        credentials: Dict[str, Any],
        default_mailbox: str = "INBOX",
        connect_timeout: float = 20.0
    ):
        """
        Initialize IMAP provider.

        Credential keys:
            host: IMAP server hostname
            port: IMAP port (993 for SSL)
            username: Login name
            password: Login password
            tls: Use implicit TLS (default True); False upgrades with STARTTLS
        """
        super().__init__(account_id, credentials, default_mailbox)
        self.host = credentials.get('host')
        self.port = int(credentials.get('port', 993))
        self.username = credentials.get('username')
        self.password = credentials.get('password')
        self.use_tls = credentials.get('tls', True)
        self.connect_timeout = connect_timeout

    @classmethod
    def from_account(cls, account, credentials: Dict[str, Any], settings=None) -> "IMAPProvider":
        timeout = getattr(settings, 'imap_connect_timeout', 20.0)
        return cls(account.id, credentials, account.default_mailbox, connect_timeout=timeout)

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    def _error(self, cause: str) -> ProviderError:
        return ProviderError(self.provider_type.value, cause, self.account_id)

    # ==================== Connection ====================

    def _connect(self) -> imaplib.IMAP4:
        """Open and authenticate a connection (blocking)."""
        if self.use_tls:
            conn = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.connect_timeout)
        else:
            conn = imaplib.IMAP4(self.host, self.port, timeout=self.connect_timeout)
            try:
                conn.starttls(ssl_context=ssl.create_default_context())
            except (imaplib.IMAP4.error, ssl.SSLError) as e:
                conn.shutdown()
                raise self._error(f"STARTTLS failed, refusing to send credentials in clear: {e}") from e

        try:
            conn.login(self.username, self.password)
        except BaseException:
            conn.shutdown()
            raise
        return conn

    @contextmanager
    def _session(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"IMAP logout from {self.host} failed: {e}")

    async def _run(self, func, *args):
        """Run a blocking IMAP routine in the thread pool, normalizing errors."""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except ProviderError:
            raise
        except (imaplib.IMAP4.error, OSError) as e:
            raise self._error(str(e) or e.__class__.__name__) from e

    # ==================== Parsing ====================

    def _decode_header_value(self, value: str) -> str:
        """Decode email header value."""
        if not value:
            return ""
        decoded_parts = decode_header(value)
        result = []
        for content, charset in decoded_parts:
            if isinstance(content, bytes):
                try:
                    result.append(content.decode(charset or 'utf-8', errors='replace'))
                except (LookupError, UnicodeDecodeError):
                    result.append(content.decode('utf-8', errors='replace'))
            else:
                result.append(content)
        return ''.join(result)

    def _parse_address_list(self, header_value: str) -> List[str]:
        """Parse multiple email addresses from header."""
        if not header_value:
            return []
        addresses = []
        for addr in header_value.split(','):
            _, email_addr = parseaddr(addr.strip())
            if email_addr:
                addresses.append(email_addr)
        return addresses

    def _get_preview(self, msg: email.message.Message) -> str:
        """Plain-text preview, falling back to stripped HTML."""
        body_text = ""
        body_html = ""
        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart():
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            try:
                payload = part.get_payload(decode=True)
                if not payload:
                    continue
                charset = part.get_content_charset() or 'utf-8'
                try:
                    text = payload.decode(charset, errors='replace')
                except LookupError:
                    text = payload.decode('utf-8', errors='replace')
            except (ValueError, TypeError) as e:
                logger.warning(f"Error decoding email part: {e}")
                continue
            if content_type == "text/plain" and not body_text:
                body_text = text
            elif content_type == "text/html" and not body_html:
                body_html = text

        if body_text:
            return make_snippet(body_text)
        return make_snippet(re.sub(r'<[^>]+>', ' ', body_html))

    def _has_attachments(self, msg: email.message.Message) -> bool:
        if not msg.is_multipart():
            return False
        for part in msg.walk():
            if part.is_multipart():
                continue
            if "attachment" in str(part.get("Content-Disposition", "")) or part.get_filename():
                return True
        return False

    def _parse_message(
        self,
        raw: bytes,
        uid: bytes,
        flags: Tuple[bytes, ...],
        mailbox: str
    ) -> Optional[EmailMessage]:
        """Parse raw RFC 822 data and FLAGS into an EmailMessage."""
        try:
            msg = email.message_from_bytes(raw)

            message_id = (msg.get('Message-ID') or '').strip().strip('<>')
            if not message_id:
                message_id = f"{mailbox}/{uid.decode()}"

            received_at = datetime.now(timezone.utc)
            date_str = msg.get('Date')
            if date_str:
                try:
                    received_at = parsedate_to_datetime(date_str)
                except (TypeError, ValueError):
                    pass

            flag_names = [f.decode(errors='replace') for f in flags]
            return EmailMessage(
                message_id=message_id,
                subject=self._decode_header_value(msg.get('Subject', '')),
                sender=self._decode_header_value(msg.get('From', '')),
                recipients=self._parse_address_list(msg.get('To', '')),
                snippet=self._get_preview(msg),
                received_at=received_at,
                is_read='\\Seen' in flag_names,
                has_attachments=self._has_attachments(msg),
                labels=[f.lstrip('\\').upper() for f in flag_names],
                mailbox=mailbox,
            )
        except Exception as e:
            logger.warning(f"Error parsing IMAP message {uid!r} in {mailbox}: {e}")
            return None

    # ==================== Blocking operations ====================

    def _select(self, conn: imaplib.IMAP4, mailbox: str) -> None:
        name = mailbox if re.fullmatch(r'[\w.\-/]+', mailbox) else _quote(mailbox)
        status, data = conn.select(name, readonly=True)
        if status != 'OK':
            detail = data[0].decode(errors='replace') if data and data[0] else status
            raise self._error(f"cannot select mailbox {mailbox}: {detail}")

    def _uid_search(self, conn: imaplib.IMAP4, keys: List[str]) -> List[bytes]:
        args = list(keys)
        if any(not k.isascii() for k in args):
            args = ['CHARSET', 'UTF-8'] + [k.encode('utf-8') for k in args]
        status, data = conn.uid('SEARCH', *args)
        if status != 'OK':
            raise self._error(f"SEARCH failed: {data!r}")
        return data[0].split() if data and data[0] else []

    def _fetch(self, conn: imaplib.IMAP4, uids: List[bytes], mailbox: str) -> List[EmailMessage]:
        if not uids:
            return []
        status, data = conn.uid('FETCH', b','.join(uids).decode(), '(UID FLAGS BODY.PEEK[])')
        if status != 'OK':
            raise self._error(f"FETCH failed: {data!r}")

        fetched = parse_fetch_response(data)
        messages = []
        for uid in uids:
            if uid not in fetched:
                continue
            flags, raw = fetched[uid]
            parsed = self._parse_message(raw, uid, flags, mailbox)
            if parsed:
                messages.append(parsed)
        return messages

    def _search_mailbox(self, conn: imaplib.IMAP4, mailbox: str, keys: List[str], limit: int) -> List[EmailMessage]:
        self._select(conn, mailbox)
        uids = self._uid_search(conn, keys)
        # Highest UIDs are the most recently delivered
        newest = sorted(uids, key=int, reverse=True)[:limit]
        return self._fetch(conn, newest, mailbox)

    def _search_sync(self, criteria: SearchCriteria) -> List[EmailMessage]:
        mailbox = criteria.mailbox or self.default_mailbox
        keys = build_search_criteria(criteria.query)
        with self._session() as conn:
            messages = self._search_mailbox(conn, mailbox, keys, criteria.max_results)
        return dedupe_messages(messages, criteria.max_results)

    def _fetch_urgent_sync(self, limit: int) -> List[EmailMessage]:
        collected: List[EmailMessage] = []
        failures = []
        with self._session() as conn:
            for probe in URGENT_PROBES:
                try:
                    collected.extend(self._search_mailbox(conn, 'INBOX', [probe], limit))
                except (ProviderError, imaplib.IMAP4.error) as e:
                    logger.warning(f"IMAP probe {probe} failed for {self.host}: {e}")
                    failures.append(str(e))
        if len(failures) == len(URGENT_PROBES):
            raise self._error(f"all urgent probes failed: {failures[-1]}")
        return dedupe_messages(collected, limit)

    def _list_mailboxes_sync(self) -> List[str]:
        with self._session() as conn:
            status, data = conn.list('""', '*')
            if status != 'OK':
                raise self._error(f"LIST failed: {data!r}")
            return parse_mailbox_list(data)

    def _noop_sync(self) -> bool:
        with self._session() as conn:
            status, _ = conn.noop()
            return status == 'OK'

    # ==================== Capability ====================

    async def search(self, criteria: SearchCriteria) -> List[EmailMessage]:
        """Search a mailbox (the account default when none is given)."""
        return await self._run(self._search_sync, criteria)

    async def fetch_urgent(self, limit: int) -> List[EmailMessage]:
        """Probe INBOX for flagged, recent and unseen mail."""
        return await self._run(self._fetch_urgent_sync, limit)

    async def list_mailboxes(self) -> List[str]:
        """Get all selectable IMAP folders."""
        return await self._run(self._list_mailboxes_sync)

    async def validate_connection(self) -> bool:
        """Test IMAP login and NOOP."""
        try:
            return await self._run(self._noop_sync)
        except Exception as e:
            logger.info(f"IMAP connection check failed for {self.host}: {e}")
            return False
