"""
Gmail email provider implementation.
Uses Google Gmail API for email access.
"""
from __future__ import annotations

import asyncio
import base64
import html
import logging
import threading
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httplib2
from google.oauth2.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import ProviderError
from .base import EmailProvider, EmailMessage, SearchCriteria, ProviderType, dedupe_messages, make_snippet

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URI = 'https://oauth2.googleapis.com/token'

# Gmail caps messages.list pages at 500 ids
LIST_PAGE_SIZE = 500

URGENT_QUERIES = (
    'is:important',
    'label:important',
    'is:starred',
    'has:red-star',
    'in:inbox newer_than:1d',
)


class GmailProvider(EmailProvider):
    """
    Gmail email provider using Google API.

    Authenticates from the stored OAuth tokens. An expired access token is
    refreshed in memory with the refresh token; nothing is written back.
    """

    SCOPES = ['https://www.googleapis.com/auth/gmail.readonly']

    def __init__(
        self,
        account_id: int,
        credentials: Dict[str, Any],
        default_mailbox: str = "INBOX",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_uri: str = DEFAULT_TOKEN_URI
    ):
        """
        Initialize Gmail provider.

        Credential keys:
            access_token: OAuth2 access token
            refresh_token: OAuth2 refresh token
            expires_at: Access token expiry (epoch seconds, optional)
            client_id / client_secret: Override the application OAuth client
        """
        super().__init__(account_id, credentials, default_mailbox)
        self.client_id = credentials.get('client_id') or client_id
        self.client_secret = credentials.get('client_secret') or client_secret
        self.token_uri = token_uri or DEFAULT_TOKEN_URI
        self._service = None
        self._credentials = None
        # googleapiclient services are not thread safe
        self._lock = threading.Lock()

    @classmethod
    def from_account(cls, account, credentials: Dict[str, Any], settings=None) -> "GmailProvider":
        return cls(
            account.id,
            credentials,
            account.default_mailbox,
            client_id=getattr(settings, 'gmail_client_id', None),
            client_secret=getattr(settings, 'gmail_client_secret', None),
            token_uri=getattr(settings, 'gmail_token_uri', DEFAULT_TOKEN_URI),
        )

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    def _error(self, cause: str) -> ProviderError:
        return ProviderError(self.provider_type.value, cause, self.account_id)

    def _get_credentials(self) -> Credentials:
        """Build OAuth2 credentials, refreshing the access token if needed."""
        expiry = None
        expires_at = self.credentials.get('expires_at')
        if expires_at:
            # google-auth compares against naive UTC
            expiry = datetime.fromtimestamp(float(expires_at), tz=timezone.utc).replace(tzinfo=None)

        creds = Credentials(
            token=self.credentials.get('access_token'),
            refresh_token=self.credentials.get('refresh_token'),
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.SCOPES,
            expiry=expiry,
        )
        if not creds.valid:
            if not creds.refresh_token:
                raise self._error("access token expired and no refresh token stored")
            creds.refresh(Request())
            logger.debug(f"Refreshed Gmail access token for account {self.account_id}")
        return creds

    def _get_service(self):
        """Get or create Gmail API service."""
        if self._service is None:
            self._credentials = self._get_credentials()
            self._service = build('gmail', 'v1', credentials=self._credentials, cache_discovery=False)
        return self._service

    async def _run(self, func, *args):
        """Run a blocking API routine in the thread pool, normalizing errors."""
        def locked():
            with self._lock:
                return func(*args)

        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, locked)
        except ProviderError:
            raise
        except HttpError as e:
            raise self._error(f"HTTP {e.resp.status}: {e.reason}") from e
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
            raise self._error(str(e) or e.__class__.__name__) from e

    # ==================== Parsing ====================

    def _decode_base64(self, data: str) -> str:
        """Decode base64url encoded data."""
        try:
            # Add padding if needed
            padding = 4 - len(data) % 4
            if padding != 4:
                data += '=' * padding
            return base64.urlsafe_b64decode(data).decode('utf-8', errors='replace')
        except (ValueError, TypeError):
            return ""

    def _get_header(self, headers: List[Dict], name: str) -> str:
        """Get header value by name."""
        for header in headers:
            if header.get('name', '').lower() == name.lower():
                return header.get('value', '')
        return ""

    def _extract_text(self, part: Dict[str, Any]) -> str:
        """First text/plain body found in the MIME tree."""
        if part.get('mimeType') == 'text/plain':
            data = part.get('body', {}).get('data', '')
            if data:
                return self._decode_base64(data)
        for subpart in part.get('parts', []) or []:
            text = self._extract_text(subpart)
            if text:
                return text
        return ""

    def _has_attachments(self, part: Dict[str, Any]) -> bool:
        if part.get('filename'):
            return True
        return any(self._has_attachments(sub) for sub in part.get('parts', []) or [])

    def _parse_email(self, msg: Dict[str, Any]) -> EmailMessage:
        """Parse Gmail API message to EmailMessage."""
        payload = msg.get('payload', {})
        headers = payload.get('headers', [])

        # Parse to addresses
        to_header = self._get_header(headers, 'To')
        to_addresses = []
        if to_header:
            for addr in to_header.split(','):
                addr = addr.strip()
                if '<' in addr:
                    addr = addr.split('<')[1].split('>')[0]
                if addr:
                    to_addresses.append(addr)

        # internalDate is the delivery time in epoch milliseconds
        received_at = None
        internal_date = msg.get('internalDate')
        if internal_date:
            received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        else:
            date_header = self._get_header(headers, 'Date')
            if date_header:
                try:
                    received_at = parsedate_to_datetime(date_header)
                except (TypeError, ValueError):
                    pass
        if received_at is None:
            received_at = datetime.now(timezone.utc)

        snippet = html.unescape(msg.get('snippet', '')) or make_snippet(self._extract_text(payload))

        # Check labels for read status
        labels = msg.get('labelIds', []) or []

        return EmailMessage(
            message_id=msg.get('id', ''),
            subject=self._get_header(headers, 'Subject'),
            sender=self._get_header(headers, 'From'),
            recipients=to_addresses,
            snippet=snippet,
            received_at=received_at,
            is_read='UNREAD' not in labels,
            has_attachments=self._has_attachments(payload),
            labels=list(labels),
        )

    # ==================== Blocking operations ====================

    def _build_query(self, query: str, mailbox: Optional[str]) -> str:
        if not mailbox:
            return query
        scope = 'in:inbox' if mailbox.upper() == 'INBOX' else f'label:"{mailbox}"'
        return f"{scope} {query}".strip()

    def _search_sync(self, query: str, max_results: int) -> List[EmailMessage]:
        service = self._get_service()

        refs: List[Dict[str, Any]] = []
        page_token = None
        while len(refs) < max_results:
            params = {'userId': 'me', 'q': query, 'maxResults': min(max_results - len(refs), LIST_PAGE_SIZE)}
            if page_token:
                params['pageToken'] = page_token
            results = service.users().messages().list(**params).execute()
            refs.extend(results.get('messages', []))
            page_token = results.get('nextPageToken')
            if not page_token:
                break

        emails = []
        for msg_ref in refs[:max_results]:
            try:
                # Get full message
                msg = service.users().messages().get(
                    userId='me',
                    id=msg_ref['id'],
                    format='full'
                ).execute()
                emails.append(self._parse_email(msg))
            except HttpError as e:
                logger.warning(f"Error fetching Gmail message {msg_ref['id']}: {e}")

        return emails

    def _fetch_urgent_sync(self, limit: int) -> List[EmailMessage]:
        collected: List[EmailMessage] = []
        failures = []
        for query in URGENT_QUERIES:
            try:
                collected.extend(self._search_sync(query, limit))
            except HttpError as e:
                logger.warning(f"Gmail urgent query '{query}' failed for account {self.account_id}: {e}")
                failures.append(e)
        if len(failures) == len(URGENT_QUERIES):
            raise failures[-1]
        return dedupe_messages(collected, limit)

    def _list_labels_sync(self) -> List[str]:
        service = self._get_service()
        results = service.users().labels().list(userId='me').execute()
        return [label['name'] for label in results.get('labels', []) if label.get('name')]

    def _profile_sync(self) -> Dict[str, Any]:
        return self._get_service().users().getProfile(userId='me').execute()

    # ==================== Capability ====================

    async def search(self, criteria: SearchCriteria) -> List[EmailMessage]:
        """Search with Gmail query syntax, optionally scoped to a label."""
        query = self._build_query(criteria.query, criteria.mailbox)
        messages = await self._run(self._search_sync, query, criteria.max_results)
        for msg in messages:
            msg.mailbox = criteria.mailbox
        return dedupe_messages(messages, criteria.max_results)

    async def fetch_urgent(self, limit: int) -> List[EmailMessage]:
        """Run Gmail's priority queries and merge the results."""
        return await self._run(self._fetch_urgent_sync, limit)

    async def list_mailboxes(self) -> List[str]:
        """Get all Gmail label names."""
        return await self._run(self._list_labels_sync)

    async def validate_connection(self) -> bool:
        """Test connection to Gmail API."""
        try:
            profile = await self._run(self._profile_sync)
            logger.info(f"Gmail connected as {profile.get('emailAddress', 'unknown')}")
            return True
        except Exception as e:
            logger.info(f"Gmail connection check failed for account {self.account_id}: {e}")
            return False
