"""
Abstract base class for email providers.
Defines the capability every provider client must implement so the search
orchestrator can treat Gmail, IMAP and future providers uniformly.
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

SNIPPET_LENGTH = 200


class ProviderType(str, Enum):
    """Supported email provider types."""
    GMAIL = "gmail"
    IMAP = "imap"


@dataclass
class SearchCriteria:
    """A single provider-level search request."""
    query: str
    max_results: int = 50
    mailbox: Optional[str] = None


@dataclass
class EmailMessage:
    """Standardized email message structure across all providers."""
    message_id: str
    subject: str
    sender: str
    received_at: datetime

    # Optional fields
    recipients: List[str] = field(default_factory=list)
    snippet: str = ""
    is_read: bool = False
    has_attachments: bool = False
    labels: List[str] = field(default_factory=list)
    mailbox: Optional[str] = None

    def __post_init__(self):
        # Classification compares against an aware "now"
        if self.received_at.tzinfo is None:
            self.received_at = self.received_at.replace(tzinfo=timezone.utc)
        else:
            self.received_at = self.received_at.astimezone(timezone.utc)
        self.snippet = make_snippet(self.snippet)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and display."""
        return {
            'message_id': self.message_id,
            'subject': self.subject,
            'sender': self.sender,
            'recipients': list(self.recipients),
            'snippet': self.snippet,
            'received_at': self.received_at.isoformat(),
            'is_read': self.is_read,
            'has_attachments': self.has_attachments,
            'labels': list(self.labels),
            'mailbox': self.mailbox,
        }


def make_snippet(text: Optional[str]) -> str:
    """Collapse whitespace and bound a preview to SNIPPET_LENGTH characters."""
    if not text:
        return ""
    return ' '.join(text.split())[:SNIPPET_LENGTH]


def dedupe_messages(messages: List[EmailMessage], limit: Optional[int] = None) -> List[EmailMessage]:
    """Drop repeated message ids, keeping the first occurrence."""
    seen = set()
    unique = []
    for msg in messages:
        if msg.message_id in seen:
            continue
        seen.add(msg.message_id)
        unique.append(msg)
        if limit is not None and len(unique) >= limit:
            break
    return unique


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    Provider clients are stateless adapters created per account on demand.
    They own no persisted state; any token refresh stays inside the instance.
    """

    def __init__(self, account_id: int, credentials: Dict[str, Any], default_mailbox: str = "INBOX"):
        """
        Initialize the email provider.

        Args:
            account_id: Registry id of the account this client serves
            credentials: Decrypted provider-specific credential fields
            default_mailbox: Mailbox used when a search names none
        """
        self.account_id = account_id
        self.credentials = credentials
        self.default_mailbox = default_mailbox or "INBOX"

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    @abstractmethod
    async def search(self, criteria: SearchCriteria) -> List[EmailMessage]:
        """
        Search messages matching criteria.query.

        Returns:
            At most criteria.max_results messages, newest-relevant first

        Raises:
            ProviderError: on transport or authentication failure
        """
        pass

    @abstractmethod
    async def fetch_urgent(self, limit: int) -> List[EmailMessage]:
        """
        Probe the mailbox for likely urgent messages using provider heuristics.

        Returns:
            At most ``limit`` distinct messages
        """
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """
        Cheap credential/connectivity check.

        Returns:
            True if the account is reachable, False on any failure (never raises)
        """
        pass

    @abstractmethod
    async def list_mailboxes(self) -> List[str]:
        """
        Get all selectable mailboxes/labels.

        Raises:
            ProviderError: on hard connectivity failure
        """
        pass
