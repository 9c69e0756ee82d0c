"""
Email providers for different email services.
"""

from typing import Any, Dict

from ..errors import ValidationError
from .base import EmailProvider, EmailMessage, SearchCriteria, ProviderType
from .gmail import GmailProvider
from .imap import IMAPProvider

PROVIDER_CLASSES = {
    ProviderType.GMAIL: GmailProvider,
    ProviderType.IMAP: IMAPProvider,
}


def create_provider(account, credentials: Dict[str, Any], settings=None) -> EmailProvider:
    """
    Build a provider client for an account.

    Args:
        account: Account record (needs ``id``, ``provider`` and ``default_mailbox``)
        credentials: Decrypted credential fields
        settings: Application settings carrying OAuth client and timeout values
    """
    try:
        provider_type = ProviderType(account.provider)
    except ValueError:
        raise ValidationError(f"Unsupported provider: {account.provider}")
    return PROVIDER_CLASSES[provider_type].from_account(account, credentials, settings)


__all__ = [
    'EmailProvider',
    'EmailMessage',
    'SearchCriteria',
    'ProviderType',
    'IMAPProvider',
    'GmailProvider',
    'PROVIDER_CLASSES',
    'create_provider',
]
