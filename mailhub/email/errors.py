"""
Error types raised by the email core.
"""

from typing import Optional


class MailhubError(Exception):
    """Base class for all mailhub errors."""


class ValidationError(MailhubError):
    """Malformed or missing input, rejected before any I/O."""


class ConflictError(MailhubError):
    """A uniqueness constraint was violated."""


class NotFoundError(MailhubError):
    """Unknown account id or name."""


class ProviderError(MailhubError):
    """A provider call for one account failed in transport or authentication."""

    def __init__(self, provider: str, cause: str, account_id: Optional[int] = None):
        self.provider = provider
        self.cause = cause
        self.account_id = account_id
        where = f" (account {account_id})" if account_id is not None else ""
        super().__init__(f"{provider} provider error{where}: {cause}")


class NoAccountsError(MailhubError):
    """The resolved account scope for a fan-out is empty."""

    NO_ACCOUNTS_CONFIGURED = 'no_accounts_configured'
    NO_ACTIVE_ACCOUNTS = 'no_active_accounts'
    NO_MATCHING_ACCOUNTS = 'no_matching_accounts'
    ALL_ACCOUNTS_UNREACHABLE = 'all_accounts_unreachable'

    MESSAGES = {
        NO_ACCOUNTS_CONFIGURED: 'No email accounts configured',
        NO_ACTIVE_ACCOUNTS: 'No active email accounts (all configured accounts are disabled)',
        NO_MATCHING_ACCOUNTS: 'None of the requested email accounts exist',
        ALL_ACCOUNTS_UNREACHABLE: 'All email accounts are unreachable',
    }

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        message = self.MESSAGES.get(reason, reason)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
