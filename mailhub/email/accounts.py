"""
Account registry.
CRUD over stored email accounts and resolution of an account to its
provider client.
"""

import sqlite3
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Callable

from .crypto import CredentialCipher
from .errors import ValidationError, ConflictError, NotFoundError, ProviderError
from .storage import EmailStorage
from .classifier import ClassificationPrefs
from .providers import EmailProvider, ProviderType, create_provider

logger = logging.getLogger(__name__)

# Credential fields understood by each provider client
CREDENTIAL_FIELDS = {
    ProviderType.GMAIL.value: ('access_token', 'refresh_token', 'expires_at', 'client_id', 'client_secret'),
    ProviderType.IMAP.value: ('host', 'port', 'username', 'password', 'tls'),
}

REQUIRED_CREDENTIALS = {
    ProviderType.GMAIL.value: ('refresh_token',),
    ProviderType.IMAP.value: ('host', 'port', 'username', 'password'),
}

KEYWORD_FIELDS = ('custom_urgent_keywords', 'custom_important_keywords')


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ('0', 'false', 'no', 'off', '')
    return bool(value)


def validate_provider(provider: Any) -> str:
    valid = [p.value for p in ProviderType]
    if provider not in valid:
        raise ValidationError(f"provider must be one of: {', '.join(valid)}")
    return provider


def validate_account_name(account_name: Any) -> str:
    if not isinstance(account_name, str) or not account_name.strip():
        raise ValidationError("account_name must be a non-empty string")
    return account_name.strip()


def validate_mailbox(mailbox: Any) -> str:
    if mailbox is None or mailbox == '':
        return 'INBOX'
    if not isinstance(mailbox, str) or not mailbox.strip():
        raise ValidationError("default_mailbox must be a mailbox name")
    return mailbox.strip()


def validate_email(email: Any) -> str:
    if not isinstance(email, str) or '@' not in email:
        raise ValidationError("email must be a valid email address")
    return email.strip()


def validate_keywords(name: str, keywords: Any) -> List[str]:
    if keywords is None:
        return []
    if not isinstance(keywords, (list, tuple)):
        raise ValidationError(f"{name} must be a list of strings")
    cleaned = []
    for keyword in keywords:
        if not isinstance(keyword, str) or not keyword.strip():
            raise ValidationError(f"{name} must contain only non-empty strings")
        cleaned.append(keyword.strip())
    return cleaned


def validate_credentials(provider: str, credentials: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check and normalize the credential fields for a provider.

    Returns:
        Credential dict restricted to the provider's known fields
    """
    allowed = CREDENTIAL_FIELDS[provider]
    creds = {k: v for k, v in credentials.items() if k in allowed and v is not None}

    missing = [k for k in REQUIRED_CREDENTIALS[provider] if _is_blank(creds.get(k))]
    if missing:
        raise ValidationError(f"{provider} account requires: {', '.join(missing)}")

    if provider == ProviderType.IMAP.value:
        try:
            port = int(creds['port'])
        except (TypeError, ValueError):
            raise ValidationError("port must be an integer")
        if not 1 <= port <= 65535:
            raise ValidationError("port must be between 1 and 65535")
        creds['port'] = port
        creds['tls'] = _to_bool(creds.get('tls', True))
    elif provider == ProviderType.GMAIL.value and creds.get('expires_at') is not None:
        try:
            creds['expires_at'] = float(creds['expires_at'])
        except (TypeError, ValueError):
            raise ValidationError("expires_at must be epoch seconds")

    return creds


def _collect_credentials(provider: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Credential fields given flat in config or nested under 'credentials'."""
    creds = dict(config.get('credentials') or {})
    for key in CREDENTIAL_FIELDS[provider]:
        if key in config:
            creds[key] = config[key]
    return creds


@dataclass(frozen=True)
class Account:
    """A registered mailbox. Credentials stay encrypted in ``provider_config``."""
    id: int
    account_name: str
    email: str
    provider: str
    is_active: bool = True
    default_mailbox: str = 'INBOX'
    custom_urgent_keywords: Tuple[str, ...] = ()
    custom_important_keywords: Tuple[str, ...] = ()
    last_sync_at: Optional[str] = None
    sync_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    provider_config: str = field(default='', repr=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Account":
        return cls(
            id=row['id'],
            account_name=row['account_name'],
            email=row['email'],
            provider=row['provider'],
            is_active=bool(row['is_active']),
            default_mailbox=row.get('default_mailbox') or 'INBOX',
            custom_urgent_keywords=tuple(row.get('custom_urgent_keywords') or ()),
            custom_important_keywords=tuple(row.get('custom_important_keywords') or ()),
            last_sync_at=row.get('last_sync_at'),
            sync_error=row.get('sync_error'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
            provider_config=row.get('provider_config') or '',
        )

    @property
    def prefs(self) -> ClassificationPrefs:
        return ClassificationPrefs(
            urgent_keywords=self.custom_urgent_keywords,
            important_keywords=self.custom_important_keywords,
            provider=self.provider,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the account, without credentials."""
        return {
            'id': self.id,
            'account_name': self.account_name,
            'email': self.email,
            'provider': self.provider,
            'is_active': self.is_active,
            'default_mailbox': self.default_mailbox,
            'custom_urgent_keywords': list(self.custom_urgent_keywords),
            'custom_important_keywords': list(self.custom_important_keywords),
            'last_sync_at': self.last_sync_at,
            'sync_error': self.sync_error,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class AccountRegistry:
    """
    Owns account records and hands out provider clients for them.
    """

    def __init__(
        self,
        storage: EmailStorage,
        cipher: CredentialCipher,
        settings=None,
        provider_factory: Callable[..., EmailProvider] = create_provider
    ):
        """
        Args:
            storage: Credential store
            cipher: Encrypts credential blobs before they reach storage
            settings: Application settings passed through to provider clients
            provider_factory: Builds a client from (account, credentials, settings)
        """
        self.storage = storage
        self.cipher = cipher
        self.settings = settings
        self.provider_factory = provider_factory

    # ==================== Create / Read ====================

    def add_account(self, config: Dict[str, Any]) -> Account:
        """
        Validate and store a new account.

        Raises:
            ValidationError: missing or malformed fields
            ConflictError: account_name already in use
        """
        account_name = validate_account_name(config.get('account_name'))
        email = validate_email(config.get('email'))
        provider = validate_provider(config.get('provider'))
        credentials = validate_credentials(provider, _collect_credentials(provider, config))
        urgent = validate_keywords('custom_urgent_keywords', config.get('custom_urgent_keywords'))
        important = validate_keywords('custom_important_keywords', config.get('custom_important_keywords'))

        try:
            account_id = self.storage.insert_account(
                account_name=account_name,
                email=email,
                provider=provider,
                provider_config=self.cipher.encrypt(credentials),
                default_mailbox=validate_mailbox(config.get('default_mailbox')),
                custom_urgent_keywords=urgent,
                custom_important_keywords=important,
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"Account with name '{account_name}' already exists")

        logger.info(f"Added {provider} account {account_id} ({account_name})")
        return self.get_by_id(account_id)

    def get_by_id(self, account_id: int) -> Optional[Account]:
        row = self.storage.get_account(account_id)
        return Account.from_row(row) if row else None

    def get_by_name(self, account_name: str) -> Optional[Account]:
        row = self.storage.get_account_by_name(account_name)
        return Account.from_row(row) if row else None

    def get_by_email(self, email: str) -> Optional[Account]:
        """Most recently created active account for an address."""
        row = self.storage.get_account_by_email(email, active_only=True)
        return Account.from_row(row) if row else None

    def require(self, account_id: int) -> Account:
        account = self.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def list_active(self) -> List[Account]:
        return [Account.from_row(row) for row in self.storage.get_all_accounts(active_only=True)]

    def list_all(self) -> List[Account]:
        return [Account.from_row(row) for row in self.storage.get_all_accounts()]

    def count(self, active_only: bool = False) -> int:
        return self.storage.count_accounts(active_only=active_only)

    # ==================== Update / Delete ====================

    def update_account(self, account_id: int, changes: Dict[str, Any]) -> Account:
        """
        Apply a partial update. Fields not present in ``changes`` keep their values.

        Credential fields are merged over the stored credentials and the result
        is re-validated for the account's provider.
        """
        account = self.require(account_id)
        updates: Dict[str, Any] = {}

        if 'account_name' in changes:
            updates['account_name'] = validate_account_name(changes['account_name'])
        if 'email' in changes:
            updates['email'] = validate_email(changes['email'])
        if 'default_mailbox' in changes:
            updates['default_mailbox'] = validate_mailbox(changes['default_mailbox'])
        for key in KEYWORD_FIELDS:
            if key in changes:
                updates[key] = validate_keywords(key, changes[key])

        credential_changes = _collect_credentials(account.provider, changes)
        if credential_changes:
            merged = self.get_credentials(account)
            merged.update(credential_changes)
            updates['provider_config'] = self.cipher.encrypt(
                validate_credentials(account.provider, merged)
            )

        if updates:
            try:
                self.storage.update_account(account_id, **updates)
            except sqlite3.IntegrityError:
                raise ConflictError(f"Account with name '{updates.get('account_name')}' already exists")
            logger.info(f"Updated account {account_id}: {', '.join(sorted(updates))}")

        return self.require(account_id)

    def _set_active(self, account_id: int, active: bool) -> Account:
        self.require(account_id)
        self.storage.update_account(account_id, is_active=active)
        logger.info(f"{'Enabled' if active else 'Disabled'} account {account_id}")
        return self.require(account_id)

    def enable(self, account_id: int) -> Account:
        return self._set_active(account_id, True)

    def disable(self, account_id: int) -> Account:
        return self._set_active(account_id, False)

    def delete_account(self, account_id: int) -> bool:
        """Hard delete; cached classifications for the account go with it."""
        deleted = self.storage.delete_account(account_id)
        if deleted:
            logger.info(f"Removed account {account_id}")
        return deleted

    def record_sync_outcome(self, account_id: int, error: Optional[str] = None) -> None:
        """Store the time and error (if any) of the latest provider call. Never raises."""
        try:
            self.storage.update_sync_status(account_id, error)
        except Exception as e:
            logger.warning(f"Could not record sync outcome for account {account_id}: {e}")

    # ==================== Provider Clients ====================

    def get_credentials(self, account: Account) -> Dict[str, Any]:
        """Decrypt an account's credential blob."""
        try:
            return self.cipher.decrypt(account.provider_config)
        except ValueError as e:
            raise ProviderError(account.provider, str(e), account.id) from e

    def get_client(self, account: Account) -> EmailProvider:
        """Create a provider client for an account."""
        return self.provider_factory(account, self.get_credentials(account), self.settings)

    async def test_connection(self, account_id: int) -> bool:
        """Check that an account's provider is reachable with the stored credentials."""
        account = self.require(account_id)
        try:
            client = self.get_client(account)
        except ProviderError as e:
            logger.warning(f"Cannot build client for account {account_id}: {e}")
            self.record_sync_outcome(account_id, str(e))
            return False

        ok = await client.validate_connection()
        self.record_sync_outcome(account_id, None if ok else "connection check failed")
        return ok

    async def list_mailboxes(self, account_id: int) -> List[str]:
        account = self.require(account_id)
        return await self.get_client(account).list_mailboxes()
