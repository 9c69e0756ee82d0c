"""Shared fixtures: temporary database, generated key and fake provider clients."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from cryptography.fernet import Fernet

from mailhub.config import Settings
from mailhub.email.accounts import AccountRegistry
from mailhub.email.crypto import CredentialCipher
from mailhub.email.providers.base import EmailMessage, EmailProvider, ProviderType, SearchCriteria
from mailhub.email.search import SearchOrchestrator
from mailhub.email.storage import EmailStorage
from mailhub.tools import EmailToolHandlers

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def make_message(
    message_id: str = "m1",
    subject: str = "Hello",
    snippet: str = "",
    days_old: float = 3,
    is_read: bool = True,
    **kwargs: Any,
) -> EmailMessage:
    """Message received ``days_old`` days before now (read and old by default)."""
    received = kwargs.pop("received_at", datetime.now(timezone.utc) - timedelta(days=days_old))
    return EmailMessage(
        message_id=message_id,
        subject=subject,
        sender=kwargs.pop("sender", "alice@example.com"),
        received_at=received,
        snippet=snippet,
        is_read=is_read,
        **kwargs,
    )


def imap_config(name: str = "Work", **overrides: Any) -> Dict[str, Any]:
    config = {
        "account_name": name,
        "email": f"{name.lower()}@example.com",
        "provider": "imap",
        "host": "imap.example.com",
        "port": 993,
        "username": f"{name.lower()}@example.com",
        "password": "s3cret-pw",
    }
    config.update(overrides)
    return config


def gmail_config(name: str = "Personal", **overrides: Any) -> Dict[str, Any]:
    config = {
        "account_name": name,
        "email": f"{name.lower()}@gmail.com",
        "provider": "gmail",
        "refresh_token": "1//refresh-token",
    }
    config.update(overrides)
    return config


class FakeProvider(EmailProvider):
    """In-memory provider client with scripted results."""

    def __init__(
        self,
        account_id: int = 0,
        messages: Optional[List[EmailMessage]] = None,
        urgent: Optional[List[EmailMessage]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        mailboxes: Optional[List[str]] = None,
    ) -> None:
        super().__init__(account_id, {}, "INBOX")
        self.messages = messages or []
        self.urgent = urgent if urgent is not None else self.messages
        self.error = error
        self.delay = delay
        self.mailboxes = mailboxes or ["INBOX"]
        self.search_calls: List[SearchCriteria] = []
        self.urgent_calls: List[int] = []

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    async def _respond(self, messages: List[EmailMessage], limit: int) -> List[EmailMessage]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(messages[:limit])

    async def search(self, criteria: SearchCriteria) -> List[EmailMessage]:
        self.search_calls.append(criteria)
        return await self._respond(self.messages, criteria.max_results)

    async def fetch_urgent(self, limit: int) -> List[EmailMessage]:
        self.urgent_calls.append(limit)
        return await self._respond(self.urgent, limit)

    async def validate_connection(self) -> bool:
        return self.error is None

    async def list_mailboxes(self) -> List[str]:
        if self.error:
            raise self.error
        return list(self.mailboxes)


class FakeProviderFactory:
    """Provider factory returning scripted clients keyed by account name."""

    def __init__(self) -> None:
        self.providers: Dict[str, FakeProvider] = {}
        self.credentials: Dict[str, Dict[str, Any]] = {}

    def __call__(self, account, credentials, settings=None) -> FakeProvider:
        self.credentials[account.account_name] = credentials
        provider = self.providers.setdefault(account.account_name, FakeProvider())
        provider.account_id = account.id
        return provider


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "mailhub.db"),
        provider_timeout=1.0,
        encryption_key=Fernet.generate_key().decode(),
    )


@pytest.fixture
def storage(settings: Settings) -> EmailStorage:
    return EmailStorage(settings.db_path)


@pytest.fixture
def cipher(settings: Settings) -> CredentialCipher:
    return settings.cipher()


@pytest.fixture
def fake_factory() -> FakeProviderFactory:
    return FakeProviderFactory()


@pytest.fixture
def registry(storage, cipher, settings, fake_factory) -> AccountRegistry:
    return AccountRegistry(storage, cipher, settings, provider_factory=fake_factory)


@pytest.fixture
def orchestrator(registry, storage, settings) -> SearchOrchestrator:
    return SearchOrchestrator(registry, storage, timeout=settings.provider_timeout)


@pytest.fixture
def tools(registry, orchestrator, settings) -> EmailToolHandlers:
    return EmailToolHandlers(registry, orchestrator, settings)
