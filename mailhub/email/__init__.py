"""
Email module for searching and classifying mail across multiple accounts.
Supports Gmail and generic IMAP.
"""

from .providers.base import EmailProvider, EmailMessage, SearchCriteria, ProviderType
from .storage import EmailStorage
from .crypto import CredentialCipher
from .classifier import Classification, ClassificationPrefs, classify
from .accounts import Account, AccountRegistry
from .search import SearchOrchestrator, SearchRequest, ClassifiedResult, FanOutReport

__all__ = [
    'EmailProvider',
    'EmailMessage',
    'SearchCriteria',
    'ProviderType',
    'EmailStorage',
    'CredentialCipher',
    'Classification',
    'ClassificationPrefs',
    'classify',
    'Account',
    'AccountRegistry',
    'SearchOrchestrator',
    'SearchRequest',
    'ClassifiedResult',
    'FanOutReport',
]
