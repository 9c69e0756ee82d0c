"""
Email management tools.
Tool definitions (JSON schema) and their handlers, shared by the HTTP API
and the command line.
"""

import logging
from typing import Dict, Any, Optional, List, Callable, Awaitable

from .config import Settings
from .email.accounts import Account, AccountRegistry
from .email.errors import ValidationError, NotFoundError
from .email.providers import create_provider
from .email.search import SearchOrchestrator, SearchRequest, ClassifiedResult, FanOutReport
from .email.storage import EmailStorage

logger = logging.getLogger(__name__)

ACCOUNT_ID_PARAM = {
    'accountId': {
        'type': 'number',
        'description': 'ID of the account',
    }
}

ACCOUNT_IDS_PARAM = {
    'type': 'array',
    'items': {'type': 'number'},
    'description': 'Specific account IDs to search (default: all active accounts)',
}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        'name': 'add_email_account',
        'description': (
            'Add a new email account (Gmail or IMAP) for multi-mailbox management. Returns account ID.\n'
            'For Gmail: requires refreshToken from OAuth2 flow.\n'
            'For IMAP: requires host, port, username, password.'
        ),
        'inputSchema': {
            'type': 'object',
            'properties': {
                'accountName': {'type': 'string', 'description': 'Friendly name for this account (e.g., "Personal Gmail")'},
                'email': {'type': 'string', 'description': 'Email address'},
                'provider': {'type': 'string', 'enum': ['gmail', 'imap'], 'description': 'Email provider type'},
                'refreshToken': {'type': 'string', 'description': 'Gmail refresh token (required for Gmail provider)'},
                'accessToken': {'type': 'string', 'description': 'Gmail access token (optional)'},
                'host': {'type': 'string', 'description': 'IMAP server hostname (required for IMAP provider)'},
                'port': {'type': 'number', 'description': 'IMAP server port (typically 993 for TLS)'},
                'username': {'type': 'string', 'description': 'IMAP username (required for IMAP provider)'},
                'password': {'type': 'string', 'description': 'IMAP password (required for IMAP provider)'},
                'tls': {'type': 'boolean', 'description': 'Implicit TLS; false upgrades with STARTTLS (default: true)'},
                'defaultMailbox': {'type': 'string', 'description': 'Default mailbox for searches (default: "INBOX")'},
                'customUrgentKeywords': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Custom keywords to detect urgent emails'},
                'customImportantKeywords': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Custom keywords to detect important emails'},
            },
            'required': ['accountName', 'email', 'provider'],
        },
    },
    {
        'name': 'remove_email_account',
        'description': 'Remove an email account from multi-mailbox management. Returns success status.',
        'inputSchema': {'type': 'object', 'properties': ACCOUNT_ID_PARAM, 'required': ['accountId']},
    },
    {
        'name': 'list_email_accounts',
        'description': 'List all configured email accounts. Returns account details including provider and last sync time.',
        'inputSchema': {
            'type': 'object',
            'properties': {
                'includeInactive': {
                    'type': 'boolean',
                    'description': 'Include disabled accounts in results (default: false)',
                    'default': False,
                },
            },
        },
    },
    {
        'name': 'search_emails',
        'description': (
            'Search emails across multiple mailboxes in different accounts. Returns classified results '
            'with urgency/importance scores, sorted by importance. Use minUrgencyScore or '
            'minImportanceScore to filter.'
        ),
        'inputSchema': {
            'type': 'object',
            'properties': {
                'query': {'type': 'string', 'description': 'Search query (e.g., "from:john@example.com", "subject:meeting", "deadline")'},
                'accountIds': ACCOUNT_IDS_PARAM,
                'accounts': dict(ACCOUNT_IDS_PARAM, description='Alias of accountIds'),
                'mailboxes': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Specific mailboxes to search (default: each account\'s default mailbox)'},
                'maxResults': {'type': 'number', 'description': 'Maximum results to return (default: 50, max: 500)', 'default': 50},
                'minUrgencyScore': {'type': 'number', 'description': 'Minimum urgency score (0.0-1.0)', 'minimum': 0, 'maximum': 1},
                'minImportanceScore': {'type': 'number', 'description': 'Minimum importance score (0.0-1.0)', 'minimum': 0, 'maximum': 1},
            },
            'required': ['query'],
        },
    },
    {
        'name': 'get_urgent_emails',
        'description': (
            'Get urgent and important emails from all configured accounts.\n'
            'Returns two lists: urgent (flagged, high priority) and important (meetings, contracts, etc.), '
            'each sorted by its score.'
        ),
        'inputSchema': {
            'type': 'object',
            'properties': {
                'maxResults': {'type': 'number', 'description': 'Maximum results per category (default: 20, max: 500)', 'default': 20},
                'accountIds': ACCOUNT_IDS_PARAM,
                'accounts': dict(ACCOUNT_IDS_PARAM, description='Alias of accountIds'),
                'onlyUnread': {'type': 'boolean', 'description': 'Only include unread emails (default: false)', 'default': False},
            },
        },
    },
    {
        'name': 'disable_email_account',
        'description': 'Temporarily disable an email account without deleting it.',
        'inputSchema': {'type': 'object', 'properties': ACCOUNT_ID_PARAM, 'required': ['accountId']},
    },
    {
        'name': 'enable_email_account',
        'description': 'Re-enable a previously disabled email account.',
        'inputSchema': {'type': 'object', 'properties': ACCOUNT_ID_PARAM, 'required': ['accountId']},
    },
    {
        'name': 'update_email_account',
        'description': 'Update email account configuration (name, credentials, keywords, default mailbox).',
        'inputSchema': {
            'type': 'object',
            'properties': {
                'accountId': {'type': 'number', 'description': 'ID of the account to update'},
                'accountName': {'type': 'string', 'description': 'New friendly name'},
                'email': {'type': 'string', 'description': 'New email address'},
                'refreshToken': {'type': 'string', 'description': 'Replacement Gmail refresh token'},
                'host': {'type': 'string', 'description': 'New IMAP host'},
                'port': {'type': 'number', 'description': 'New IMAP port'},
                'username': {'type': 'string', 'description': 'New IMAP username'},
                'password': {'type': 'string', 'description': 'New IMAP password'},
                'tls': {'type': 'boolean', 'description': 'Implicit TLS for IMAP'},
                'defaultMailbox': {'type': 'string', 'description': 'New default mailbox'},
                'customUrgentKeywords': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Update custom urgent keywords'},
                'customImportantKeywords': {'type': 'array', 'items': {'type': 'string'}, 'description': 'Update custom important keywords'},
            },
            'required': ['accountId'],
        },
    },
    {
        'name': 'test_email_account',
        'description': 'Check that an account can connect with its stored credentials.',
        'inputSchema': {'type': 'object', 'properties': ACCOUNT_ID_PARAM, 'required': ['accountId']},
    },
    {
        'name': 'list_email_mailboxes',
        'description': 'List the selectable mailboxes (IMAP folders or Gmail labels) of an account.',
        'inputSchema': {'type': 'object', 'properties': ACCOUNT_ID_PARAM, 'required': ['accountId']},
    },
]

# camelCase tool parameter -> account config field
ACCOUNT_PARAMS = {
    'accountName': 'account_name',
    'email': 'email',
    'provider': 'provider',
    'refreshToken': 'refresh_token',
    'accessToken': 'access_token',
    'expiresAt': 'expires_at',
    'clientId': 'client_id',
    'clientSecret': 'client_secret',
    'host': 'host',
    'port': 'port',
    'username': 'username',
    'password': 'password',
    'tls': 'tls',
    'defaultMailbox': 'default_mailbox',
    'customUrgentKeywords': 'custom_urgent_keywords',
    'customImportantKeywords': 'custom_important_keywords',
}


def _score(value: float) -> float:
    return round(value, 2)


def _account_config(params: Dict[str, Any]) -> Dict[str, Any]:
    return {field: params[param] for param, field in ACCOUNT_PARAMS.items() if param in params}


def _int_param(params: Dict[str, Any], name: str, default: Optional[int] = None) -> Optional[int]:
    value = params.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def _account_id(params: Dict[str, Any]) -> int:
    account_id = _int_param(params, 'accountId')
    if account_id is None:
        raise ValidationError("Missing required field: accountId")
    return account_id


def _score_floor(params: Dict[str, Any], name: str) -> Optional[float]:
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    if not 0 <= value <= 1:
        raise ValidationError(f"{name} must be between 0 and 1")
    return float(value)


def _account_ids(params: Dict[str, Any]) -> Optional[List[int]]:
    ids = params.get('accountIds')
    if ids is None:
        ids = params.get('accounts')
    if ids is None:
        return None
    if not isinstance(ids, list):
        raise ValidationError("accountIds must be a list of account IDs")
    return [_int_param({'accountIds': i}, 'accountIds') for i in ids]


def format_account(account: Account) -> Dict[str, Any]:
    return {
        'id': account.id,
        'accountName': account.account_name,
        'email': account.email,
        'provider': account.provider,
        'isActive': account.is_active,
        'lastSyncAt': account.last_sync_at,
        'syncError': account.sync_error,
        'defaultMailbox': account.default_mailbox,
        'customUrgentKeywords': list(account.custom_urgent_keywords),
        'customImportantKeywords': list(account.custom_important_keywords),
        'createdAt': account.created_at,
    }


def format_result(result: ClassifiedResult) -> Dict[str, Any]:
    message = result.message
    classification = result.classification
    return {
        'id': message.message_id,
        'accountId': result.account.id,
        'accountName': result.account.account_name,
        'subject': message.subject,
        'from': message.sender,
        'recipients': list(message.recipients),
        'snippet': message.snippet,
        'receivedAt': message.received_at.isoformat(),
        'mailbox': message.mailbox,
        'labels': list(message.labels),
        'isRead': message.is_read,
        'hasAttachments': message.has_attachments,
        'isUrgent': classification.is_urgent,
        'isImportant': classification.is_important,
        'urgencyScore': _score(classification.urgency_score),
        'importanceScore': _score(classification.importance_score),
        'importanceReason': list(classification.reasons),
    }


def format_failures(report: FanOutReport) -> List[Dict[str, Any]]:
    return [
        {'accountId': f['account_id'], 'accountName': f['account_name'], 'error': f['error']}
        for f in report.failed
    ]


class EmailToolHandlers:
    """
    Handlers for the email tools. Parameters use the camelCase names of the
    tool schemas; every handler returns a JSON-ready dict.
    """

    def __init__(self, registry: AccountRegistry, orchestrator: SearchOrchestrator, settings: Optional[Settings] = None):
        self.registry = registry
        self.orchestrator = orchestrator
        self.settings = settings or Settings()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            'add_email_account': self.add_email_account,
            'remove_email_account': self.remove_email_account,
            'list_email_accounts': self.list_email_accounts,
            'search_emails': self.search_emails,
            'get_urgent_emails': self.get_urgent_emails,
            'disable_email_account': self.disable_email_account,
            'enable_email_account': self.enable_email_account,
            'update_email_account': self.update_email_account,
            'test_email_account': self.test_email_account,
            'list_email_mailboxes': self.list_email_mailboxes,
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    async def call(self, name: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Dispatch a tool call by name."""
        handler = self._handlers.get(name)
        if handler is None:
            raise NotFoundError(f"Unknown tool: {name}")
        return await handler(params or {})

    def _check_max_results(self, value: int) -> None:
        cap = self.settings.max_results_cap
        if value > cap:
            raise ValidationError(f"maxResults cannot exceed {cap}")
        if value < 1:
            raise ValidationError("maxResults must be at least 1")

    # ==================== Accounts ====================

    async def add_email_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        missing = [p for p in ('accountName', 'email', 'provider') if not params.get(p)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        account = self.registry.add_account(_account_config(params))
        return {
            'success': True,
            'accountId': account.id,
            'accountName': account.account_name,
            'email': account.email,
            'provider': account.provider,
            'message': f'Email account "{account.account_name}" added successfully',
        }

    async def remove_email_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        account = self.registry.require(_account_id(params))
        if not self.registry.delete_account(account.id):
            raise NotFoundError(f"Account with ID {account.id} not found")
        return {
            'success': True,
            'message': f'Email account "{account.account_name}" removed successfully',
        }

    async def list_email_accounts(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if params.get('includeInactive', False):
            accounts = self.registry.list_all()
        else:
            accounts = self.registry.list_active()
        return {
            'success': True,
            'count': len(accounts),
            'accounts': [format_account(a) for a in accounts],
        }

    async def disable_email_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.registry.disable(_account_id(params))
        return {
            'success': True,
            'accountId': updated.id,
            'accountName': updated.account_name,
            'isActive': updated.is_active,
            'message': f'Account "{updated.account_name}" has been disabled',
        }

    async def enable_email_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.registry.enable(_account_id(params))
        return {
            'success': True,
            'accountId': updated.id,
            'accountName': updated.account_name,
            'isActive': updated.is_active,
            'message': f'Account "{updated.account_name}" has been enabled',
        }

    async def update_email_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        account_id = _account_id(params)
        changes = _account_config(params)
        changes.pop('provider', None)
        updated = self.registry.update_account(account_id, changes)
        return {
            'success': True,
            'accountId': updated.id,
            'accountName': updated.account_name,
            'defaultMailbox': updated.default_mailbox,
            'message': f'Account "{updated.account_name}" updated successfully',
        }

    async def test_email_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        account_id = _account_id(params)
        connected = await self.registry.test_connection(account_id)
        account = self.registry.require(account_id)
        return {
            'success': True,
            'accountId': account.id,
            'connected': connected,
            'message': (
                f'Account "{account.account_name}" connected successfully' if connected
                else f'Account "{account.account_name}" could not connect'
            ),
        }

    async def list_email_mailboxes(self, params: Dict[str, Any]) -> Dict[str, Any]:
        account_id = _account_id(params)
        mailboxes = await self.registry.list_mailboxes(account_id)
        return {
            'success': True,
            'accountId': account_id,
            'count': len(mailboxes),
            'mailboxes': mailboxes,
        }

    # ==================== Search ====================

    async def search_emails(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = params.get('query')
        if not query or not isinstance(query, str):
            raise ValidationError("Missing required field: query")

        max_results = _int_param(params, 'maxResults', self.settings.default_max_results)
        self._check_max_results(max_results)
        min_urgency = _score_floor(params, 'minUrgencyScore')
        min_importance = _score_floor(params, 'minImportanceScore')
        mailboxes = params.get('mailboxes')
        if mailboxes is not None and (
            not isinstance(mailboxes, list) or not all(isinstance(m, str) and m for m in mailboxes)
        ):
            raise ValidationError("mailboxes must be a list of mailbox names")

        outcome = await self.orchestrator.search_across_accounts(SearchRequest(
            query=query,
            account_ids=_account_ids(params),
            mailboxes=mailboxes,
            max_results=max_results,
        ))

        filtered = [
            r for r in outcome.results
            if (min_urgency is None or _score(r.classification.urgency_score) >= min_urgency)
            and (min_importance is None or _score(r.classification.importance_score) >= min_importance)
        ]

        return {
            'success': True,
            'query': query,
            'totalResults': len(filtered),
            'results': [format_result(r) for r in filtered],
            'failedAccounts': format_failures(outcome.report),
        }

    async def get_urgent_emails(self, params: Dict[str, Any]) -> Dict[str, Any]:
        max_results = _int_param(params, 'maxResults', self.settings.default_urgent_limit)
        self._check_max_results(max_results)
        only_unread = bool(params.get('onlyUnread', False))

        outcome = await self.orchestrator.get_urgent_and_important(
            limit=max_results,
            account_ids=_account_ids(params),
        )

        urgent = [r for r in outcome.urgent if not (only_unread and r.message.is_read)]
        important = [r for r in outcome.important if not (only_unread and r.message.is_read)]

        return {
            'success': True,
            'urgent': {
                'count': len(urgent),
                'emails': [format_result(r) for r in urgent],
            },
            'important': {
                'count': len(important),
                'emails': [format_result(r) for r in important],
            },
            'failedAccounts': format_failures(outcome.report),
        }


def build_tool_handlers(settings: Settings, provider_factory=create_provider) -> EmailToolHandlers:
    """Wire storage, registry and orchestrator for the given settings."""
    storage = EmailStorage(settings.db_path)
    registry = AccountRegistry(storage, settings.cipher(), settings, provider_factory)
    orchestrator = SearchOrchestrator(
        registry,
        storage,
        timeout=settings.provider_timeout,
        max_results_cap=settings.max_results_cap,
    )
    return EmailToolHandlers(registry, orchestrator, settings)
