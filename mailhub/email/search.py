"""
Search orchestrator.
Fans a query out to every account in scope, classifies what comes back and
merges it into one ranked result set.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple, Callable, Awaitable
from datetime import datetime, timezone

from .accounts import Account, AccountRegistry
from .classifier import Classification, classify
from .errors import NoAccountsError, ValidationError
from .providers.base import EmailProvider, EmailMessage, SearchCriteria
from .storage import EmailStorage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_RESULTS_CAP = 500

AccountCall = Callable[[EmailProvider, Account], Awaitable[List[EmailMessage]]]


@dataclass
class SearchRequest:
    """A search across accounts."""
    query: str
    account_ids: Optional[List[int]] = None
    mailboxes: Optional[List[str]] = None
    max_results: int = 50


@dataclass
class ClassifiedResult:
    """One message from one account with its classification."""
    account: Account
    message: EmailMessage
    classification: Classification

    @property
    def key(self) -> Tuple[int, str]:
        return (self.account.id, self.message.message_id)

    @property
    def rank_score(self) -> float:
        return self.classification.rank_score

    def _tie_break(self) -> Tuple[float, int, str]:
        return (-self.message.received_at.timestamp(), self.account.id, self.message.message_id)

    def rank_key(self) -> Tuple:
        return (-self.rank_score,) + self._tie_break()

    def urgency_key(self) -> Tuple:
        return (-self.classification.urgency_score,) + self._tie_break()

    def importance_key(self) -> Tuple:
        return (-self.classification.importance_score,) + self._tie_break()

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'account_id': self.account.id,
            'account_name': self.account.account_name,
            'account_email': self.account.email,
            'provider': self.account.provider,
        }
        result.update(self.message.to_dict())
        result.update(self.classification.to_dict())
        result['rank_score'] = self.rank_score
        return result


@dataclass
class FanOutReport:
    """Which accounts answered and which did not."""
    succeeded: List[int] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)


@dataclass
class SearchOutcome:
    results: List[ClassifiedResult]
    report: FanOutReport


@dataclass
class UrgentOutcome:
    urgent: List[ClassifiedResult]
    important: List[ClassifiedResult]
    report: FanOutReport


class SearchOrchestrator:
    """
    Coordinates multi-account searches.

    Per-account provider calls run concurrently, each under its own timeout.
    Results are buffered until every account has answered, so the merged order
    depends on scores only. The classification cache is written after the
    fan-out completes and only from the calling task.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        storage: EmailStorage,
        timeout: float = DEFAULT_TIMEOUT,
        max_results_cap: int = MAX_RESULTS_CAP
    ):
        """
        Args:
            registry: Account registry used to resolve accounts and clients
            storage: Classification cache
            timeout: Seconds allowed for each account's provider call
            max_results_cap: Largest accepted max_results / limit
        """
        self.registry = registry
        self.storage = storage
        self.timeout = timeout
        self.max_results_cap = max_results_cap

    def _check_limit(self, name: str, value: int) -> None:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError(f"{name} must be an integer")
        if value < 1 or value > self.max_results_cap:
            raise ValidationError(f"{name} must be between 1 and {self.max_results_cap}")

    # ==================== Account Resolution ====================

    def resolve_accounts(self, account_ids: Optional[List[int]] = None) -> List[Account]:
        """
        Explicit ids if given (unknown ids dropped), else all active accounts.

        Raises:
            NoAccountsError: when nothing is left to search
        """
        if account_ids:
            accounts = []
            for account_id in dict.fromkeys(account_ids):
                account = self.registry.get_by_id(account_id)
                if account is None:
                    logger.warning(f"Skipping unknown account {account_id}")
                    continue
                accounts.append(account)
            if not accounts:
                if self.registry.count() == 0:
                    raise NoAccountsError(NoAccountsError.NO_ACCOUNTS_CONFIGURED)
                raise NoAccountsError(
                    NoAccountsError.NO_MATCHING_ACCOUNTS,
                    ', '.join(str(i) for i in account_ids)
                )
            return accounts

        accounts = self.registry.list_active()
        if not accounts:
            if self.registry.count() == 0:
                raise NoAccountsError(NoAccountsError.NO_ACCOUNTS_CONFIGURED)
            raise NoAccountsError(NoAccountsError.NO_ACTIVE_ACCOUNTS)
        return accounts

    # ==================== Fan-out ====================

    async def _call_account(
        self,
        account: Account,
        call: AccountCall
    ) -> Tuple[Account, Optional[List[EmailMessage]], Optional[str]]:
        """Run one account's provider call. Failures are returned, not raised."""
        try:
            client = self.registry.get_client(account)
            messages = await asyncio.wait_for(call(client, account), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout:g}s"
            logger.warning(f"Account {account.id} ({account.account_name}) {error}")
            self.registry.record_sync_outcome(account.id, error)
            return account, None, error
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Account {account.id} ({account.account_name}) failed: {error}")
            self.registry.record_sync_outcome(account.id, error)
            return account, None, error

        self.registry.record_sync_outcome(account.id, None)
        return account, messages, None

    async def _fan_out(
        self,
        accounts: List[Account],
        call: AccountCall
    ) -> Tuple[List[Tuple[Account, List[EmailMessage]]], FanOutReport]:
        # Cancelling the gather cancels every per-account task
        outcomes = await asyncio.gather(*(self._call_account(a, call) for a in accounts))

        fetched = []
        report = FanOutReport()
        for account, messages, error in outcomes:
            if error is not None:
                report.failed.append({
                    'account_id': account.id,
                    'account_name': account.account_name,
                    'error': error,
                })
            else:
                report.succeeded.append(account.id)
                fetched.append((account, messages))

        if not report.succeeded:
            detail = '; '.join(f"{f['account_name']}: {f['error']}" for f in report.failed)
            raise NoAccountsError(NoAccountsError.ALL_ACCOUNTS_UNREACHABLE, detail)
        return fetched, report

    def _classify(self, fetched: List[Tuple[Account, List[EmailMessage]]]) -> List[ClassifiedResult]:
        """Classify, dropping repeated (account id, message id) pairs."""
        now = datetime.now(timezone.utc)
        seen = set()
        results = []
        for account, messages in fetched:
            prefs = account.prefs
            for message in messages:
                key = (account.id, message.message_id)
                if key in seen:
                    continue
                seen.add(key)
                results.append(ClassifiedResult(account, message, classify(message, prefs, now)))
        return results

    def _cache(self, results: List[ClassifiedResult], query: str = '') -> None:
        for result in results:
            try:
                self.storage.upsert_result(
                    result.account.id,
                    result.message.to_dict(),
                    result.classification.to_dict(),
                    search_query=query
                )
            except Exception as e:
                logger.warning(f"Failed to cache result {result.key}: {e}")

    # ==================== Operations ====================

    async def search_across_accounts(self, request: SearchRequest) -> SearchOutcome:
        """
        Search every account in scope and return the merged, ranked results.

        Raises:
            ValidationError: bad max_results
            NoAccountsError: no accounts in scope, or none reachable
        """
        self._check_limit('max_results', request.max_results)
        accounts = self.resolve_accounts(request.account_ids)
        headroom = request.max_results * 2
        mailboxes = list(request.mailboxes or [])

        async def search_account(client: EmailProvider, account: Account) -> List[EmailMessage]:
            if len(mailboxes) <= 1:
                mailbox = mailboxes[0] if mailboxes else None
                return await client.search(SearchCriteria(request.query, headroom, mailbox))

            batches = await asyncio.gather(
                *(client.search(SearchCriteria(request.query, headroom, mb)) for mb in mailboxes),
                return_exceptions=True
            )
            merged = []
            errors = []
            for mailbox, batch in zip(mailboxes, batches):
                if isinstance(batch, BaseException):
                    if not isinstance(batch, Exception):
                        raise batch
                    logger.warning(f"Account {account.id} mailbox {mailbox} failed: {batch}")
                    errors.append(batch)
                    continue
                merged.extend(batch)
            if len(errors) == len(mailboxes):
                raise errors[0]
            return merged

        logger.info(f"Searching {len(accounts)} account(s) for '{request.query}'")
        fetched, report = await self._fan_out(accounts, search_account)

        results = self._classify(fetched)
        self._cache(results, request.query)
        results.sort(key=ClassifiedResult.rank_key)

        logger.info(
            f"Search finished: {len(results)} result(s) from {len(report.succeeded)} account(s), "
            f"{len(report.failed)} failed"
        )
        return SearchOutcome(results=results[:request.max_results], report=report)

    async def get_urgent_and_important(
        self,
        limit: int = 20,
        account_ids: Optional[List[int]] = None
    ) -> UrgentOutcome:
        """
        Probe each account for likely urgent mail and bucket the classified results.

        A message may land in both buckets or in neither.
        """
        self._check_limit('limit', limit)
        accounts = self.resolve_accounts(account_ids)

        async def fetch_account(client: EmailProvider, account: Account) -> List[EmailMessage]:
            return await client.fetch_urgent(limit * 2)

        logger.info(f"Fetching urgent mail from {len(accounts)} account(s)")
        fetched, report = await self._fan_out(accounts, fetch_account)

        results = self._classify(fetched)
        self._cache(results)

        urgent = sorted(
            (r for r in results if r.classification.is_urgent), key=ClassifiedResult.urgency_key
        )[:limit]
        important = sorted(
            (r for r in results if r.classification.is_important), key=ClassifiedResult.importance_key
        )[:limit]

        logger.info(f"Urgent scan finished: {len(urgent)} urgent, {len(important)} important")
        return UrgentOutcome(urgent=urgent, important=important, report=report)
