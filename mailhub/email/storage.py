"""
SQLite storage for email accounts and cached classifications.
Handles persistence of account records (credential store) and the
per-message classification cache.
"""

import sqlite3
import json
import logging
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager

logger = logging.getLogger(__name__)

ACCOUNT_FIELDS = {
    'account_name', 'email', 'provider_config', 'is_active', 'default_mailbox',
    'custom_urgent_keywords', 'custom_important_keywords',
}
JSON_LIST_FIELDS = ('custom_urgent_keywords', 'custom_important_keywords')


def utcnow_iso() -> str:
    """Current UTC time as ISO-8601 with microseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class EmailStorage:
    """
    SQLite-based storage for account records and classification results.
    """

    def __init__(self, db_path: str = "mailhub.db"):
        """
        Initialize email storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with context management."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        # Cascades only fire with foreign keys enabled on the connection
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            # Account records, credentials stored as an encrypted blob
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS email_accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_name TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL,
                    provider TEXT NOT NULL CHECK (provider IN ('gmail', 'imap')),
                    provider_config TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    last_sync_at TEXT,
                    sync_error TEXT,
                    default_mailbox TEXT DEFAULT 'INBOX',
                    custom_urgent_keywords TEXT DEFAULT '[]',
                    custom_important_keywords TEXT DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_email_accounts_provider ON email_accounts(provider)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_email_accounts_active ON email_accounts(is_active)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_email_accounts_email ON email_accounts(email)")

            # Last classification per (account, message)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS email_search_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    search_query TEXT NOT NULL DEFAULT '',
                    message_id TEXT NOT NULL,
                    subject TEXT,
                    sender TEXT,
                    recipients TEXT,
                    snippet TEXT,
                    labels TEXT,
                    mailbox TEXT,
                    is_urgent INTEGER DEFAULT 0,
                    is_important INTEGER DEFAULT 0,
                    urgency_score REAL DEFAULT 0.0,
                    importance_score REAL DEFAULT 0.0,
                    importance_reason TEXT,
                    received_at TEXT,
                    cached_at TEXT NOT NULL,
                    is_read INTEGER DEFAULT 0,
                    has_attachments INTEGER DEFAULT 0,
                    FOREIGN KEY (account_id) REFERENCES email_accounts(id) ON DELETE CASCADE,
                    UNIQUE(account_id, message_id)
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_search_results_account ON email_search_results(account_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_search_results_urgent ON email_search_results(is_urgent)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_search_results_important ON email_search_results(is_important)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_search_results_received_at ON email_search_results(received_at DESC)")

        logger.info(f"Email storage initialized at {self.db_path}")

    # ==================== Account Methods ====================

    @staticmethod
    def _account_row(row: sqlite3.Row) -> Dict[str, Any]:
        result = dict(row)
        for key in JSON_LIST_FIELDS:
            result[key] = json.loads(result.get(key) or '[]')
        result['is_active'] = bool(result.get('is_active'))
        return result

    def insert_account(
        self,
        account_name: str,
        email: str,
        provider: str,
        provider_config: str,
        default_mailbox: str = 'INBOX',
        custom_urgent_keywords: Optional[List[str]] = None,
        custom_important_keywords: Optional[List[str]] = None
    ) -> int:
        """
        Insert a new account row.

        Raises:
            sqlite3.IntegrityError: if account_name already exists
        """
        now = utcnow_iso()
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO email_accounts (
                    account_name, email, provider, provider_config, is_active,
                    default_mailbox, custom_urgent_keywords, custom_important_keywords,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
            """, (
                account_name,
                email,
                provider,
                provider_config,
                default_mailbox,
                json.dumps(custom_urgent_keywords or []),
                json.dumps(custom_important_keywords or []),
                now,
                now
            ))
            return cursor.lastrowid

    def update_account(self, account_id: int, **kwargs) -> bool:
        """Update the given account columns and touch updated_at."""
        updates = {k: v for k, v in kwargs.items() if k in ACCOUNT_FIELDS}
        if not updates:
            return False

        for key in JSON_LIST_FIELDS:
            if key in updates:
                updates[key] = json.dumps(updates[key] or [])
        if 'is_active' in updates:
            updates['is_active'] = int(bool(updates['is_active']))

        set_clause = ', '.join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [utcnow_iso(), account_id]

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE email_accounts SET {set_clause}, updated_at = ? WHERE id = ?",
                values
            )
            return cursor.rowcount > 0

    def get_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        """Get account row by ID."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM email_accounts WHERE id = ?", (account_id,))
            row = cursor.fetchone()
            return self._account_row(row) if row else None

    def get_account_by_name(self, account_name: str) -> Optional[Dict[str, Any]]:
        """Get account row by friendly name."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM email_accounts WHERE account_name = ?", (account_name,))
            row = cursor.fetchone()
            return self._account_row(row) if row else None

    def get_account_by_email(self, email: str, active_only: bool = True) -> Optional[Dict[str, Any]]:
        """Get the most recently created account row for an address."""
        query = "SELECT * FROM email_accounts WHERE email = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at DESC, id DESC LIMIT 1"
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, (email,))
            row = cursor.fetchone()
            return self._account_row(row) if row else None

    def get_all_accounts(self, active_only: bool = False) -> List[Dict[str, Any]]:
        """Get all account rows, most recently created first."""
        query = "SELECT * FROM email_accounts"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at DESC, id DESC"
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query)
            return [self._account_row(row) for row in cursor.fetchall()]

    def count_accounts(self, active_only: bool = False) -> int:
        query = "SELECT COUNT(*) FROM email_accounts"
        if active_only:
            query += " WHERE is_active = 1"
        with self._get_connection() as conn:
            return conn.execute(query).fetchone()[0]

    def delete_account(self, account_id: int) -> bool:
        """Delete an account and, through the cascade, its cached results."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM email_accounts WHERE id = ?", (account_id,))
            return cursor.rowcount > 0

    def update_sync_status(self, account_id: int, error: Optional[str] = None) -> None:
        """Record the outcome of the latest provider call for an account."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE email_accounts SET last_sync_at = ?, sync_error = ? WHERE id = ?",
                (utcnow_iso(), error, account_id)
            )

    # ==================== Classification Cache Methods ====================

    def upsert_result(
        self,
        account_id: int,
        message: Dict[str, Any],
        classification: Dict[str, Any],
        search_query: str = ''
    ) -> None:
        """
        Insert or overwrite the cached classification of one message.

        Args:
            account_id: Owning account
            message: EmailMessage.to_dict() snapshot
            classification: Classification.to_dict()
            search_query: Query that surfaced the message
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO email_search_results (
                    account_id, search_query, message_id, subject, sender, recipients,
                    snippet, labels, mailbox, is_urgent, is_important, urgency_score,
                    importance_score, importance_reason, received_at, cached_at,
                    is_read, has_attachments
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, message_id) DO UPDATE SET
                    search_query = excluded.search_query,
                    subject = excluded.subject,
                    sender = excluded.sender,
                    recipients = excluded.recipients,
                    snippet = excluded.snippet,
                    labels = excluded.labels,
                    mailbox = excluded.mailbox,
                    is_urgent = excluded.is_urgent,
                    is_important = excluded.is_important,
                    urgency_score = excluded.urgency_score,
                    importance_score = excluded.importance_score,
                    importance_reason = excluded.importance_reason,
                    received_at = excluded.received_at,
                    cached_at = excluded.cached_at,
                    is_read = excluded.is_read,
                    has_attachments = excluded.has_attachments
            """, (
                account_id,
                search_query,
                message['message_id'],
                message.get('subject'),
                message.get('sender'),
                json.dumps(message.get('recipients', [])),
                message.get('snippet'),
                json.dumps(message.get('labels', [])),
                message.get('mailbox'),
                int(classification['is_urgent']),
                int(classification['is_important']),
                classification['urgency_score'],
                classification['importance_score'],
                json.dumps(classification['reasons']),
                message.get('received_at'),
                utcnow_iso(),
                int(bool(message.get('is_read'))),
                int(bool(message.get('has_attachments')))
            ))

    @staticmethod
    def _result_row(row: sqlite3.Row) -> Dict[str, Any]:
        result = dict(row)
        result['recipients'] = json.loads(result.get('recipients') or '[]')
        result['labels'] = json.loads(result.get('labels') or '[]')
        result['reasons'] = json.loads(result.pop('importance_reason', None) or '[]')
        for key in ('is_urgent', 'is_important', 'is_read', 'has_attachments'):
            result[key] = bool(result.get(key))
        return result

    def get_cached_result(self, account_id: int, message_id: str) -> Optional[Dict[str, Any]]:
        """Get the cached classification for one message."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM email_search_results WHERE account_id = ? AND message_id = ?",
                (account_id, message_id)
            )
            row = cursor.fetchone()
            return self._result_row(row) if row else None

    def list_cached_results(
        self,
        account_id: Optional[int] = None,
        urgent_only: bool = False,
        important_only: bool = False,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """List cached classifications, highest ranked first."""
        conditions = []
        params: List[Any] = []
        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if urgent_only:
            conditions.append("is_urgent = 1")
        if important_only:
            conditions.append("is_important = 1")

        query = "SELECT * FROM email_search_results"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY (urgency_score * 2 + importance_score) DESC, received_at DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [self._result_row(row) for row in cursor.fetchall()]

    def count_cached_results(self, account_id: Optional[int] = None) -> int:
        with self._get_connection() as conn:
            if account_id is None:
                return conn.execute("SELECT COUNT(*) FROM email_search_results").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM email_search_results WHERE account_id = ?", (account_id,)
            ).fetchone()[0]
