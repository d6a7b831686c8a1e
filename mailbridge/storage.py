"""
Persistent store for synchronized mail.

MailStore is the contract the providers write through. EmailStorage is the
SQLite implementation used by the sync manager and the test-suite.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .models import Account, Attachment, Draft, Email, FolderScope, Label, ProviderKind

logger = logging.getLogger(__name__)


class MailStore(ABC):
    """
    Operations the sync engine needs from persistent storage.

    Every write is expected to be individually atomic and idempotent.
    """

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        pass

    @abstractmethod
    def update_account_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: int
    ) -> None:
        pass

    @abstractmethod
    def upsert_email(self, email: Email) -> None:
        pass

    @abstractmethod
    def archive_email(self, email_id: str) -> None:
        pass

    @abstractmethod
    def unarchive_email(self, email_id: str) -> None:
        pass

    @abstractmethod
    def get_active_ids_by_account(self, account_id: str) -> Set[str]:
        """Ids of the account's inbox emails that are not archived."""
        pass

    @abstractmethod
    def upsert_attachment(self, attachment: Attachment) -> None:
        pass

    @abstractmethod
    def upsert_label(self, label: Label) -> None:
        pass

    @abstractmethod
    def get_label(self, label_id: str) -> Optional[Label]:
        pass

    @abstractmethod
    def get_label_by_name(self, account_id: str, name: str, label_type: Optional[str] = None) -> Optional[Label]:
        pass

    @abstractmethod
    def remove_all_labels_from_email(self, email_id: str) -> None:
        pass

    @abstractmethod
    def add_label_to_email(self, email_id: str, label_id: str) -> None:
        pass

    @abstractmethod
    def upsert_draft(self, draft: Draft) -> None:
        pass


class EmailStorage(MailStore):
    """
    SQLite-based storage for accounts, emails, labels and drafts.
    """

    def __init__(self, db_path: str = "mailbridge.db"):
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
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            raise e
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    provider_type TEXT NOT NULL CHECK (provider_type IN ('gmail', 'microsoft', 'yahoo', 'imap')),
                    access_token TEXT,
                    refresh_token TEXT,
                    token_expires_at INTEGER,
                    imap_host TEXT,
                    imap_port INTEGER DEFAULT 993,
                    imap_use_tls INTEGER DEFAULT 1,
                    smtp_host TEXT,
                    smtp_port INTEGER DEFAULT 587,
                    smtp_use_tls INTEGER DEFAULT 1,
                    username TEXT,
                    password TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    thread_id TEXT,
                    message_id TEXT,
                    subject TEXT,
                    snippet TEXT,
                    from_name TEXT,
                    from_email TEXT,
                    to_addresses TEXT,
                    cc_addresses TEXT,
                    bcc_addresses TEXT,
                    body_text TEXT,
                    body_html TEXT,
                    labels TEXT,
                    is_read INTEGER DEFAULT 0,
                    is_starred INTEGER DEFAULT 0,
                    is_archived INTEGER DEFAULT 0,
                    received_at INTEGER,
                    folder TEXT DEFAULT 'inbox',
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_emails_account ON emails(account_id, folder, is_archived)"
            )

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS attachments (
                    id TEXT PRIMARY KEY,
                    email_id TEXT NOT NULL,
                    content_id TEXT,
                    filename TEXT,
                    mime_type TEXT,
                    size INTEGER,
                    data BLOB,
                    FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS labels (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    color TEXT DEFAULT '#6366f1',
                    type TEXT DEFAULT 'user',
                    remote_id TEXT,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS email_labels (
                    email_id TEXT NOT NULL,
                    label_id TEXT NOT NULL,
                    PRIMARY KEY (email_id, label_id),
                    FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE CASCADE,
                    FOREIGN KEY (label_id) REFERENCES labels(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS drafts (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    remote_id TEXT,
                    to_addresses TEXT,
                    cc_addresses TEXT,
                    bcc_addresses TEXT,
                    subject TEXT,
                    body TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
            """)

            # Sync log
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT NOT NULL CHECK (status IN ('running', 'success', 'failed')),
                    emails_synced INTEGER DEFAULT 0,
                    error_message TEXT,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
            """)

    # ---- Accounts ----

    def add_account(self, account: Account) -> None:
        """Insert an account or update its connection data. The provider kind is kept."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO accounts (
                    id, email, name, provider_type, access_token, refresh_token,
                    token_expires_at, imap_host, imap_port, imap_use_tls,
                    smtp_host, smtp_port, smtp_use_tls, username, password
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    name = excluded.name,
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_expires_at = excluded.token_expires_at,
                    imap_host = excluded.imap_host,
                    imap_port = excluded.imap_port,
                    imap_use_tls = excluded.imap_use_tls,
                    smtp_host = excluded.smtp_host,
                    smtp_port = excluded.smtp_port,
                    smtp_use_tls = excluded.smtp_use_tls,
                    username = excluded.username,
                    password = excluded.password
            """, (
                account.id,
                account.email,
                account.name,
                account.kind.value,
                account.access_token,
                account.refresh_token,
                account.token_expires_at,
                account.imap_host,
                account.imap_port,
                int(account.imap_use_tls),
                account.smtp_host,
                account.smtp_port,
                int(account.smtp_use_tls),
                account.username,
                account.password
            ))

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row['id'],
            kind=ProviderKind(row['provider_type']),
            email=row['email'],
            name=row['name'] or "",
            access_token=row['access_token'],
            refresh_token=row['refresh_token'],
            token_expires_at=row['token_expires_at'],
            imap_host=row['imap_host'],
            imap_port=row['imap_port'] or 993,
            imap_use_tls=bool(row['imap_use_tls']),
            smtp_host=row['smtp_host'],
            smtp_port=row['smtp_port'] or 587,
            smtp_use_tls=bool(row['smtp_use_tls']),
            username=row['username'],
            password=row['password']
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return self._row_to_account(row) if row else None

    def list_accounts(self) -> List[Account]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY created_at, id").fetchall()
            return [self._row_to_account(row) for row in rows]

    def update_account_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: int
    ) -> None:
        """Store refreshed tokens, keeping the old refresh token when none is given."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE accounts
                SET access_token = ?,
                    refresh_token = COALESCE(?, refresh_token),
                    token_expires_at = ?
                WHERE id = ?
            """, (access_token, refresh_token, expires_at, account_id))

    # ---- Emails ----

    def upsert_email(self, email: Email) -> None:
        """Insert an email or overwrite every synced field of an existing one."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO emails (
                    id, account_id, thread_id, message_id, subject, snippet,
                    from_name, from_email, to_addresses, cc_addresses, bcc_addresses,
                    body_text, body_html, labels, is_read, is_starred, received_at, folder
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    thread_id = excluded.thread_id,
                    message_id = excluded.message_id,
                    subject = excluded.subject,
                    snippet = excluded.snippet,
                    from_name = excluded.from_name,
                    from_email = excluded.from_email,
                    to_addresses = excluded.to_addresses,
                    cc_addresses = excluded.cc_addresses,
                    bcc_addresses = excluded.bcc_addresses,
                    body_text = excluded.body_text,
                    body_html = excluded.body_html,
                    labels = excluded.labels,
                    is_read = excluded.is_read,
                    is_starred = excluded.is_starred,
                    received_at = excluded.received_at,
                    folder = excluded.folder,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                email.id,
                email.account_id,
                email.thread_id,
                email.message_id,
                email.subject,
                email.snippet,
                email.from_name,
                email.from_email,
                email.to_addresses,
                email.cc_addresses,
                email.bcc_addresses,
                email.body_text,
                email.body_html,
                email.labels_json,
                int(email.is_read),
                int(email.is_starred),
                email.received_at,
                email.folder.value
            ))

    def archive_email(self, email_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("UPDATE emails SET is_archived = 1 WHERE id = ?", (email_id,))

    def unarchive_email(self, email_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("UPDATE emails SET is_archived = 0 WHERE id = ?", (email_id,))

    def get_active_ids_by_account(self, account_id: str) -> Set[str]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT id FROM emails
                WHERE account_id = ? AND folder = 'inbox' AND is_archived = 0
            """, (account_id,)).fetchall()
            return {row['id'] for row in rows}

    def get_email(self, email_id: str) -> Optional[Email]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
            if not row:
                return None
            return Email(
                id=row['id'],
                account_id=row['account_id'],
                thread_id=row['thread_id'],
                message_id=row['message_id'],
                subject=row['subject'] or "",
                snippet=row['snippet'] or "",
                from_name=row['from_name'] or "",
                from_email=row['from_email'] or "",
                to_addresses=row['to_addresses'] or "",
                cc_addresses=row['cc_addresses'] or "",
                bcc_addresses=row['bcc_addresses'] or "",
                body_text=row['body_text'] or "",
                body_html=row['body_html'] or "",
                labels=json.loads(row['labels']) if row['labels'] else [],
                is_read=bool(row['is_read']),
                is_starred=bool(row['is_starred']),
                received_at=row['received_at'] or 0,
                folder=FolderScope(row['folder']),
                is_archived=bool(row['is_archived'])
            )

    def get_email_ids(self, account_id: str, archived: Optional[bool] = None) -> Set[str]:
        """Ids of every email of an account, optionally filtered by archived state."""
        query = "SELECT id FROM emails WHERE account_id = ?"
        params: List[Any] = [account_id]
        if archived is not None:
            query += " AND is_archived = ?"
            params.append(int(archived))
        with self._get_connection() as conn:
            return {row['id'] for row in conn.execute(query, params).fetchall()}

    def count_emails(self, account_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM emails WHERE account_id = ?", (account_id,)
            ).fetchone()
            return row['total']

    # ---- Attachments ----

    def upsert_attachment(self, attachment: Attachment) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO attachments (id, email_id, content_id, filename, mime_type, size, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                attachment.id,
                attachment.email_id,
                attachment.content_id,
                attachment.filename,
                attachment.mime_type,
                attachment.size,
                attachment.data
            ))

    def get_attachments(self, email_id: str) -> List[Attachment]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM attachments WHERE email_id = ? ORDER BY content_id", (email_id,)
            ).fetchall()
            return [
                Attachment(
                    email_id=row['email_id'],
                    content_id=row['content_id'],
                    filename=row['filename'],
                    mime_type=row['mime_type'],
                    size=row['size'],
                    data=row['data'] or b""
                )
                for row in rows
            ]

    # ---- Labels ----

    @staticmethod
    def _row_to_label(row: sqlite3.Row) -> Label:
        return Label(
            id=row['id'],
            account_id=row['account_id'],
            name=row['name'],
            color=row['color'],
            type=row['type'],
            remote_id=row['remote_id']
        )

    def upsert_label(self, label: Label) -> None:
        """Insert a label, or update the existing label with the same id."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO labels (id, account_id, name, color, type, remote_id)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    color = COALESCE(excluded.color, labels.color),
                    type = excluded.type,
                    remote_id = excluded.remote_id
            """, (label.id, label.account_id, label.name, label.color, label.type, label.remote_id))

    def get_label(self, label_id: str) -> Optional[Label]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM labels WHERE id = ?", (label_id,)).fetchone()
            return self._row_to_label(row) if row else None

    def get_label_by_name(self, account_id: str, name: str, label_type: Optional[str] = None) -> Optional[Label]:
        """
        Find a label by display name.

        Names are not unique across label types (a folder and a category may
        share one), so pass ``label_type`` to restrict the match.
        """
        query = "SELECT * FROM labels WHERE account_id = ? AND name = ?"
        params: List[Any] = [account_id, name]
        if label_type is not None:
            query += " AND type = ?"
            params.append(label_type)
        with self._get_connection() as conn:
            row = conn.execute(query + " ORDER BY id LIMIT 1", params).fetchone()
            return self._row_to_label(row) if row else None

    def get_labels(self, account_id: str) -> List[Label]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM labels WHERE account_id = ? ORDER BY type DESC, name ASC", (account_id,)
            ).fetchall()
            return [self._row_to_label(row) for row in rows]

    def remove_all_labels_from_email(self, email_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM email_labels WHERE email_id = ?", (email_id,))

    def add_label_to_email(self, email_id: str, label_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO email_labels (email_id, label_id) VALUES (?, ?)",
                (email_id, label_id)
            )

    def get_labels_for_email(self, email_id: str) -> Set[str]:
        """Ids of the labels associated with an email."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT label_id FROM email_labels WHERE email_id = ?", (email_id,)
            ).fetchall()
            return {row['label_id'] for row in rows}

    # ---- Drafts ----

    def upsert_draft(self, draft: Draft) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO drafts (id, account_id, remote_id, to_addresses, cc_addresses, bcc_addresses, subject, body)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    remote_id = excluded.remote_id,
                    to_addresses = excluded.to_addresses,
                    cc_addresses = excluded.cc_addresses,
                    bcc_addresses = excluded.bcc_addresses,
                    subject = excluded.subject,
                    body = excluded.body,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                draft.id,
                draft.account_id,
                draft.remote_id,
                draft.to_addresses,
                draft.cc_addresses,
                draft.bcc_addresses,
                draft.subject,
                draft.body
            ))

    def get_drafts(self, account_id: str) -> List[Draft]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM drafts WHERE account_id = ? ORDER BY id", (account_id,)
            ).fetchall()
            return [
                Draft(
                    id=row['id'],
                    account_id=row['account_id'],
                    remote_id=row['remote_id'],
                    to_addresses=row['to_addresses'] or "",
                    cc_addresses=row['cc_addresses'] or "",
                    bcc_addresses=row['bcc_addresses'] or "",
                    subject=row['subject'] or "",
                    body=row['body'] or ""
                )
                for row in rows
            ]

    # ---- Sync log ----

    def start_sync_log(self, account_id: str) -> int:
        """Start a sync log entry. Returns log ID."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO sync_log (account_id, started_at, status)
                VALUES (?, ?, 'running')
            """, (account_id, datetime.now().isoformat()))
            return cursor.lastrowid

    def complete_sync_log(
        self,
        log_id: int,
        status: str,
        emails_synced: int = 0,
        error: Optional[str] = None
    ) -> None:
        """Complete a sync log entry."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE sync_log
                SET completed_at = ?, status = ?, emails_synced = ?, error_message = ?
                WHERE id = ?
            """, (datetime.now().isoformat(), status, emails_synced, error, log_id))

    def get_sync_history(self, account_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent sync log entries."""
        with self._get_connection() as conn:
            if account_id:
                rows = conn.execute("""
                    SELECT * FROM sync_log WHERE account_id = ?
                    ORDER BY id DESC LIMIT ?
                """, (account_id, limit)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [dict(row) for row in rows]
