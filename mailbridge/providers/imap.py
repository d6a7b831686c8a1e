"""
IMAP/SMTP email provider implementation.
Supports generic IMAP servers with SSL/TLS and password login.
"""

import asyncio
import functools
import imaplib
import time
from contextlib import asynccontextmanager
from email.errors import MessageError
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from ..errors import MailSyncError, PartialMessageError, ProtocolError, TransientNetworkError, UserActionError
from ..labels import IMAP_ARCHIVE_FOLDERS, IMAP_DRAFT_FOLDERS, IMAP_SENT_FOLDERS, IMAP_TRASH_FOLDERS
from ..mime import ExtractedBody, address_list, decode_header_value, extract_message, first_address, \
    header_date, html_to_preview, make_snippet, parse_raw_message
from ..models import Draft, Email, FolderScope, ProviderKind, SendParams, SendResult, SyncOptions, SyncResult
from .base import DEFAULT_DRAFTS_MAX_MESSAGES, EmailProvider
from .imap_session import ConnectionFactory, FetchedMessage, ImapSession, find_mailbox, mailbox_lock
from .smtp import SmtpSender, build_mime_message, recipients_of

ARCHIVE_FOLDER_NAME = "Archive"


def parse_imap_message(
    account_id: str,
    email_id: str,
    fetched: FetchedMessage,
    folder: FolderScope = FolderScope.INBOX
) -> Tuple[Email, ExtractedBody]:
    """
    Parse a fetched message into an Email.

    IMAP has no conversation id, so the thread id is In-Reply-To when
    present and the message's own Message-ID otherwise. Replies to replies
    therefore do not share a thread id with the first message.
    """
    msg = parse_raw_message(fetched.source)
    body = extract_message(msg)
    from_name, from_email = first_address(msg, 'From')
    message_id = str(msg.get('Message-ID') or '').strip()
    in_reply_to = str(msg.get('In-Reply-To') or '').strip()

    email = Email(
        id=email_id,
        account_id=account_id,
        thread_id=in_reply_to or message_id or None,
        message_id=message_id,
        subject=decode_header_value(msg.get('Subject')) or "(No subject)",
        snippet=make_snippet(body.text) if body.text else html_to_preview(body.html),
        from_name=from_name,
        from_email=from_email,
        to_addresses=address_list(msg, 'To'),
        cc_addresses=address_list(msg, 'Cc'),
        body_text=body.text,
        body_html=body.html,
        labels=[],
        is_read=fetched.is_seen,
        is_starred=fetched.is_flagged,
        received_at=header_date(msg, fetched.internal_date or int(time.time())),
        folder=folder
    )
    return email, body


class ImapSmtpProvider(EmailProvider):
    """
    IMAP email provider for generic email servers, with SMTP submission.

    Every operation opens its own session under the account's mailbox lock.
    """

    id_prefix = ""
    draft_prefix = "imap-draft:"
    sent_folders: Sequence[str] = IMAP_SENT_FOLDERS
    draft_folders: Sequence[str] = IMAP_DRAFT_FOLDERS
    trash_folders: Sequence[str] = IMAP_TRASH_FOLDERS
    archive_folders: Sequence[str] = IMAP_ARCHIVE_FOLDERS

    def __init__(
        self,
        *args,
        connection_factory: Optional[ConnectionFactory] = None,
        smtp_sender: Optional[SmtpSender] = None,
        **kwargs
    ):
        """
        Initialize IMAP provider.

        Args:
            connection_factory: Creates the imaplib connection (default: IMAP4_SSL/IMAP4)
            smtp_sender: SMTP submission client (default: built from the account)
        """
        super().__init__(*args, **kwargs)
        self._connection_factory = connection_factory
        self._smtp_sender = smtp_sender

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind.IMAP

    # ---- Ids ----

    def make_email_id(self, uid: int, folder: FolderScope = FolderScope.INBOX) -> str:
        if folder == FolderScope.SENT:
            return f"{self.id_prefix}{self.account_id}:sent:{uid}"
        return f"{self.id_prefix}{self.account_id}:{uid}"

    @staticmethod
    def extract_uid(email_id: str) -> int:
        """UID is the last ``:`` separated segment of a local id."""
        try:
            return int(email_id.rsplit(':', 1)[-1])
        except ValueError as e:
            raise UserActionError(f"Not an IMAP email id: {email_id}") from e

    @staticmethod
    def is_sent_id(email_id: str) -> bool:
        return ':sent:' in email_id

    # ---- Sessions ----

    def _imap_endpoint(self) -> Tuple[str, int, bool]:
        return self.account.imap_host, self.account.imap_port or 993, self.account.imap_use_tls

    def _smtp_endpoint(self) -> Tuple[str, int, bool]:
        return self.account.smtp_host, self.account.smtp_port or 587, self.account.smtp_use_tls

    async def _authenticate(self, session: ImapSession) -> None:
        await self._run(session.login, self.account.login, self.account.password or "")

    async def _smtp_access_token(self) -> Optional[str]:
        """Bearer token for SMTP XOAUTH2, or None for password login."""
        return None

    def _translate_error(self, error: Exception) -> MailSyncError:
        if isinstance(error, OSError):
            return TransientNetworkError(str(error))
        return ProtocolError(str(error))

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        """Run a blocking protocol call in the executor."""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except MailSyncError:
            raise
        except (imaplib.IMAP4.error, OSError) as e:
            raise self._translate_error(e) from e

    @asynccontextmanager
    async def _session(self):
        """Connect, authenticate and hold the mailbox lock for one unit of work."""
        async with mailbox_lock(self.account_id):
            host, port, use_tls = self._imap_endpoint()
            session = ImapSession(host, port, use_tls, connection_factory=self._connection_factory)
            await self._run(session.connect)
            try:
                await self._authenticate(session)
                yield session
            except asyncio.CancelledError:
                # The executor thread of the cancelled call keeps running; logout waits for it
                session.abort()
                raise
            finally:
                await self._run(session.logout)

    async def _find_folder(self, session: ImapSession, candidates: Sequence[str]) -> Optional[str]:
        mailboxes = await self._run(session.list_mailboxes)
        return find_mailbox(mailboxes, candidates)

    async def _fetch_recent(self, session: ImapSession, folder: str, max_messages: int) -> List[FetchedMessage]:
        """Fetch the window ``max(1, exists - max_messages + 1):*`` of a folder."""
        total = await self._run(session.select, folder)
        if total == 0:
            return []
        start = max(1, total - max_messages + 1)
        return await self._run(session.fetch_window, start)

    # ---- Sync ----

    def _store_fetched(self, messages: List[FetchedMessage], folder: FolderScope) -> Tuple[int, Set[str]]:
        inbox = folder == FolderScope.INBOX
        seen_ids: Set[str] = set()
        synced = 0
        for fetched in messages:
            email_id = self.make_email_id(fetched.uid, folder)
            try:
                email, body = parse_imap_message(self.account_id, email_id, fetched, folder)
            except (MessageError, LookupError, TypeError, ValueError) as e:
                self.log.warning(str(PartialMessageError(email_id, f"parse failed: {e}")))
                continue

            self._store_email(email, [], unarchive=inbox)
            for info in body.inline_images:
                self._store_inline_image(email.id, info, info.data or b"")

            seen_ids.add(email.id)
            synced += 1
        return synced, seen_ids

    async def _sync(self, options: SyncOptions) -> SyncResult:
        async with self._session() as session:
            messages = await self._fetch_recent(session, options.folder or 'INBOX', self._max_messages(options))

        synced, seen_ids = self._store_fetched(messages, FolderScope.INBOX)
        self._reconcile(seen_ids)
        return SyncResult(synced=synced, total=len(messages))

    async def _sync_sent(self, options: SyncOptions) -> SyncResult:
        async with self._session() as session:
            folder = await self._find_folder(session, self.sent_folders)
            if not folder:
                return SyncResult(error="Sent folder not found")
            messages = await self._fetch_recent(session, folder, self._max_messages(options))

        synced, _ = self._store_fetched(messages, FolderScope.SENT)
        return SyncResult(synced=synced, total=len(messages))

    async def _sync_drafts(self, options: SyncOptions) -> SyncResult:
        async with self._session() as session:
            folder = await self._find_folder(session, self.draft_folders)
            if not folder:
                return SyncResult(error="Drafts folder not found")
            messages = await self._fetch_recent(
                session, folder, self._max_messages(options, DEFAULT_DRAFTS_MAX_MESSAGES)
            )

        synced = 0
        for fetched in messages:
            draft_id = f"{self.draft_prefix}{self.account_id}:{fetched.uid}"
            try:
                parsed, _ = parse_imap_message(self.account_id, draft_id, fetched)
            except (MessageError, LookupError, TypeError, ValueError) as e:
                self.log.warning(str(PartialMessageError(draft_id, f"parse failed: {e}")))
                continue
            self.store.upsert_draft(Draft(
                id=draft_id,
                account_id=self.account_id,
                remote_id=str(fetched.uid),
                to_addresses=parsed.to_addresses,
                cc_addresses=parsed.cc_addresses,
                subject=parsed.subject,
                body=parsed.body_html or parsed.body_text
            ))
            synced += 1

        return SyncResult(synced=synced, total=len(messages))

    # ---- Actions ----

    async def _action(self, description: str, work: Callable[[ImapSession], Awaitable[None]]) -> None:
        try:
            async with self._session() as session:
                await work(session)
        except (ProtocolError, TransientNetworkError) as e:
            raise UserActionError(f"{description} failed: {e}") from e
        self.log.info(description)

    async def _select_source(self, session: ImapSession, email_id: str) -> None:
        """Select the folder an email was synced from."""
        folder = 'INBOX'
        if self.is_sent_id(email_id):
            folder = await self._find_folder(session, self.sent_folders)
            if not folder:
                raise UserActionError("Sent folder not found")
        await self._run(session.select, folder)

    async def _set_flag(self, email_id: str, flag: str, enabled: bool) -> None:
        uid = self.extract_uid(email_id)

        async def work(session: ImapSession) -> None:
            await self._select_source(session, email_id)
            if enabled:
                await self._run(session.add_flags, uid, flag)
            else:
                await self._run(session.remove_flags, uid, flag)

        action = "Added" if enabled else "Removed"
        await self._action(f"{action} {flag} on message {uid}", work)

    async def mark_read(self, email_id: str) -> None:
        await self._set_flag(email_id, '\\Seen', True)

    async def mark_unread(self, email_id: str) -> None:
        await self._set_flag(email_id, '\\Seen', False)

    async def star(self, email_id: str) -> None:
        await self._set_flag(email_id, '\\Flagged', True)

    async def unstar(self, email_id: str) -> None:
        await self._set_flag(email_id, '\\Flagged', False)

    async def archive(self, email_id: str) -> None:
        uid = self.extract_uid(email_id)

        async def work(session: ImapSession) -> None:
            folder = await self._find_folder(session, self.archive_folders)
            await self._run(session.select, 'INBOX')
            if folder:
                await self._run(session.move, uid, folder)
                return
            try:
                await self._run(session.create_mailbox, ARCHIVE_FOLDER_NAME)
                await self._run(session.move, uid, ARCHIVE_FOLDER_NAME)
            except ProtocolError as e:
                raise UserActionError("No archive folder available on this server") from e

        await self._action(f"Archived message {uid}", work)

    async def unarchive(self, email_id: str) -> None:
        uid = self.extract_uid(email_id)

        async def work(session: ImapSession) -> None:
            folder = await self._find_folder(session, self.archive_folders)
            if not folder:
                raise UserActionError("Archive folder not found")
            await self._run(session.select, folder)
            await self._run(session.move, uid, 'INBOX')

        await self._action(f"Unarchived message {uid}", work)

    async def trash(self, email_id: str) -> None:
        uid = self.extract_uid(email_id)

        async def work(session: ImapSession) -> None:
            folder = await self._find_folder(session, self.trash_folders)
            await self._select_source(session, email_id)
            if folder:
                await self._run(session.move, uid, folder)
            else:
                await self._run(session.delete, uid)

        await self._action(f"Trashed message {uid}", work)

    async def untrash(self, email_id: str) -> None:
        uid = self.extract_uid(email_id)

        async def work(session: ImapSession) -> None:
            folder = await self._find_folder(session, self.trash_folders)
            if not folder:
                raise UserActionError("Trash folder not found")
            await self._run(session.select, folder)
            await self._run(session.move, uid, 'INBOX')

        await self._action(f"Restored message {uid}", work)

    async def permanent_delete(self, email_id: str) -> None:
        uid = self.extract_uid(email_id)

        async def work(session: ImapSession) -> None:
            folder = await self._find_folder(session, self.trash_folders)
            await self._run(session.select, folder or 'INBOX')
            await self._run(session.delete, uid)

        await self._action(f"Permanently deleted message {uid}", work)

    async def delete_draft(self, draft_id: str) -> None:
        uid = self.extract_uid(draft_id)

        async def work(session: ImapSession) -> None:
            folder = await self._find_folder(session, self.draft_folders)
            if not folder:
                raise UserActionError("Drafts folder not found")
            await self._run(session.select, folder)
            await self._run(session.delete, uid)

        await self._action(f"Deleted draft {uid}", work)

    # ---- Send ----

    def _get_smtp_sender(self) -> SmtpSender:
        if self._smtp_sender is None:
            host, port, use_tls = self._smtp_endpoint()
            self._smtp_sender = SmtpSender(host, port, use_tls)
        return self._smtp_sender

    async def send(self, params: SendParams) -> SendResult:
        message = build_mime_message(params, params.from_address or self.account.display_address)
        try:
            access_token = await self._smtp_access_token()
            await self._run(
                self._get_smtp_sender().send,
                message,
                recipients_of(params),
                self.account.login,
                self.account.password,
                access_token
            )
        except MailSyncError as e:
            self.log.error(f"Send failed: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=message['Message-ID'], thread_id=params.thread_id)

    async def validate_credentials(self) -> bool:
        try:
            async with self._session():
                pass
            return True
        except MailSyncError as e:
            self.log.warning(f"IMAP validation failed: {e}")
            return False
