"""
Abstract base class for email providers.
Defines the contract that every protocol adapter implements.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional

from ..errors import AuthError
from ..mime import AttachmentInfo
from ..models import Account, Attachment, Email, ProviderKind, SendParams, SendResult, SyncOptions, SyncResult
from ..reconcile import reconcile_archived
from ..storage import MailStore
from ..tokens import TokenProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 100
DEFAULT_DRAFTS_MAX_MESSAGES = 50
DEFAULT_BATCH_SIZE = 20

SyncHook = Callable[[str, SyncResult], None]


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    The sync family (``sync``, ``sync_sent``, ``sync_drafts``) never raises:
    every failure is reported through the returned SyncResult so a caller
    iterating many accounts is not halted by one of them. Single-message
    actions raise UserActionError or AuthError.
    """

    def __init__(
        self,
        account: Account,
        store: MailStore,
        token_provider: Optional[TokenProvider] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        log: Optional[logging.Logger] = None,
        on_sync: Optional[SyncHook] = None
    ):
        """
        Initialize the email provider.

        Args:
            account: The account this provider instance works on
            store: Persistent store written by the sync operations
            token_provider: Resolves bearer tokens for OAuth accounts
            batch_size: Maximum number of concurrent message fetches
            log: Logger to report through (default: module logger)
            on_sync: Optional hook called with (operation, result) after every sync
        """
        self.account = account
        self.store = store
        self.token_provider = token_provider
        self.batch_size = batch_size
        self.on_sync = on_sync
        self.log = logging.LoggerAdapter(
            log or logger,
            {'provider': self.provider_kind.value, 'account_id': account.id}
        )

    @property
    @abstractmethod
    def provider_kind(self) -> ProviderKind:
        """Return the provider kind identifier."""
        pass

    @property
    def account_id(self) -> str:
        return self.account.id

    # ---- Sync family ----

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Sync the inbox and reconcile the archived state of local emails.

        Args:
            options: Window size, folder override and timeout

        Returns:
            SyncResult with synced/total counts or an error
        """
        return await self._run_sync('sync', self._sync, options)

    async def sync_sent(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """Sync the sent folder. Sent emails are never reconciled."""
        return await self._run_sync('sync_sent', self._sync_sent, options)

    async def sync_drafts(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """Sync remote drafts into the drafts table."""
        return await self._run_sync('sync_drafts', self._sync_drafts, options)

    async def _run_sync(self, operation: str, func, options: Optional[SyncOptions]) -> SyncResult:
        options = options or SyncOptions()
        try:
            if options.timeout:
                result = await asyncio.wait_for(func(options), timeout=options.timeout)
            else:
                result = await func(options)
        except asyncio.TimeoutError:
            self.log.error(f"{operation} timed out after {options.timeout}s")
            result = SyncResult(error="Sync timed out")
        except AuthError as e:
            self.log.warning(f"{operation} authentication failed: {e}")
            result = SyncResult(error=str(e), needs_reauth=e.needs_reauth)
        except Exception as e:
            self.log.error(f"{operation} failed: {e}")
            result = SyncResult(error=str(e))

        if result.success:
            self.log.info(f"{operation} finished: {result.synced}/{result.total} emails")

        if self.on_sync is not None:
            try:
                self.on_sync(operation, result)
            except Exception as e:
                self.log.warning(f"Sync hook failed: {e}")

        return result

    @abstractmethod
    async def _sync(self, options: SyncOptions) -> SyncResult:
        pass

    @abstractmethod
    async def _sync_sent(self, options: SyncOptions) -> SyncResult:
        pass

    @abstractmethod
    async def _sync_drafts(self, options: SyncOptions) -> SyncResult:
        pass

    # ---- Single-message actions ----

    @abstractmethod
    async def mark_read(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def mark_unread(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def star(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def unstar(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def archive(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def unarchive(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def trash(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def untrash(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def permanent_delete(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def delete_draft(self, draft_id: str) -> None:
        """
        Delete a draft on the remote side.

        Args:
            draft_id: Remote id of the draft
        """
        pass

    @abstractmethod
    async def send(self, params: SendParams) -> SendResult:
        """
        Send an email.

        Args:
            params: Recipients, subject, HTML body and threading headers

        Returns:
            SendResult; failures are reported, not raised
        """
        pass

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """
        Check that the stored credentials are usable.

        Returns:
            True if the remote side accepted them
        """
        pass

    # ---- Shared helpers ----

    async def _get_access_token(self) -> str:
        """Resolve a bearer token or raise AuthError."""
        if self.token_provider is None:
            raise AuthError("No token provider configured")
        token = await self.token_provider.get_access_token(self.account.id)
        if not token.access_token:
            raise AuthError(token.error or "Not authenticated", needs_reauth=token.needs_reauth)
        return token.access_token

    def _store_email(self, email: Email, label_ids: Iterable[str], unarchive: bool = True) -> None:
        """
        Upsert an email and fully replace its label associations.

        Args:
            email: Parsed email
            label_ids: Local label ids; ids without a stored label are ignored
            unarchive: Clear the archived flag (the email was seen in the inbox)
        """
        self.store.upsert_email(email)
        if unarchive:
            self.store.unarchive_email(email.id)
        self.store.remove_all_labels_from_email(email.id)
        for label_id in label_ids:
            if self.store.get_label(label_id):
                self.store.add_label_to_email(email.id, label_id)

    def _store_inline_image(self, email_id: str, info: AttachmentInfo, data: bytes) -> None:
        if not info.is_inline_image:
            return
        self.store.upsert_attachment(Attachment(
            email_id=email_id,
            content_id=info.content_id,
            filename=info.filename,
            mime_type=info.mime_type,
            size=len(data),
            data=data
        ))

    def _reconcile(self, seen_ids: Iterable[str]) -> int:
        return len(reconcile_archived(self.store, self.account.id, seen_ids))

    @staticmethod
    def _max_messages(options: SyncOptions, default: int = DEFAULT_MAX_MESSAGES) -> int:
        return options.max_messages or default
