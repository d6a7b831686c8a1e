"""
Yahoo Mail provider.
IMAP/SMTP with XOAUTH2 authentication using tokens from the token provider.
"""

from typing import Optional, Tuple

from ..errors import AuthError, MailSyncError, ProtocolError, TransientNetworkError
from ..labels import map_imap_folder
from ..models import ProviderKind, SyncOptions, SyncResult
from .imap import ImapSmtpProvider
from .imap_session import ImapSession

YAHOO_IMAP_HOST = "imap.mail.yahoo.com"
YAHOO_IMAP_PORT = 993
YAHOO_SMTP_HOST = "smtp.mail.yahoo.com"
YAHOO_SMTP_PORT = 465

# Substrings of error text that indicate a rejected credential
AUTH_ERROR_MARKERS = (
    "authentication",
    "auth",
    "login",
    "credentials",
    "invalid_grant",
    "token",
)


def is_auth_error(error: BaseException) -> bool:
    """
    Heuristically decide whether a protocol error is an authentication failure.

    imaplib does not surface structured auth failure codes, so the error
    text is inspected along with any ``authentication_failed`` attribute
    or ``AUTHENTICATIONFAILED`` code.
    """
    text = str(error).lower()
    if any(marker in text for marker in AUTH_ERROR_MARKERS):
        return True
    if getattr(error, 'authentication_failed', False):
        return True
    return getattr(error, 'code', None) == "AUTHENTICATIONFAILED"


class YahooProvider(ImapSmtpProvider):
    """Yahoo Mail over IMAP/SMTP with XOAUTH2."""

    id_prefix = "yahoo:"
    draft_prefix = "yahoo-draft:"
    sent_folders = ("Sent", "Sent Items", "Sent Mail")
    draft_folders = ("Drafts", "Draft")

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind.YAHOO

    def _imap_endpoint(self) -> Tuple[str, int, bool]:
        return YAHOO_IMAP_HOST, YAHOO_IMAP_PORT, True

    def _smtp_endpoint(self) -> Tuple[str, int, bool]:
        return YAHOO_SMTP_HOST, YAHOO_SMTP_PORT, True

    async def _authenticate(self, session: ImapSession) -> None:
        access_token = await self._get_access_token()
        await self._run(session.authenticate_xoauth2, self.account.email, access_token)

    async def _smtp_access_token(self) -> Optional[str]:
        return await self._get_access_token()

    def _translate_error(self, error: Exception) -> MailSyncError:
        if is_auth_error(error):
            return AuthError(str(error), needs_reauth=True)
        return super()._translate_error(error)

    async def sync_folders(self) -> int:
        """
        Upsert the account's IMAP folders as labels of type ``folder``.

        Special folders (inbox, sent, drafts, trash, spam) are skipped.

        Returns:
            Number of folder labels written
        """
        async with self._session() as session:
            mailboxes = await self._run(session.list_mailboxes)

        count = 0
        for mailbox in mailboxes:
            label = map_imap_folder(self.account_id, mailbox.path, mailbox.name, id_prefix=self.id_prefix)
            if label is None:
                continue
            self.store.upsert_label(label)
            count += 1
        self.log.debug(f"Synced {count} Yahoo folders")
        return count

    async def _sync(self, options: SyncOptions) -> SyncResult:
        try:
            await self.sync_folders()
        except (ProtocolError, TransientNetworkError) as e:
            self.log.warning(f"Error syncing folders: {e}")
        return await super()._sync(options)
