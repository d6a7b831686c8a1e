"""
Email synchronization manager.
Runs inbox, sent and drafts sync for every stored account, optionally on a
periodic background loop.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .config import Settings
from .errors import MailSyncError
from .models import SyncOptions, SyncResult
from .providers import get_provider
from .providers.base import EmailProvider
from .storage import EmailStorage
from .tokens import TokenProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., EmailProvider]


class EmailSyncManager:
    """
    Manages email synchronization for all configured accounts.

    A failing account never stops the others: its error is recorded in the
    sync log and in the returned results.
    """

    def __init__(
        self,
        storage: EmailStorage,
        token_provider: Optional[TokenProvider] = None,
        settings: Optional[Settings] = None,
        provider_factory: ProviderFactory = get_provider,
        **provider_kwargs
    ):
        """
        Initialize sync manager.

        Args:
            storage: EmailStorage instance
            token_provider: Token provider handed to OAuth providers
            settings: Sync settings (default: Settings())
            provider_factory: Builds a provider for an account
            **provider_kwargs: Extra arguments passed to every provider
        """
        self.storage = storage
        self.token_provider = token_provider
        self.settings = settings or Settings()
        self.provider_factory = provider_factory
        self.provider_kwargs = provider_kwargs
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _options(self, max_messages: int) -> SyncOptions:
        return SyncOptions(max_messages=max_messages, timeout=self.settings.timeout_seconds)

    def get_provider(self, account_id: str) -> EmailProvider:
        return self.provider_factory(
            account_id,
            self.storage,
            self.token_provider,
            batch_size=self.settings.batch_size,
            **self.provider_kwargs
        )

    async def start_periodic_sync(self, interval_minutes: Optional[int] = None):
        """Start periodic background sync."""
        if self._running:
            logger.warning("Sync already running")
            return

        interval = interval_minutes or self.settings.interval_minutes
        self._running = True
        self._task = asyncio.create_task(self._sync_loop(interval))
        logger.info(f"Started periodic email sync (every {interval} minutes)")

    async def stop_periodic_sync(self):
        """Stop periodic background sync."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Sync loop cancelled")
            self._task = None
        logger.info("Stopped periodic email sync")

    async def _sync_loop(self, interval_minutes: int):
        """Main sync loop."""
        while self._running:
            try:
                await self.sync_all_accounts()
            except Exception as e:
                logger.error(f"Error in sync loop: {e}")

            await asyncio.sleep(interval_minutes * 60)

    async def sync_all_accounts(self) -> Dict[str, Dict[str, Any]]:
        """
        Sync every stored account, one after the other.

        Returns:
            Dictionary with sync results per account id
        """
        results = {}
        for account in self.storage.list_accounts():
            results[account.id] = await self.sync_account(account.id)
        return results

    async def sync_account(self, account_id: str) -> Dict[str, Any]:
        """
        Sync inbox, sent folder and drafts of one account.

        Args:
            account_id: Account to sync

        Returns:
            Dictionary with the per-operation results
        """
        log_id = self.storage.start_sync_log(account_id)

        try:
            provider = self.get_provider(account_id)
        except MailSyncError as e:
            logger.error(f"Sync failed for account {account_id}: {e}")
            self.storage.complete_sync_log(log_id, 'failed', error=str(e))
            result = {'success': False, 'error': str(e)}
            self.last_results[account_id] = result
            return result

        inbox = await provider.sync(self._options(self.settings.max_messages))
        operations: Dict[str, SyncResult] = {'inbox': inbox}

        # An expired session fails every other operation the same way
        if not inbox.needs_reauth:
            operations['sent'] = await provider.sync_sent(self._options(self.settings.max_messages))
            operations['drafts'] = await provider.sync_drafts(self._options(self.settings.drafts_max_messages))

        errors = [f"{name}: {r.error}" for name, r in operations.items() if not r.success]
        emails_synced = inbox.synced + (operations['sent'].synced if 'sent' in operations else 0)

        if errors:
            self.storage.complete_sync_log(log_id, 'failed', emails_synced, "; ".join(errors))
            logger.warning(f"Sync for account {account_id} finished with errors: {'; '.join(errors)}")
        else:
            self.storage.complete_sync_log(log_id, 'success', emails_synced)
            logger.info(f"Sync completed for account {account_id}: {emails_synced} emails")

        result = {
            'success': not errors,
            'emails_synced': emails_synced,
            'needs_reauth': any(r.needs_reauth for r in operations.values()),
            'results': {name: r.to_dict() for name, r in operations.items()},
        }
        self.last_results[account_id] = result
        return result

    def get_sync_status(self) -> Dict[str, Any]:
        """Get current sync status."""
        accounts: List[Dict[str, Any]] = []
        for account in self.storage.list_accounts():
            last = self.last_results.get(account.id, {})
            accounts.append({
                'id': account.id,
                'email': account.email,
                'type': account.kind.value,
                'last_success': last.get('success'),
                'needs_reauth': last.get('needs_reauth', False),
            })

        return {
            'running': self._running,
            'accounts': accounts
        }
