import asyncio

import pytest

from mailbridge.config import Settings
from mailbridge.errors import MailSyncError
from mailbridge.models import SyncResult
from mailbridge.providers import get_provider
from mailbridge.sync import EmailSyncManager


class ScriptedProvider:
    """Stands in for a provider; results are set per account."""

    def __init__(self, account_id, results, calls):
        self.account_id = account_id
        self.results = results
        self.calls = calls

    async def _run(self, operation, options):
        self.calls.append((self.account_id, operation, options.max_messages, options.timeout))
        return self.results.get(operation, SyncResult(synced=1, total=1))

    async def sync(self, options):
        return await self._run("sync", options)

    async def sync_sent(self, options):
        return await self._run("sync_sent", options)

    async def sync_drafts(self, options):
        return await self._run("sync_drafts", options)


@pytest.fixture()
def calls():
    return []


def scripted_factory(results_by_account, calls):
    def factory(account_id, store, token_provider, **kwargs):
        if account_id not in results_by_account:
            raise MailSyncError("Account not found")
        return ScriptedProvider(account_id, results_by_account[account_id], calls)
    return factory


@pytest.mark.asyncio
async def test_sync_account_runs_every_operation(store, gmail_account, calls):
    settings = Settings(max_messages=30, drafts_max_messages=5, timeout_seconds=60)
    manager = EmailSyncManager(store, settings=settings, provider_factory=scripted_factory({gmail_account.id: {}}, calls))

    result = await manager.sync_account(gmail_account.id)

    assert result["success"] is True
    assert result["emails_synced"] == 2
    assert calls == [
        (gmail_account.id, "sync", 30, 60),
        (gmail_account.id, "sync_sent", 30, 60),
        (gmail_account.id, "sync_drafts", 5, 60),
    ]
    history = store.get_sync_history(gmail_account.id)
    assert history[0]["status"] == "success"
    assert history[0]["emails_synced"] == 2


@pytest.mark.asyncio
async def test_failing_account_does_not_stop_others(store, gmail_account, microsoft_account, calls):
    results = {
        gmail_account.id: {"sync_sent": SyncResult(error="Sent folder not found")},
        microsoft_account.id: {},
    }
    manager = EmailSyncManager(store, provider_factory=scripted_factory(results, calls))

    results = await manager.sync_all_accounts()

    assert results[gmail_account.id]["success"] is False
    assert results[gmail_account.id]["results"]["sent"]["error"] == "Sent folder not found"
    assert results[microsoft_account.id]["success"] is True
    assert store.get_sync_history(gmail_account.id)[0]["error_message"] == "sent: Sent folder not found"


@pytest.mark.asyncio
async def test_reauth_skips_remaining_operations(store, gmail_account, calls):
    results = {gmail_account.id: {"sync": SyncResult(error="Session expired", needs_reauth=True)}}
    manager = EmailSyncManager(store, provider_factory=scripted_factory(results, calls))

    result = await manager.sync_account(gmail_account.id)

    assert result["needs_reauth"] is True
    assert [call[1] for call in calls] == ["sync"]
    status = manager.get_sync_status()
    assert status["accounts"][0]["needs_reauth"] is True


@pytest.mark.asyncio
async def test_provider_creation_failure_is_logged(store, gmail_account, calls):
    manager = EmailSyncManager(store, provider_factory=scripted_factory({}, calls))

    result = await manager.sync_account(gmail_account.id)

    assert result == {"success": False, "error": "Account not found"}
    assert store.get_sync_history(gmail_account.id)[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_real_providers_are_built_with_batch_size(store, imap_account, imap_server):
    manager = EmailSyncManager(
        store,
        settings=Settings(batch_size=7),
        connection_factory=imap_server.connect,
    )

    provider = manager.get_provider(imap_account.id)
    assert provider.batch_size == 7

    result = await manager.sync_account(imap_account.id)

    assert result["results"]["inbox"] == {"synced": 0, "total": 0}
    assert result["results"]["sent"]["error"] == "Sent folder not found"


@pytest.mark.asyncio
async def test_periodic_sync_start_and_stop(store, gmail_account, calls):
    manager = EmailSyncManager(store, provider_factory=scripted_factory({gmail_account.id: {}}, calls))

    await manager.start_periodic_sync(interval_minutes=60)
    await manager.start_periodic_sync(interval_minutes=60)
    for _ in range(20):
        if calls:
            break
        await asyncio.sleep(0.01)

    assert manager.get_sync_status()["running"] is True
    await manager.stop_periodic_sync()

    assert manager.get_sync_status()["running"] is False
    assert [call[1] for call in calls] == ["sync", "sync_sent", "sync_drafts"]


def test_default_factory_is_get_provider(store):
    assert EmailSyncManager(store).provider_factory is get_provider
