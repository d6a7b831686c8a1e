import asyncio
import logging

import pytest

from mailbridge.errors import MailSyncError
from mailbridge.models import Account, ProviderKind, SyncOptions, SyncResult
from mailbridge.providers import (
    GmailProvider,
    ImapSmtpProvider,
    MicrosoftProvider,
    YahooProvider,
    get_provider,
)


@pytest.mark.parametrize("fixture, expected", [
    ("gmail_account", GmailProvider),
    ("microsoft_account", MicrosoftProvider),
    ("yahoo_account", YahooProvider),
    ("imap_account", ImapSmtpProvider),
])
def test_provider_selection_by_kind(request, store, tokens, fixture, expected):
    account = request.getfixturevalue(fixture)

    by_account = get_provider(account, store, tokens)
    by_id = get_provider(account.id, store, tokens)

    assert type(by_account) is expected
    assert type(by_id) is expected
    assert by_id.account == account
    assert by_id.provider_kind == account.kind


def test_unknown_account(store):
    with pytest.raises(MailSyncError, match="Account not found"):
        get_provider("missing", store)


class SlowProvider(ImapSmtpProvider):
    delay = 0.5

    async def _sync(self, options):
        await asyncio.sleep(self.delay)
        return SyncResult(synced=1, total=1)

    async def _sync_sent(self, options):
        raise RuntimeError("socket exploded")


@pytest.mark.asyncio
async def test_timeout_returns_failed_result(store, imap_account):
    provider = SlowProvider(imap_account, store)

    result = await provider.sync(SyncOptions(timeout=0.01))

    assert result.success is False
    assert result.error == "Sync timed out"
    assert result.synced == 0


@pytest.mark.asyncio
async def test_no_timeout_when_unset(store, imap_account):
    provider = SlowProvider(imap_account, store)
    provider.delay = 0

    result = await provider.sync()

    assert result.success
    assert result.synced == 1


@pytest.mark.asyncio
async def test_unexpected_error_becomes_result(store, imap_account):
    result = await SlowProvider(imap_account, store).sync_sent()

    assert result.error == "socket exploded"
    assert result.needs_reauth is False


@pytest.mark.asyncio
async def test_sync_hook_and_logger(store, imap_account, caplog):
    seen = []
    log = logging.getLogger("mailbridge.test")
    provider = SlowProvider(imap_account, store, log=log, on_sync=lambda op, res: seen.append((op, res.success)))
    provider.delay = 0

    with caplog.at_level(logging.INFO, logger="mailbridge.test"):
        await provider.sync()
        await provider.sync_sent()

    assert seen == [("sync", True), ("sync_sent", False)]
    records = [r for r in caplog.records if r.name == "mailbridge.test"]
    assert records[0].provider == "imap"
    assert records[0].account_id == "acct-imap"


@pytest.mark.asyncio
async def test_failing_hook_does_not_break_sync(store, imap_account):
    def hook(operation, result):
        raise ValueError("metrics backend down")

    provider = SlowProvider(imap_account, store, on_sync=hook)
    provider.delay = 0

    result = await provider.sync()

    assert result.success


def test_account_defaults():
    account = Account(id="x", kind=ProviderKind.IMAP, email="me@example.com", name="Me")

    assert account.login == "me@example.com"
    assert account.display_address == "Me <me@example.com>"
