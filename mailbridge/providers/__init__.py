"""
Email providers for different email services.
"""

from typing import Dict, Type, Union

from ..errors import MailSyncError
from ..models import Account, ProviderKind
from ..storage import MailStore
from ..tokens import TokenProvider
from .base import EmailProvider
from .gmail import GmailProvider
from .imap import ImapSmtpProvider
from .microsoft import MicrosoftProvider
from .yahoo import YahooProvider

PROVIDER_CLASSES: Dict[ProviderKind, Type[EmailProvider]] = {
    ProviderKind.GMAIL: GmailProvider,
    ProviderKind.MICROSOFT: MicrosoftProvider,
    ProviderKind.YAHOO: YahooProvider,
    ProviderKind.IMAP: ImapSmtpProvider,
}


def get_provider(
    account: Union[Account, str],
    store: MailStore,
    token_provider: TokenProvider = None,
    **kwargs
) -> EmailProvider:
    """
    Create the provider matching an account's kind.

    Args:
        account: Account or account id to look up in the store
        store: Persistent store the provider writes to
        token_provider: Token provider for OAuth accounts
        **kwargs: Extra provider options (logger, hooks, test transports)

    Returns:
        EmailProvider instance

    Raises:
        MailSyncError: If the account does not exist or its kind is unknown
    """
    if isinstance(account, str):
        found = store.get_account(account)
        if found is None:
            raise MailSyncError("Account not found")
        account = found

    try:
        provider_class = PROVIDER_CLASSES[ProviderKind(account.kind)]
    except (KeyError, ValueError) as e:
        raise MailSyncError(f"Unsupported provider kind: {account.kind}") from e
    return provider_class(account, store, token_provider, **kwargs)


__all__ = [
    'EmailProvider',
    'GmailProvider',
    'MicrosoftProvider',
    'ImapSmtpProvider',
    'YahooProvider',
    'PROVIDER_CLASSES',
    'get_provider',
]
