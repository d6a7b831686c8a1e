"""
Multi-provider mail synchronization.
Supports Gmail, Microsoft 365, Yahoo and generic IMAP/SMTP servers.
"""

from .errors import AuthError, MailSyncError, UserActionError, human_friendly_message
from .models import Account, Email, ProviderKind, SendParams, SendResult, SyncOptions, SyncResult
from .providers import EmailProvider, get_provider
from .storage import EmailStorage, MailStore
from .sync import EmailSyncManager
from .tokens import StoredTokenProvider, TokenProvider

__all__ = [
    'Account',
    'AuthError',
    'Email',
    'EmailProvider',
    'EmailStorage',
    'EmailSyncManager',
    'MailStore',
    'MailSyncError',
    'ProviderKind',
    'SendParams',
    'SendResult',
    'StoredTokenProvider',
    'SyncOptions',
    'SyncResult',
    'TokenProvider',
    'UserActionError',
    'get_provider',
    'human_friendly_message',
]
