"""
Access-token resolution for OAuth accounts.

TokenProvider is the contract the REST and XOAUTH2 providers depend on.
StoredTokenProvider serves the token kept in the store and refreshes it
with the account's refresh token when it is about to expire.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import msal
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from .config import OAuthClients
from .models import Account, ProviderKind, TokenResult
from .storage import MailStore

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
YAHOO_TOKEN_URI = "https://api.login.yahoo.com/oauth2/get_token"

MICROSOFT_SCOPES = [
    "https://graph.microsoft.com/Mail.ReadWrite",
    "https://graph.microsoft.com/Mail.Send",
    "https://graph.microsoft.com/User.Read",
]

# Refresh tokens that expire within this many seconds
EXPIRY_BUFFER_SECONDS = 300

REAUTH_ERRORS = ("invalid_grant", "invalid_token", "interaction_required")


class TokenProvider(ABC):
    """Resolves a usable bearer credential for an account."""

    @abstractmethod
    async def get_access_token(self, account_id: str) -> TokenResult:
        """
        Get a valid access token.

        Args:
            account_id: Account to resolve

        Returns:
            TokenResult with either ``access_token`` or ``error``
        """
        pass


class StaticTokenProvider(TokenProvider):
    """Serves fixed tokens. Useful for scripts and tests."""

    def __init__(self, tokens: Dict[str, str]):
        self.tokens = dict(tokens)

    async def get_access_token(self, account_id: str) -> TokenResult:
        token = self.tokens.get(account_id)
        if not token:
            return TokenResult(error="Not authenticated", needs_reauth=True)
        return TokenResult(access_token=token)


class StoredTokenProvider(TokenProvider):
    """
    Token provider backed by the account rows of the store.

    One refresh variant exists per OAuth provider kind: Google through
    google-auth, Microsoft through MSAL, Yahoo through its token endpoint.
    """

    def __init__(
        self,
        store: MailStore,
        clients: OAuthClients,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.store = store
        self.clients = clients
        self._transport = transport
        self._msal_app: Optional[msal.ConfidentialClientApplication] = None

    async def get_access_token(self, account_id: str) -> TokenResult:
        account = self.store.get_account(account_id)
        if not account:
            return TokenResult(error="Account not found")

        if account.kind == ProviderKind.IMAP:
            return TokenResult(error="Account does not use OAuth")

        now = int(time.time())
        if account.access_token and account.token_expires_at and \
                account.token_expires_at > now + EXPIRY_BUFFER_SECONDS:
            return TokenResult(access_token=account.access_token)

        if not account.refresh_token:
            return TokenResult(error="No refresh token available", needs_reauth=True)

        logger.info(f"Refreshing {account.kind.value} token for {account.email}")

        try:
            if account.kind == ProviderKind.GMAIL:
                tokens = await self._refresh_google(account)
            elif account.kind == ProviderKind.MICROSOFT:
                tokens = await self._refresh_microsoft(account)
            else:
                tokens = await self._refresh_yahoo(account)
        except httpx.HTTPError as e:
            logger.error(f"Token refresh error for {account.email}: {e}")
            return TokenResult(error="Network error during token refresh")

        if tokens.get('error'):
            error = tokens['error']
            logger.error(f"Token refresh failed for {account.email}: {tokens.get('error_description', error)}")
            if error in REAUTH_ERRORS:
                return TokenResult(error="Session expired. Please re-authenticate.", needs_reauth=True)
            return TokenResult(error=tokens.get('error_description') or "Token refresh failed")

        access_token = tokens.get('access_token')
        if not access_token:
            return TokenResult(error="Token refresh returned no access token")

        expires_at = int(time.time()) + int(tokens.get('expires_in') or 3600)
        self.store.update_account_tokens(account.id, access_token, tokens.get('refresh_token'), expires_at)
        logger.info(f"Token refreshed for {account.email}")
        return TokenResult(access_token=access_token)

    async def _refresh_google(self, account: Account) -> Dict[str, Any]:
        creds = Credentials(
            token=None,
            refresh_token=account.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.clients.google_client_id,
            client_secret=self.clients.google_client_secret
        )

        def refresh() -> Dict[str, Any]:
            try:
                creds.refresh(Request())
            except RefreshError as e:
                message = str(e)
                code = 'invalid_grant' if 'invalid_grant' in message else 'refresh_failed'
                return {'error': code, 'error_description': message}
            expires_in = 3600
            if creds.expiry:
                expires_in = max(0, int(creds.expiry.timestamp() - time.time()))
            return {'access_token': creds.token, 'expires_in': expires_in}

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, refresh)

    def _get_msal_app(self) -> msal.ConfidentialClientApplication:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            self._msal_app = msal.ConfidentialClientApplication(
                self.clients.microsoft_client_id,
                authority=self.clients.microsoft_authority,
                client_credential=self.clients.microsoft_client_secret
            )
        return self._msal_app

    async def _refresh_microsoft(self, account: Account) -> Dict[str, Any]:
        app = self._get_msal_app()
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            lambda: app.acquire_token_by_refresh_token(account.refresh_token, scopes=MICROSOFT_SCOPES)
        )

    async def _refresh_yahoo(self, account: Account) -> Dict[str, Any]:
        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            response = await client.post(YAHOO_TOKEN_URI, data={
                'client_id': self.clients.yahoo_client_id,
                'client_secret': self.clients.yahoo_client_secret,
                'refresh_token': account.refresh_token,
                'grant_type': 'refresh_token',
                'redirect_uri': 'oob',
            })
            try:
                return response.json()
            except ValueError:
                return {'error': 'refresh_failed', 'error_description': f"HTTP {response.status_code}"}
