"""
Error hierarchy for mail synchronization.

Sync operations report failures through SyncResult; these exceptions are
raised by single-message actions and used internally to classify failures.
"""
from typing import Optional


class MailSyncError(Exception):
    """Base class for all mailbridge errors."""
    pass


class AuthError(MailSyncError):
    """Missing, expired or rejected credential. The account needs re-authorization."""

    def __init__(self, message: str = "Not authenticated", needs_reauth: bool = True):
        super().__init__(message)
        self.needs_reauth = needs_reauth


class TransientNetworkError(MailSyncError):
    """HTTP or connection failure. Never retried automatically."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(MailSyncError):
    """IMAP/SMTP level failure, e.g. a folder that does not exist."""
    pass


class PartialMessageError(MailSyncError):
    """A single message of a batch could not be fetched or parsed."""

    def __init__(self, message_id: str, reason: str):
        super().__init__(f"Message {message_id}: {reason}")
        self.message_id = message_id
        self.reason = reason


class UserActionError(MailSyncError):
    """A direct action (star, archive, trash...) failed on the remote side."""
    pass


def human_friendly_message(exc: Exception) -> str:
    """
    Convert an exception into a short message suitable for display.

    Args:
        exc: The exception to describe

    Returns:
        A user-facing message
    """
    if isinstance(exc, AuthError):
        if exc.needs_reauth:
            return "Your account session has expired. Please sign in again."
        return f"Authentication failed: {exc}"
    if isinstance(exc, TransientNetworkError):
        return "Could not reach the mail server. Check your connection and try again."
    if isinstance(exc, ProtocolError):
        return f"The mail server rejected the request: {exc}"
    if isinstance(exc, PartialMessageError):
        return f"One message could not be loaded ({exc.reason})."
    if isinstance(exc, UserActionError):
        return f"The action could not be completed: {exc}"
    return str(exc) or type(exc).__name__
