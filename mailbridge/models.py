"""
Data structures shared by the store, the token provider and every email provider.
"""

import json
from dataclasses import dataclass, field
from email.utils import getaddresses
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ProviderKind(str, Enum):
    """Supported account provider kinds."""
    GMAIL = "gmail"
    MICROSOFT = "microsoft"
    YAHOO = "yahoo"
    IMAP = "imap"


class FolderScope(str, Enum):
    """Local folder scope an email was synced from."""
    INBOX = "inbox"
    SENT = "sent"


@dataclass
class Account:
    """A configured mail account. Owned by the store, read-only to providers."""
    id: str
    kind: ProviderKind
    email: str
    name: str = ""

    # OAuth accounts
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[int] = None

    # IMAP/SMTP accounts
    imap_host: Optional[str] = None
    imap_port: int = 993
    imap_use_tls: bool = True
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_use_tls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def login(self) -> str:
        """User name used for IMAP/SMTP login."""
        return self.username or self.email

    @property
    def display_address(self) -> str:
        """RFC 2822 mailbox for the From header."""
        return f"{self.name or self.email} <{self.email}>"


@dataclass
class Email:
    """Canonical local representation of a remote message."""
    id: str
    account_id: str
    thread_id: Optional[str] = None
    message_id: Optional[str] = None
    subject: str = ""
    snippet: str = ""
    from_name: str = ""
    from_email: str = ""
    to_addresses: str = ""
    cc_addresses: str = ""
    bcc_addresses: str = ""
    body_text: str = ""
    body_html: str = ""
    labels: List[str] = field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    received_at: int = 0
    folder: FolderScope = FolderScope.INBOX
    is_archived: bool = False

    @property
    def labels_json(self) -> str:
        return json.dumps(self.labels)


@dataclass
class Attachment:
    """Inline image attachment resolved from a ``cid:`` reference."""
    email_id: str
    content_id: str
    filename: str
    mime_type: str
    size: int
    data: bytes = b""

    @property
    def id(self) -> str:
        return f"{self.email_id}:{self.content_id}"


@dataclass
class Label:
    """Local label mapped from a provider label, category or folder."""
    id: str
    account_id: str
    name: str
    color: str = "#6366f1"
    type: str = "user"
    remote_id: Optional[str] = None


@dataclass
class Draft:
    """A draft synced from the provider's drafts folder."""
    id: str
    account_id: str
    remote_id: Optional[str] = None
    to_addresses: str = ""
    cc_addresses: str = ""
    bcc_addresses: str = ""
    subject: str = ""
    body: str = ""


@dataclass
class SyncOptions:
    """Options accepted by the sync family of provider operations."""
    max_messages: Optional[int] = None
    folder: Optional[str] = None
    timeout: Optional[float] = None


@dataclass
class SyncResult:
    """Outcome of a sync call. Always returned, never raised."""
    synced: int = 0
    total: int = 0
    error: Optional[str] = None
    needs_reauth: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'synced': self.synced, 'total': self.total}
        if self.error is not None:
            result['error'] = self.error
        if self.needs_reauth:
            result['needs_reauth'] = True
        return result


@dataclass
class OutgoingAttachment:
    """File attached to an outgoing message."""
    filename: str
    mime_type: str
    content: bytes


@dataclass
class SendParams:
    """Parameters of an outgoing message."""
    from_address: str
    to: str
    subject: str
    body: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    thread_id: Optional[str] = None
    attachments: List[OutgoingAttachment] = field(default_factory=list)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TokenResult:
    """Answer of the token provider for one account."""
    access_token: Optional[str] = None
    error: Optional[str] = None
    needs_reauth: bool = False


def parse_addresses(value: Optional[str]) -> List[Tuple[str, str]]:
    """Parse a recipient string into (name, address) pairs; commas inside quoted names are kept."""
    if not value:
        return []
    return [(name.strip(), addr.strip()) for name, addr in getaddresses([value]) if addr.strip()]


def split_addresses(value: Optional[str]) -> List[str]:
    """Bare addresses of a comma separated recipient string."""
    return [addr for _, addr in parse_addresses(value)]
