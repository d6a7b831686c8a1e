"""
Mapping of provider labels, categories and folders onto local labels.

System categories are kept in static tables so callers and tests can
inspect them directly.
"""

from typing import Any, Dict, Optional

from .models import Label

DEFAULT_LABEL_COLOR = "#6366f1"

# Gmail reserved labels that never become local labels
GMAIL_SYSTEM_LABELS = frozenset({
    "INBOX",
    "SENT",
    "DRAFT",
    "TRASH",
    "SPAM",
    "STARRED",
    "UNREAD",
    "IMPORTANT",
    "CHAT",
})

GMAIL_CATEGORY_PREFIX = "CATEGORY_"

# Outlook well-known folders, compared lowercased with whitespace removed
MICROSOFT_SYSTEM_FOLDERS = frozenset({
    "inbox",
    "sentitems",
    "drafts",
    "deleteditems",
    "junkemail",
    "archive",
    "outbox",
    "scheduled",
})

# IMAP folders handled by the sync paths themselves
IMAP_SPECIAL_FOLDERS = (
    "INBOX",
    "Sent",
    "Sent Items",
    "Sent Mail",
    "Drafts",
    "Draft",
    "Trash",
    "Deleted",
    "Deleted Items",
    "Spam",
    "Junk",
    "Bulk Mail",
)

FOLDER_COLORS = {
    "INBOX": "#4285f4",
    "Sent": "#34a853",
    "Drafts": "#fbbc05",
    "Trash": "#ea4335",
    "Archive": "#6366f1",
}

# Candidate folder names probed in order on IMAP servers
IMAP_ARCHIVE_FOLDERS = ("Archive", "Archives", "[Gmail]/All Mail", "All Mail", "INBOX.Archive")
IMAP_TRASH_FOLDERS = ("Trash", "Deleted", "Deleted Items", "[Gmail]/Trash", "INBOX.Trash")
IMAP_SENT_FOLDERS = ("Sent", "Sent Items", "Sent Mail", "[Gmail]/Sent Mail", "INBOX.Sent")
IMAP_DRAFT_FOLDERS = ("Drafts", "Draft", "[Gmail]/Drafts", "INBOX.Drafts")


def is_gmail_system_label(label_id: str) -> bool:
    return label_id in GMAIL_SYSTEM_LABELS or label_id.startswith(GMAIL_CATEGORY_PREFIX)


def gmail_label_id(account_id: str, remote_id: str) -> str:
    return f"gmail:{account_id}:{remote_id}"


def map_gmail_label(account_id: str, remote: Dict[str, Any]) -> Optional[Label]:
    """
    Map a Gmail ``labels.list`` entry to a local label.

    Args:
        account_id: Owning account
        remote: Label resource from the Gmail API

    Returns:
        Label, or None for reserved labels
    """
    remote_id = remote.get('id', '')
    if not remote_id or is_gmail_system_label(remote_id):
        return None
    if remote.get('type') == 'system':
        return None
    color = (remote.get('color') or {}).get('backgroundColor') or DEFAULT_LABEL_COLOR
    return Label(
        id=gmail_label_id(account_id, remote_id),
        account_id=account_id,
        name=remote.get('name') or remote_id,
        color=color,
        type='user',
        remote_id=remote_id
    )


# Outlook preset category colors
MICROSOFT_CATEGORY_COLORS = {
    "preset0": "#e74856",
    "preset1": "#ff8c00",
    "preset2": "#fab005",
    "preset3": "#fff100",
    "preset4": "#47d041",
    "preset5": "#30c6cc",
    "preset6": "#73aa24",
    "preset7": "#4cb4ff",
    "preset8": "#8764b8",
    "preset9": "#f495bf",
}


def is_microsoft_system_folder(display_name: str) -> bool:
    return ''.join(display_name.split()).lower() in MICROSOFT_SYSTEM_FOLDERS


def map_microsoft_folder(account_id: str, folder: Dict[str, Any]) -> Optional[Label]:
    """
    Map a Graph mail folder to a local label.

    Well-known and hidden folders are skipped.
    """
    name = folder.get('displayName') or ''
    if not name or folder.get('isHidden') or is_microsoft_system_folder(name):
        return None
    return Label(
        id=f"microsoft:{account_id}:{folder['id']}",
        account_id=account_id,
        name=name,
        color=DEFAULT_LABEL_COLOR,
        type='folder',
        remote_id=folder['id']
    )


def map_microsoft_category(account_id: str, category: Dict[str, Any]) -> Optional[Label]:
    """
    Map an Outlook master category to a local label.

    Categories are plain names with no stable remote id, so the local id is
    derived from the name and ``remote_id`` stays empty.
    """
    name = (category.get('displayName') or '').strip()
    if not name:
        return None
    return Label(
        id=f"microsoft:{account_id}:{name}",
        account_id=account_id,
        name=name,
        color=MICROSOFT_CATEGORY_COLORS.get(category.get('color', ''), DEFAULT_LABEL_COLOR),
        type='user',
        remote_id=None
    )


def is_imap_special_folder(path: str, name: str) -> bool:
    for special in IMAP_SPECIAL_FOLDERS:
        if path == special or name == special or path.endswith(f"/{special}"):
            return True
    return False


def map_imap_folder(account_id: str, path: str, name: str, id_prefix: str = "") -> Optional[Label]:
    """
    Map an IMAP folder to a local label of type ``folder``.

    Args:
        account_id: Owning account
        path: Full mailbox path as listed by the server
        name: Last path segment
        id_prefix: Namespace prefix of the provider (e.g. ``yahoo:``)

    Returns:
        Label, or None for special folders
    """
    if is_imap_special_folder(path, name):
        return None
    return Label(
        id=f"{id_prefix}{account_id}:{path}",
        account_id=account_id,
        name=name,
        color=FOLDER_COLORS.get(name, DEFAULT_LABEL_COLOR),
        type='folder',
        remote_id=path
    )
