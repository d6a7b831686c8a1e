"""
Blocking IMAP session wrapper around imaplib.

Every method of ImapSession blocks and is meant to be run in the default
executor. Sessions are short lived: one connect, one unit of work, logout.
Concurrent work on the same account is serialized with ``mailbox_lock``.
"""

import asyncio
import functools
import imaplib
import logging
import re
import socket
import threading
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from ..errors import AuthError, ProtocolError

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, int], Any]

_mailbox_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def mailbox_lock(account_id: str) -> asyncio.Lock:
    """Exclusive lock serializing IMAP sessions of one account."""
    lock = _mailbox_locks.get(account_id)
    if lock is None:
        lock = asyncio.Lock()
        _mailbox_locks[account_id] = lock
    return lock


@dataclass
class MailboxInfo:
    """A mailbox as returned by LIST."""
    path: str
    name: str
    flags: Set[str] = field(default_factory=set)


@dataclass
class FetchedMessage:
    """One message of a FETCH (UID FLAGS INTERNALDATE BODY.PEEK[]) response."""
    uid: int
    flags: Set[str]
    source: bytes
    internal_date: Optional[int] = None

    @property
    def is_seen(self) -> bool:
        return '\\Seen' in self.flags

    @property
    def is_flagged(self) -> bool:
        return '\\Flagged' in self.flags


_UID_PATTERN = re.compile(rb'UID (\d+)')
_FLAGS_PATTERN = re.compile(rb'FLAGS \(([^)]*)\)')
_INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE "[^"]+"')
_LIST_PATTERN = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)')


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as a command argument."""
    escaped = name.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def parse_fetch_response(data: Sequence[Any]) -> List[FetchedMessage]:
    """
    Parse the data of an imaplib FETCH response.

    Each message arrives as a ``(metadata, literal)`` tuple, optionally
    followed by a bytes item holding attributes sent after the literal.
    """
    raw: List[List[bytes]] = []
    for item in data:
        if isinstance(item, tuple):
            raw.append([item[0], item[1]])
        elif isinstance(item, bytes) and raw:
            raw[-1][0] += item

    messages = []
    for meta, source in raw:
        uid_match = _UID_PATTERN.search(meta)
        if not uid_match:
            logger.warning(f"FETCH response without UID: {meta[:80]!r}")
            continue
        flags_match = _FLAGS_PATTERN.search(meta)
        flags = set(flags_match.group(1).decode('ascii', errors='replace').split()) if flags_match else set()

        internal_date = None
        date_match = _INTERNALDATE_PATTERN.search(meta)
        if date_match:
            parsed = imaplib.Internaldate2tuple(date_match.group(0))
            if parsed:
                internal_date = int(time.mktime(parsed))

        messages.append(FetchedMessage(
            uid=int(uid_match.group(1)),
            flags=flags,
            source=source or b"",
            internal_date=internal_date
        ))
    return messages


def parse_list_response(data: Sequence[Any]) -> List[MailboxInfo]:
    """Parse the data of an imaplib LIST response."""
    mailboxes = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            # Mailbox name sent as a literal
            item = item[0].split(b'{')[0] + b'"' + item[1] + b'"'
        match = _LIST_PATTERN.match(item)
        if not match:
            continue

        delimiter = match.group('delimiter').decode('ascii').strip('"')
        path = match.group('name').decode('utf-8', errors='replace').strip()
        if path.startswith('"') and path.endswith('"'):
            path = path[1:-1].replace('\\"', '"').replace('\\\\', '\\')

        name = path.rsplit(delimiter, 1)[-1] if delimiter and delimiter != 'NIL' else path
        flags = set(match.group('flags').decode('ascii', errors='replace').split())
        mailboxes.append(MailboxInfo(path=path, name=name, flags=flags))
    return mailboxes


def find_mailbox(mailboxes: Sequence[MailboxInfo], candidates: Sequence[str]) -> Optional[str]:
    """
    Return the path of the first candidate present on the server.

    Candidates are probed in order and match a mailbox by path or by name.
    """
    for candidate in candidates:
        for mailbox in mailboxes:
            if mailbox.path == candidate or mailbox.name == candidate:
                return mailbox.path
    return None


def xoauth2_string(user: str, access_token: str) -> str:
    return f"user={user}\x01auth=Bearer {access_token}\x01\x01"


def _serialized(method):
    """Run a session method under the session's connection lock."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._io_lock:
            return method(self, *args, **kwargs)
    return wrapper


class ImapSession:
    """
    A single IMAP connection.

    Methods raise imaplib errors and OSError as they occur; NO/BAD
    responses of commands that do not raise by themselves become
    ProtocolError. Protocol calls hold a connection lock, so a call issued
    while an abandoned one is still running in another thread (e.g. logout
    after a timeout) waits for it instead of interleaving on the socket.
    """

    def __init__(
        self,
        host: str,
        port: int = 993,
        use_tls: bool = True,
        connection_factory: Optional[ConnectionFactory] = None
    ):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self._connection_factory = connection_factory
        self.conn = None
        self.selected: Optional[str] = None
        self.capabilities: Optional[Set[str]] = None
        self._io_lock = threading.RLock()

    @staticmethod
    def _check(response: Tuple[str, List[Any]], command: str) -> List[Any]:
        typ, data = response
        if typ != 'OK':
            detail = data[0].decode('utf-8', errors='replace') if data and isinstance(data[0], bytes) else data
            raise ProtocolError(f"IMAP {command} failed: {detail}")
        return data

    def connect(self) -> None:
        factory = self._connection_factory
        if factory is None:
            factory = imaplib.IMAP4_SSL if self.use_tls else imaplib.IMAP4
        logger.debug(f"Connecting to IMAP server {self.host}:{self.port}")
        self.conn = factory(self.host, self.port)

    @_serialized
    def login(self, user: str, password: str) -> None:
        try:
            self.conn.login(user, password)
        except imaplib.IMAP4.error as e:
            raise AuthError(f"IMAP login failed: {e}", needs_reauth=False) from e
        self._refresh_capabilities()

    @_serialized
    def authenticate_xoauth2(self, user: str, access_token: str) -> None:
        auth_string = xoauth2_string(user, access_token).encode('utf-8')
        self.conn.authenticate('XOAUTH2', lambda _: auth_string)
        self._refresh_capabilities()

    def _refresh_capabilities(self) -> None:
        # imaplib keeps the pre-login greeting capabilities; servers often add MOVE/UIDPLUS after auth
        data = self._check(self.conn.capability(), 'CAPABILITY')
        text = b' '.join(item for item in data if isinstance(item, bytes)).decode('ascii', errors='replace')
        self.capabilities = {name.upper() for name in text.split()}

    def abort(self) -> None:
        """Shut the socket down so a protocol call blocked in another thread fails fast."""
        sock = getattr(self.conn, 'sock', None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"IMAP socket shutdown failed: {e}")

    @_serialized
    def logout(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")
        finally:
            self.conn = None

    @_serialized
    def select(self, mailbox: str = 'INBOX') -> int:
        """Select a mailbox read-write and return its message count."""
        data = self._check(self.conn.select(quote_mailbox(mailbox)), f"SELECT {mailbox}")
        self.selected = mailbox
        return int(data[0] or 0)

    @_serialized
    def fetch_window(self, start: int) -> List[FetchedMessage]:
        """Fetch UID, flags, internal date and full source of ``start:*``."""
        data = self._check(
            self.conn.fetch(f"{start}:*", '(UID FLAGS INTERNALDATE BODY.PEEK[])'),
            'FETCH'
        )
        return parse_fetch_response(data)

    @_serialized
    def list_mailboxes(self) -> List[MailboxInfo]:
        return parse_list_response(self._check(self.conn.list(), 'LIST'))

    @_serialized
    def add_flags(self, uid: int, flags: str) -> None:
        self._check(self.conn.uid('STORE', str(uid), '+FLAGS', f"({flags})"), 'STORE')

    @_serialized
    def remove_flags(self, uid: int, flags: str) -> None:
        self._check(self.conn.uid('STORE', str(uid), '-FLAGS', f"({flags})"), 'STORE')

    def supports(self, capability: str) -> bool:
        if self.capabilities is not None:
            return capability.upper() in self.capabilities
        return capability.upper() in (self.conn.capabilities or ())

    @_serialized
    def move(self, uid: int, destination: str) -> None:
        """Move a message of the selected mailbox, with COPY fallback when MOVE is missing."""
        if self.supports('MOVE'):
            self._check(self.conn.uid('MOVE', str(uid), quote_mailbox(destination)), 'MOVE')
            return
        self._check(self.conn.uid('COPY', str(uid), quote_mailbox(destination)), 'COPY')
        self.delete(uid)

    @_serialized
    def delete(self, uid: int) -> None:
        """
        Flag a message Deleted and expunge only that message.

        Without UIDPLUS a plain EXPUNGE removes every ``\\Deleted`` message of
        the mailbox, so other messages already flagged are unflagged for the
        duration of the expunge and flagged again afterwards.
        """
        self.add_flags(uid, '\\Deleted')
        if self.supports('UIDPLUS'):
            self._check(self.conn.uid('EXPUNGE', str(uid)), 'UID EXPUNGE')
            return

        others = [other for other in self._deleted_uids() if other != uid]
        for other in others:
            self.remove_flags(other, '\\Deleted')
        try:
            self._check(self.conn.expunge(), 'EXPUNGE')
        finally:
            for other in others:
                self.add_flags(other, '\\Deleted')

    def _deleted_uids(self) -> List[int]:
        data = self._check(self.conn.uid('SEARCH', None, 'DELETED'), 'SEARCH')
        return [int(value) for value in b' '.join(item for item in data if item).split()]

    @_serialized
    def create_mailbox(self, name: str) -> None:
        self._check(self.conn.create(quote_mailbox(name)), f"CREATE {name}")
