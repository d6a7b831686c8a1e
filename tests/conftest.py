import re
import time
from typing import Dict, List, Optional, Tuple

import imaplib
import pytest

from mailbridge.models import Account, ProviderKind
from mailbridge.storage import EmailStorage
from mailbridge.tokens import StaticTokenProvider


def make_raw_email(
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    to: str = "bob@example.com",
    body: str = "Hi Bob",
    message_id: str = "<m1@example.com>",
    in_reply_to: Optional[str] = None
) -> bytes:
    lines = [
        f"From: {sender}",
        f"To: {to}",
        f"Subject: {subject}",
        f"Message-ID: {message_id}",
        "Date: Tue, 02 Jan 2024 10:00:00 +0000",
    ]
    if in_reply_to:
        lines.append(f"In-Reply-To: {in_reply_to}")
    lines += ["Content-Type: text/plain; charset=utf-8", "", body]
    return "\r\n".join(lines).encode("utf-8")


class FakeImapServer:
    """In-memory mailboxes served through FakeImapConnection."""

    def __init__(
        self,
        capabilities: Tuple[str, ...] = ("IMAP4REV1", "MOVE"),
        auth_capabilities: Optional[Tuple[str, ...]] = None
    ):
        self.capabilities = capabilities
        self.auth_capabilities = auth_capabilities or capabilities
        self.fetch_delay = 0.0
        self.mailboxes: Dict[str, List[Tuple[int, set, bytes]]] = {"INBOX": []}
        self.commands: List[Tuple] = []
        self.connections = 0
        self.reject_login = False

    def add_mailbox(self, name: str):
        self.mailboxes.setdefault(name, [])

    def add_message(self, mailbox: str, uid: int, source: bytes, flags=()):
        self.mailboxes.setdefault(mailbox, []).append((uid, set(flags), source))

    def uids(self, mailbox: str) -> List[int]:
        return [uid for uid, _, _ in self.mailboxes.get(mailbox, [])]

    def connect(self, host, port):
        self.connections += 1
        return FakeImapConnection(self)


class FakeImapConnection:
    def __init__(self, server: FakeImapServer):
        self.server = server
        self.capabilities = server.capabilities
        self.selected: Optional[str] = None

    def _record(self, *command):
        self.server.commands.append(command)

    @staticmethod
    def _unquote(name: str) -> str:
        return name[1:-1] if name.startswith('"') else name

    def login(self, user, password):
        self._record("LOGIN", user)
        if self.server.reject_login:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        return "OK", [b"Logged in"]

    def authenticate(self, mechanism, callback):
        self._record("AUTHENTICATE", mechanism, callback(None))
        if self.server.reject_login:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials (Failure)")
        return "OK", [b"Success"]

    def capability(self):
        return "OK", [" ".join(self.server.auth_capabilities).encode()]

    def logout(self):
        self._record("LOGOUT")
        return "BYE", [b""]

    def select(self, mailbox):
        name = self._unquote(mailbox)
        self._record("SELECT", name)
        if name not in self.server.mailboxes:
            return "NO", [b"Mailbox does not exist"]
        self.selected = name
        return "OK", [str(len(self.server.mailboxes[name])).encode()]

    def fetch(self, message_set, parts):
        self._record("FETCH", message_set, parts)
        if self.server.fetch_delay:
            time.sleep(self.server.fetch_delay)
        start = int(message_set.split(":")[0])
        data = []
        for seq, (uid, flags, source) in enumerate(self.server.mailboxes[self.selected], start=1):
            if seq < start:
                continue
            flag_text = " ".join(sorted(flags))
            meta = (
                f'{seq} (UID {uid} FLAGS ({flag_text}) '
                f'INTERNALDATE "02-Jan-2024 10:00:00 +0000" BODY[] {{{len(source)}}}'
            ).encode()
            data.append((meta, source))
            data.append(b")")
        self._record("FETCH DONE")
        return "OK", data

    def list(self):
        self._record("LIST")
        return "OK", [f'(\\HasNoChildren) "/" "{name}"'.encode() for name in self.server.mailboxes]

    def create(self, mailbox):
        name = self._unquote(mailbox)
        self._record("CREATE", name)
        self.server.add_mailbox(name)
        return "OK", [b"Created"]

    def expunge(self):
        self._record("EXPUNGE")
        box = self.server.mailboxes[self.selected]
        box[:] = [entry for entry in box if "\\Deleted" not in entry[1]]
        return "OK", [None]

    def _find(self, uid: int):
        for entry in self.server.mailboxes[self.selected]:
            if entry[0] == uid:
                return entry
        return None

    def uid(self, command, uid, *args):
        self._record("UID", command, uid, *args)
        box = self.server.mailboxes[self.selected]
        if command == "SEARCH":
            deleted = [str(entry[0]) for entry in box if "\\Deleted" in entry[1]]
            return "OK", [" ".join(deleted).encode()]

        entry = self._find(int(uid))
        if entry is None:
            return "NO", [b"No such message"]

        if command == "STORE":
            mode, flags = args
            names = set(re.findall(r"\\?\w+", flags))
            if mode.startswith("+"):
                entry[1].update(names)
            else:
                entry[1].difference_update(names)
            return "OK", [b""]

        if command == "EXPUNGE":
            if "\\Deleted" in entry[1]:
                box.remove(entry)
            return "OK", [None]

        destination = self._unquote(args[0])
        if destination not in self.server.mailboxes:
            return "NO", [b"[TRYCREATE] No such mailbox"]
        self.server.mailboxes[destination].append((entry[0], set(entry[1]), entry[2]))
        if command == "MOVE":
            self.server.mailboxes[self.selected].remove(entry)
        return "OK", [b""]


@pytest.fixture()
def store(tmp_path):
    return EmailStorage(str(tmp_path / "mail.db"))


@pytest.fixture()
def gmail_account(store):
    account = Account(id="acct-gmail", kind=ProviderKind.GMAIL, email="me@gmail.com", name="Me")
    store.add_account(account)
    return account


@pytest.fixture()
def microsoft_account(store):
    account = Account(id="acct-ms", kind=ProviderKind.MICROSOFT, email="me@outlook.com", name="Me")
    store.add_account(account)
    return account


@pytest.fixture()
def imap_account(store):
    account = Account(
        id="acct-imap",
        kind=ProviderKind.IMAP,
        email="me@example.com",
        imap_host="imap.example.com",
        smtp_host="smtp.example.com",
        password="secret"
    )
    store.add_account(account)
    return account


@pytest.fixture()
def yahoo_account(store):
    account = Account(id="acct-yahoo", kind=ProviderKind.YAHOO, email="me@yahoo.com")
    store.add_account(account)
    return account


@pytest.fixture()
def tokens():
    return StaticTokenProvider({
        "acct-gmail": "gmail-token",
        "acct-ms": "ms-token",
        "acct-yahoo": "yahoo-token",
    })


@pytest.fixture()
def imap_server():
    return FakeImapServer()
