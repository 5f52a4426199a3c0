# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailmirror test suite.
#
#   - FakeServer / FakeIMAPClient: a scripted stand-in for an aioimaplib
#     client, speaking in aioimaplib Response(result, lines) tuples
#   - MemoryStore: in-memory AccountStore, FolderStore and MessageStore
#   - RecordingNotifier: NotificationSink that remembers what it was told
#   - database / repository: a real aiosqlite database in a temp directory
# =============================================================================

import asyncio
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

import pytest
from aioimaplib.aioimaplib import Abort, Response

from mailmirror.config import SyncConfig, WatchConfig
from mailmirror.core import Account, LocalFolder, Message
from mailmirror.imap.providers import NETEASE_QUIRKS, Encryption, ServerProfile
from mailmirror.imap.session import IMAPSession
from mailmirror.storage import Database, Repository

INTERNALDATE = "15-Jan-2024 10:30:00 +0000"

LOCAL_PROFILE = ServerProfile(
    provider="test",
    imap_host="imap.test",
    imap_port=143,
    imap_encryption=Encryption.NONE,
    smtp_host="smtp.test",
    smtp_port=25,
    smtp_encryption=Encryption.NONE,
)

NETEASE_PROFILE = replace(LOCAL_PROFILE, provider="netease", quirks=NETEASE_QUIRKS)

UNSAFE_LOGIN = "SELECT Unsafe Login. Please contact kefu@188.com for help"

# No waiting between retries in tests
FAST_SYNC = SyncConfig(
    connect_timeout=2.0,
    command_timeout=2.0,
    connect_retries=0,
    retry_backoff=0.0,
    stale_retries=2,
    stale_backoff=0.0,
    batch_size=50,
)


def make_raw(
    n: int,
    *,
    subject: str | None = None,
    message_id: str | None = None,
    html: str | None = None,
) -> bytes:
    """Build a small RFC 5322 message."""
    headers = [
        f"From: Sender {n} <sender{n}@example.com>",
        "To: me@example.com",
        f"Subject: {subject if subject is not None else f'Message {n}'}",
        "Date: Mon, 15 Jan 2024 10:30:00 +0000",
    ]
    if message_id != "":
        headers.append(f"Message-ID: {message_id or f'<msg{n}@example.com>'}")
    if html is not None:
        headers += ["MIME-Version: 1.0", "Content-Type: text/html; charset=utf-8"]
        body = html
    else:
        body = f"Body of message {n}"
    return ("\r\n".join(headers) + "\r\n\r\n" + body + "\r\n").encode("utf-8")


# =============================================================================
# Fake IMAP Server
# =============================================================================

@dataclass
class FakeMessage:
    uid: int
    raw: bytes
    flags: str = ""


@dataclass
class FakeMailbox:
    """
    One mailbox on the fake server.

    Attributes:
        rejection: NO text for both SELECT and EXAMINE.
        select_rejection: NO text for SELECT only.
        status_rejection: NO text for STATUS.
    """
    name: str
    attributes: str = "\\HasNoChildren"
    messages: list[FakeMessage] = field(default_factory=list)
    uidvalidity: int = 1
    subscribed: bool = True
    mailbox_id: str | None = None
    rejection: str | None = None
    select_rejection: str | None = None
    status_rejection: str | None = None

    @property
    def uidnext(self) -> int:
        return max((m.uid for m in self.messages), default=0) + 1

    @property
    def unseen(self) -> int:
        return sum(1 for m in self.messages if "\\Seen" not in m.flags)

    def add(self, raw: bytes, flags: str = "") -> FakeMessage:
        message = FakeMessage(uid=self.uidnext, raw=raw, flags=flags)
        self.messages.append(message)
        return message

    def fill(self, count: int, *, unread: int = 0, start: int = 1) -> None:
        """Add count messages; the newest `unread` ones are left unseen."""
        for i in range(count):
            seen = i < count - unread
            self.add(make_raw(start + i), "\\Seen" if seen else "")


class FakeServer:
    """
    Scripted IMAP server shared by every FakeIMAPClient it creates.

    Attributes:
        commands: Every command verb received, in order.
        fetch_requests: Sequence sets of FETCH commands, per mailbox.
        stores: (mailbox, uid, operation, flags) of every UID STORE.
        connect_failures: Upcoming connection attempts that fail.
        stale_fetches: Upcoming FETCH commands that fail as if the server
                       had closed the folder.
        fetch_delay: Seconds every FETCH takes.
        idle_error: Raised by IDLE when set.
    """

    def __init__(self, password: str = "secret", capabilities=("IMAP4REV1", "IDLE")) -> None:
        self.password = password
        self.capabilities = set(capabilities)
        self.mailboxes: dict[str, FakeMailbox] = {}
        self.clients: list["FakeIMAPClient"] = []
        self.commands: list[str] = []
        self.fetch_requests: list[tuple[str, str]] = []
        self.stores: list[tuple[str, int, str, str]] = []
        self.id_fields: list[dict] = []
        self.connect_failures = 0
        self.stale_fetches = 0
        self.fetch_delay = 0.0
        self.idle_error: Exception | None = None
        self.transport = None
        self.pushes: asyncio.Queue = asyncio.Queue()
        self.logged_in = 0
        self.max_logged_in = 0

    def mailbox(self, name: str, **kwargs) -> FakeMailbox:
        box = FakeMailbox(name=name, **kwargs)
        self.mailboxes[name] = box
        return box

    def deliver(self, name: str, raw: bytes, flags: str = "") -> FakeMessage:
        """New mail arrives; idling clients get an EXISTS push."""
        box = self.mailboxes[name]
        message = box.add(raw, flags)
        self.pushes.put_nowait([f"{len(box.messages)} EXISTS".encode()])
        return message

    @property
    def max_in_flight(self) -> int:
        return max((client.max_in_flight for client in self.clients), default=0)

    def requests_for(self, name: str) -> list[str]:
        return [seqset for box, seqset in self.fetch_requests if box == name]

    def connect(self, profile: ServerProfile, timeout: float) -> "FakeIMAPClient":
        """Client factory for IMAPSession."""
        client = FakeIMAPClient(self)
        self.clients.append(client)
        return client

    def session_factory(self, profile: ServerProfile = LOCAL_PROFILE, settings: SyncConfig = FAST_SYNC):
        def create(account: Account) -> IMAPSession:
            return IMAPSession(account, profile, settings=settings, client_factory=self.connect)
        return create


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return name


def fetch_lines(box: FakeMailbox, sequences: list[int], items: str) -> list:
    """FETCH response lines for the given sequence numbers."""
    lines: list = []
    for seq in sequences:
        message = box.messages[seq - 1]
        if "BODY" in items.upper():
            lines.append(
                f"{seq} FETCH (UID {message.uid} FLAGS ({message.flags}) "
                f"RFC822.SIZE {len(message.raw)} INTERNALDATE \"{INTERNALDATE}\" "
                f"BODY[] {{{len(message.raw)}}}".encode()
            )
            lines.append(bytearray(message.raw))
            lines.append(b")")
        else:
            lines.append(f"{seq} FETCH (UID {message.uid})".encode())
    lines.append(b"FETCH completed.")
    return lines


class FakeProtocol:
    """The parts of aioimaplib's IMAP4ClientProtocol that IMAPSession touches."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.capabilities = set(server.capabilities)
        self.transport = server.transport

    async def capability(self) -> None:
        self.server.commands.append("CAPABILITY")
        self.capabilities = set(self.server.capabilities)

    async def simple_command(self, name: str, *args: str):
        self.server.commands.append(name)
        return Response("NO", [f"{name} not supported".encode()])


class FakeIMAPClient:
    """The subset of aioimaplib.IMAP4 that IMAPSession uses."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.protocol = FakeProtocol(server)
        self.selected: FakeMailbox | None = None
        self.read_only = False
        self.in_flight = 0
        self.max_in_flight = 0
        self.authenticated = False
        self._idle_task: asyncio.Future | None = None
        self._idle_done: asyncio.Event | None = None

    async def _run(self, verb: str, handler, delay: float = 0.0):
        self.server.commands.append(verb)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(delay)
            return handler()
        finally:
            self.in_flight -= 1

    def _mailbox(self, quoted: str) -> FakeMailbox | None:
        return self.server.mailboxes.get(_unquote(quoted))

    # Connection

    async def wait_hello_from_server(self) -> None:
        if self.server.connect_failures > 0:
            self.server.connect_failures -= 1
            raise ConnectionRefusedError("Connection refused")

    async def login(self, user: str, password: str):
        def handler():
            if password != self.server.password:
                return Response("NO", [b"[AUTHENTICATIONFAILED] Invalid credentials"])
            self.authenticated = True
            self.server.logged_in += 1
            self.server.max_logged_in = max(self.server.max_logged_in, self.server.logged_in)
            return Response("OK", [b"LOGIN completed"])
        return await self._run("LOGIN", handler)

    async def id(self, **fields):
        def handler():
            self.server.id_fields.append(fields)
            return Response("OK", [b"ID completed"])
        return await self._run("ID", handler)

    async def logout(self):
        def handler():
            if self.authenticated:
                self.authenticated = False
                self.server.logged_in -= 1
            return Response("OK", [b"BYE IMAP4rev1 Server logging out"])
        return await self._run("LOGOUT", handler)

    async def noop(self):
        return await self._run("NOOP", lambda: Response("OK", [b"NOOP completed"]))

    # Folders

    async def list(self, reference: str, pattern: str):
        def handler():
            lines = [
                f'({box.attributes}) "/" "{box.name}"'.encode()
                for box in self.server.mailboxes.values()
            ]
            return Response("OK", lines + [b"LIST completed."])
        return await self._run("LIST", handler)

    async def lsub(self, reference: str, pattern: str):
        def handler():
            lines = [
                f'({box.attributes}) "/" "{box.name}"'.encode()
                for box in self.server.mailboxes.values()
                if box.subscribed
            ]
            return Response("OK", lines + [b"LSUB completed."])
        return await self._run("LSUB", handler)

    async def status(self, quoted: str, items: str):
        def handler():
            box = self._mailbox(quoted)
            if box is None:
                return Response("NO", [b"[NONEXISTENT] Unknown Mailbox"])
            if box.status_rejection:
                return Response("NO", [box.status_rejection.encode()])
            fields = (
                f"MESSAGES {len(box.messages)} UNSEEN {box.unseen} "
                f"UIDVALIDITY {box.uidvalidity} UIDNEXT {box.uidnext}"
            )
            if box.mailbox_id and "MAILBOXID" in items:
                fields += f" MAILBOXID ({box.mailbox_id})"
            return Response("OK", [f'"{box.name}" ({fields})'.encode(), b"STATUS completed."])
        return await self._run("STATUS", handler)

    def _open(self, quoted: str, read_only: bool):
        box = self._mailbox(quoted)
        if box is None:
            return Response("NO", [b"[NONEXISTENT] Unknown Mailbox"])
        if box.rejection:
            return Response("NO", [box.rejection.encode()])
        if not read_only and box.select_rejection:
            return Response("NO", [box.select_rejection.encode()])
        self.selected = box
        self.read_only = read_only
        mode = b"[READ-ONLY]" if read_only else b"[READ-WRITE]"
        return Response("OK", [
            b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
            f"{len(box.messages)} EXISTS".encode(),
            b"0 RECENT",
            f"OK [UIDVALIDITY {box.uidvalidity}] UIDs valid".encode(),
            f"OK [UIDNEXT {box.uidnext}] Predicted next UID".encode(),
            mode + b" completed.",
        ])

    async def select(self, quoted: str = "INBOX"):
        return await self._run("SELECT", lambda: self._open(quoted, read_only=False))

    async def examine(self, quoted: str = "INBOX"):
        return await self._run("EXAMINE", lambda: self._open(quoted, read_only=True))

    async def close(self):
        def handler():
            self.selected = None
            return Response("OK", [b"CLOSE completed."])
        return await self._run("CLOSE", handler)

    # Messages

    def _require_selected(self, verb: str) -> FakeMailbox:
        if self.server.stale_fetches > 0:
            self.server.stale_fetches -= 1
            raise Abort(f"command {verb} illegal in state AUTH, allowed states: SELECTED")
        if self.selected is None:
            raise Abort(f"command {verb} illegal in state AUTH, allowed states: SELECTED")
        return self.selected

    async def fetch(self, seqset: str, items: str):
        def handler():
            box = self._require_selected("FETCH")
            self.server.fetch_requests.append((box.name, seqset))
            count = len(box.messages)
            if seqset == "*":
                sequences = [count] if count else []
            else:
                first, _, last = seqset.partition(":")
                end = count if last == "*" else int(last or first)
                sequences = list(range(int(first), min(end, count) + 1))
            return Response("OK", fetch_lines(box, sequences, items))
        return await self._run("FETCH", handler, self.server.fetch_delay)

    async def uid(self, command: str, seqset: str, *items: str):
        if command.upper() == "STORE":
            return await self._run("UID STORE", lambda: self._store(seqset, *items))

        def handler():
            box = self._require_selected("UID")
            self.server.fetch_requests.append((box.name, f"UID {seqset}"))
            first = int(seqset.split(":")[0])
            sequences = [i + 1 for i, m in enumerate(box.messages) if m.uid >= first]
            if not sequences and box.messages:
                sequences = [len(box.messages)]  # "N:*" always matches the last message
            return Response("OK", fetch_lines(box, sequences, " ".join(items)))
        return await self._run("UID " + command.upper(), handler, self.server.fetch_delay)

    def _store(self, uid: str, operation: str, flags: str):
        box = self._require_selected("UID")
        if self.read_only:
            return Response("NO", [b"[READ-ONLY] Mailbox is read-only"])
        self.server.stores.append((box.name, int(uid), operation, flags))
        for message in box.messages:
            if message.uid == int(uid) and operation.startswith("+FLAGS"):
                message.flags = " ".join(filter(None, [message.flags, flags.strip("()")]))
        return Response("OK", [b"UID STORE completed."])

    async def expunge(self):
        def handler():
            box = self._require_selected("EXPUNGE")
            if self.read_only:
                return Response("NO", [b"[READ-ONLY] Mailbox is read-only"])
            box.messages = [m for m in box.messages if "\\Deleted" not in m.flags]
            return Response("OK", [b"EXPUNGE completed."])
        return await self._run("EXPUNGE", handler)

    # IDLE

    async def idle_start(self, timeout: float = 29 * 60):
        self.server.commands.append("IDLE")
        if self.server.idle_error is not None:
            raise self.server.idle_error
        done = self._idle_done = asyncio.Event()

        async def idle():
            await done.wait()
            return Response("OK", [b"IDLE terminated"])

        self._idle_task = asyncio.ensure_future(idle())
        return self._idle_task

    async def wait_server_push(self, timeout: float = 29 * 60):
        return await asyncio.wait_for(self.server.pushes.get(), timeout)

    def idle_done(self) -> None:
        if self._idle_done is not None:
            self._idle_done.set()

    def has_pending_idle(self) -> bool:
        return self._idle_task is not None and not self._idle_task.done()


class FakeSSLObject:
    def __init__(self, version: str) -> None:
        self._version = version

    def version(self) -> str:
        return self._version

    def cipher(self):
        return ("TLS_AES_256_GCM_SHA384", self._version, 256)


class FakeTransport:
    def __init__(self, version: str | None) -> None:
        self.ssl_object = FakeSSLObject(version) if version else None
        self.closed = False

    def get_extra_info(self, name: str):
        return self.ssl_object if name == "ssl_object" else None

    def close(self) -> None:
        self.closed = True


# =============================================================================
# In-Memory Stores
# =============================================================================

class MemoryStore:
    """AccountStore, FolderStore and MessageStore kept in dictionaries."""

    def __init__(self, accounts=(), passwords: dict[str, str] | None = None) -> None:
        self.accounts = {account.id: account for account in accounts}
        self.passwords = dict(passwords or {})
        self.folders: dict[str, LocalFolder] = {}
        self.messages: dict[int, Message] = {}
        self.sync_updates: list[tuple] = []
        self._next_id = 1

    async def get_account_by_id(self, account_id):
        return self.accounts.get(account_id)

    async def get_password(self, account_id):
        return self.passwords.get(account_id)

    async def update_sync_status(self, account_id, last_sync, error):
        self.sync_updates.append((account_id, last_sync, error))
        account = self.accounts.get(account_id)
        if account is not None:
            if last_sync is not None:
                account.last_sync = last_sync
            account.last_error = error

    async def get_folders_by_account(self, account_id):
        return sorted(
            (replace(f) for f in self.folders.values() if f.account_id == account_id),
            key=lambda f: f.full_name,
        )

    async def insert_folder(self, folder):
        self.folders[folder.id] = replace(folder)

    async def update_folder(self, folder):
        self.folders[folder.id] = replace(folder)

    async def delete_folder(self, folder_id):
        self.folders.pop(folder_id, None)
        for key in [k for k, m in self.messages.items() if m.folder_id == folder_id]:
            del self.messages[key]

    async def get_message_count_in_folder(self, folder_id):
        return sum(1 for m in self.messages.values() if m.folder_id == folder_id)

    async def get_message_by_identity(self, account_id, message_id):
        for message in self.messages.values():
            if message.account_id == account_id and message.message_id == message_id:
                return message
        return None

    async def insert_message(self, message):
        if await self.get_message_by_identity(message.account_id, message.message_id):
            return False
        message.id = self._next_id
        self._next_id += 1
        self.messages[message.id] = message
        return True

    async def mark_read(self, message_id):
        self.messages[message_id].mark_read()

    async def delete_message(self, message_id):
        self.messages.pop(message_id, None)

    # Test helpers

    def folder_named(self, full_name: str) -> LocalFolder | None:
        return next((f for f in self.folders.values() if f.full_name == full_name), None)

    def messages_in(self, full_name: str) -> list[Message]:
        folder = self.folder_named(full_name)
        if folder is None:
            return []
        return [m for m in self.messages.values() if m.folder_id == folder.id]


class RecordingNotifier:
    """NotificationSink that records every call."""

    def __init__(self) -> None:
        self.new_messages: list[tuple[str, list[Message]]] = []
        self.failures: list[tuple[str, str]] = []

    async def notify_new_messages(self, account, messages):
        self.new_messages.append((account.id, list(messages)))

    async def notify_sync_failure(self, account_id, reason):
        self.failures.append((account_id, reason))


async def eventually(predicate, timeout: float = 3.0) -> None:
    """Wait until predicate() is true."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def xdg_dirs(temp_dir, monkeypatch):
    """Point every XDG directory into the temp directory."""
    for name in ("XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_STATE_HOME"):
        monkeypatch.setenv(name, str(temp_dir / name.lower()))
    return temp_dir


@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
    )


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def store(sample_account):
    return MemoryStore([sample_account], passwords={sample_account.id: "secret"})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fast_watch():
    return WatchConfig(
        idle_timeout=0.05,
        poll_interval=0.01,
        max_failures=2,
        backoff_base=0.0,
        backoff_max=0.0,
    )


@pytest.fixture
async def session(server, sample_account):
    """A connected session against the fake server."""
    session = server.session_factory()(sample_account)
    await session.connect("secret")
    yield session
    await session.disconnect()


@pytest.fixture
async def database(temp_dir):
    db = Database(temp_dir / "test.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def repository(database, sample_account):
    repo = Repository(database)
    await repo.save_account(sample_account)
    return repo


@pytest.fixture
def sample_message(sample_account):
    """Create a sample Message for testing."""
    from datetime import datetime, timezone

    return Message(
        account_id=sample_account.id,
        uid=12345,
        message_id="<test123@example.com>",
        subject="Test Subject",
        sender="sender@example.com",
        sender_name="Test Sender",
        recipients=["recipient@example.com"],
        date_sent=datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc),
        date_received=datetime(2024, 1, 15, 10, 31, 0, tzinfo=timezone.utc),
        body_text="This is a test email body.",
        body_html="<html><body><p>This is a <b>test</b> email body.</p></body></html>",
    )
