# =============================================================================
# IMAP Session Tests
# =============================================================================
# IMAPSession against the scripted fake server from conftest. STARTTLS runs
# against a local socket server with the real aioimaplib client.
# =============================================================================

import asyncio
import ssl
from dataclasses import replace

import pytest

from mailmirror.core import FolderType
from mailmirror.imap.providers import ProviderQuirks
from mailmirror.imap.session import (
    FolderListError,
    FolderMode,
    FolderOpenError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPSession,
    IMAPTLSError,
    RestrictedAccessError,
    SessionState,
    StaleHandleError,
    quote_mailbox,
)
from mailmirror.imap.providers import Encryption

from conftest import (
    FAST_SYNC,
    LOCAL_PROFILE,
    NETEASE_PROFILE,
    UNSAFE_LOGIN,
    FakeTransport,
    make_raw,
)


def test_quote_mailbox():
    assert quote_mailbox("INBOX") == "INBOX"
    assert quote_mailbox("Sent Messages") == '"Sent Messages"'
    assert quote_mailbox('Say "hi"') == '"Say \\"hi\\""'
    assert quote_mailbox("") == '""'


class TestConnect:
    async def test_connect_and_disconnect(self, server, sample_account):
        session = server.session_factory()(sample_account)
        assert session.state is SessionState.DISCONNECTED

        await session.connect("secret")
        assert session.is_connected
        assert session.supports_idle
        assert session.tls_info is None

        await session.disconnect()
        assert session.state is SessionState.DISCONNECTED
        assert server.commands[-1] == "LOGOUT"
        await session.disconnect()  # Idempotent

    async def test_bad_password_is_not_retried(self, server, sample_account):
        settings = replace(FAST_SYNC, connect_retries=3)
        session = server.session_factory(settings=settings)(sample_account)

        with pytest.raises(IMAPAuthenticationError):
            await session.connect("wrong")
        assert len(server.clients) == 1
        assert session.state is SessionState.DISCONNECTED

    async def test_network_failures_are_retried(self, server, sample_account):
        server.connect_failures = 2
        settings = replace(FAST_SYNC, connect_retries=2)
        session = server.session_factory(settings=settings)(sample_account)

        await session.connect("secret")
        assert session.is_connected
        assert len(server.clients) == 3

    async def test_retries_are_bounded(self, server, sample_account):
        server.connect_failures = 5
        settings = replace(FAST_SYNC, connect_retries=1)
        session = server.session_factory(settings=settings)(sample_account)

        with pytest.raises(IMAPConnectionError):
            await session.connect("secret")
        assert len(server.clients) == 2

    async def test_client_identification_for_netease(self, server, sample_account):
        session = server.session_factory(profile=NETEASE_PROFILE)(sample_account)
        await session.connect("secret")
        assert server.id_fields == [{"name": "mailmirror", "version": session.identity.version,
                                     "vendor": "mailmirror"}]

    async def test_no_identification_by_default(self, session, server):
        assert "ID" not in server.commands

    async def test_tls_below_provider_minimum_fails(self, server, sample_account):
        server.transport = FakeTransport("TLSv1.1")
        profile = replace(
            LOCAL_PROFILE,
            imap_encryption=Encryption.SSL,
            quirks=ProviderQuirks(min_tls_version=ssl.TLSVersion.TLSv1_2),
        )
        session = server.session_factory(profile=profile, settings=replace(FAST_SYNC, connect_retries=2))(
            sample_account
        )

        with pytest.raises(IMAPTLSError):
            await session.connect("secret")
        assert len(server.clients) == 1
        assert server.transport.closed

    async def test_tls_details_are_recorded(self, server, sample_account):
        server.transport = FakeTransport("TLSv1.3")
        profile = replace(
            LOCAL_PROFILE,
            imap_encryption=Encryption.SSL,
            quirks=ProviderQuirks(min_tls_version=ssl.TLSVersion.TLSv1_2),
        )
        session = server.session_factory(profile=profile)(sample_account)
        await session.connect("secret")

        assert session.tls_info.protocol == "TLSv1.3"
        assert session.tls_info.version is ssl.TLSVersion.TLSv1_3
        assert session.tls_info.cipher == "TLS_AES_256_GCM_SHA384"

    async def test_unknown_tls_version_does_not_block(self, server, sample_account):
        profile = replace(LOCAL_PROFILE, imap_encryption=Encryption.SSL)
        session = server.session_factory(profile=profile)(sample_account)
        await session.connect("secret")
        assert session.is_connected
        assert session.tls_info is None

    async def test_starttls_required_but_not_offered(self, server, sample_account):
        profile = replace(LOCAL_PROFILE, imap_encryption=Encryption.STARTTLS)
        session = server.session_factory(profile=profile)(sample_account)
        with pytest.raises(IMAPTLSError, match="does not offer STARTTLS"):
            await session.connect("secret")
        assert "CAPABILITY" in server.commands
        assert "STARTTLS" not in server.commands
        assert session.state is SessionState.DISCONNECTED


@pytest.fixture
async def plain_imap_server():
    """
    Start a socket server speaking just enough IMAP to reach STARTTLS.

    Yields a function taking the tagged STARTTLS reply and returning
    (port, received command verbs). After an OK reply the server answers the
    TLS ClientHello with plain text.
    """
    servers = []

    async def start(starttls_reply: str):
        received: list[str] = []

        async def handle(reader, writer):
            writer.write(b"* OK [CAPABILITY IMAP4rev1 STARTTLS] Test server ready\r\n")
            await writer.drain()
            try:
                while line := await reader.readline():
                    tag, _, command = line.decode().strip().partition(" ")
                    verb = command.split(" ", 1)[0].upper()
                    received.append(verb)
                    if verb == "CAPABILITY":
                        writer.write(b"* CAPABILITY IMAP4rev1 STARTTLS\r\n")
                        writer.write(f"{tag} OK CAPABILITY completed\r\n".encode())
                    elif verb == "STARTTLS":
                        writer.write(f"{tag} {starttls_reply}\r\n".encode())
                        await writer.drain()
                        if starttls_reply.startswith("OK"):
                            await reader.read(4096)
                            writer.write(b"* BYE this is not a TLS record\r\n")
                            await writer.drain()
                            break
                    elif verb == "LOGOUT":
                        writer.write(f"* BYE\r\n{tag} OK LOGOUT completed\r\n".encode())
                        await writer.drain()
                        break
                    else:
                        writer.write(f"{tag} BAD unexpected command\r\n".encode())
                    await writer.drain()
            except ConnectionError:
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1], received

    yield start
    for server in servers:
        server.close()


class TestStartTLS:
    """STARTTLS through the real aioimaplib client over a local socket."""

    def session_for(self, sample_account, port):
        profile = replace(
            LOCAL_PROFILE,
            imap_host="127.0.0.1",
            imap_port=port,
            imap_encryption=Encryption.STARTTLS,
        )
        return IMAPSession(sample_account, profile, settings=FAST_SYNC)

    async def test_refused_upgrade(self, plain_imap_server, sample_account):
        port, received = await plain_imap_server("NO STARTTLS is disabled")
        session = self.session_for(sample_account, port)

        with pytest.raises(IMAPTLSError, match="STARTTLS failed"):
            await session.connect("secret")

        assert "STARTTLS" in received
        assert "LOGIN" not in received
        assert session.state is SessionState.DISCONNECTED

    async def test_failed_handshake(self, plain_imap_server, sample_account):
        port, received = await plain_imap_server("OK Begin TLS negotiation now")
        session = self.session_for(sample_account, port)

        with pytest.raises(IMAPTLSError):
            await session.connect("secret")

        assert "LOGIN" not in received
        assert session.state is SessionState.DISCONNECTED


class TestListFolders:
    async def test_listing(self, server, session):
        server.mailbox("INBOX").fill(5, unread=2)
        server.mailbox("Sent Messages", attributes="\\HasNoChildren \\Sent").fill(1)
        server.mailbox("[Gmail]", attributes="\\HasChildren \\Noselect")
        server.mailbox("Work/Projects", subscribed=False)
        server.mailbox("&XfJT0ZAB-")

        folders = {f.full_name: f for f in await session.list_folders()}

        assert set(folders) == {"INBOX", "Sent Messages", "Work/Projects", "&XfJT0ZAB-"}
        inbox = folders["INBOX"]
        assert inbox.folder_type is FolderType.INBOX
        assert inbox.message_count == 5
        assert inbox.unread_count == 2
        assert inbox.uidvalidity == 1
        assert folders["Sent Messages"].folder_type is FolderType.SENT
        projects = folders["Work/Projects"]
        assert projects.display_name == "Projects"
        assert projects.parent == "Work"
        assert not projects.subscribed
        chinese = folders["&XfJT0ZAB-"]
        assert chinese.display_name == "已发送"
        assert chinese.folder_type is FolderType.SENT

    async def test_status_refusal_leaves_zero_counts(self, server, session):
        server.mailbox("INBOX").fill(3)
        server.mailbox("Locked", status_rejection="[NOPERM] Denied").fill(3)

        folders = {f.full_name: f for f in await session.list_folders()}
        assert folders["INBOX"].message_count == 3
        assert folders["Locked"].message_count == 0

    async def test_mailbox_ids_when_supported(self, server, sample_account):
        server.capabilities.add("OBJECTID")
        server.mailbox("INBOX", mailbox_id="F2212ea8")
        session = server.session_factory()(sample_account)
        await session.connect("secret")

        folders = await session.list_folders()
        assert folders[0].remote_id == "F2212ea8"

    async def test_requires_connection(self, server, sample_account):
        session = server.session_factory()(sample_account)
        with pytest.raises(FolderListError):
            await session.list_folders()


class TestOpenFolder:
    async def test_read_only_uses_examine(self, server, session):
        server.mailbox("INBOX").fill(4)
        handle = await session.open_folder("INBOX")

        assert handle.mode is FolderMode.READ_ONLY
        assert handle.exists == 4
        assert handle.uidvalidity == 1
        assert handle.uidnext == 5
        assert session.state is SessionState.FOLDER_OPEN
        assert "EXAMINE" in server.commands
        assert "SELECT" not in server.commands

    async def test_prefer_select_quirk(self, server, sample_account):
        server.mailbox("INBOX")
        profile = replace(LOCAL_PROFILE, quirks=ProviderQuirks(prefer_select_over_examine=True))
        session = server.session_factory(profile=profile)(sample_account)
        await session.connect("secret")

        handle = await session.open_folder("INBOX")
        assert handle.mode is FolderMode.READ_WRITE
        assert "SELECT" in server.commands

    async def test_read_write_falls_back_to_read_only(self, server, session):
        server.mailbox("Shared", select_rejection="[READ-ONLY] Shared folder")
        handle = await session.open_folder("Shared", FolderMode.READ_WRITE)
        assert handle.mode is FolderMode.READ_ONLY
        assert server.commands[-2:] == ["SELECT", "EXAMINE"]

    async def test_open_handle_is_reused(self, server, session):
        server.mailbox("INBOX")
        first = await session.open_folder("INBOX")
        second = await session.open_folder("INBOX")
        assert first is second
        assert server.commands.count("EXAMINE") == 1

    async def test_switching_read_only_folder_sends_close(self, server, session):
        server.mailbox("INBOX")
        server.mailbox("Sent")
        await session.open_folder("INBOX")
        await session.open_folder("Sent")
        assert "CLOSE" in server.commands

    async def test_switching_read_write_folder_does_not_expunge(self, server, session):
        server.mailbox("INBOX")
        server.mailbox("Sent")
        await session.open_folder("INBOX", FolderMode.READ_WRITE)
        await session.open_folder("Sent")
        assert "CLOSE" not in server.commands

    async def test_restricted_folder(self, server, sample_account):
        server.mailbox("INBOX")
        server.mailbox("Archive", rejection="Unsafe Login. Please contact kefu@188.com for help")
        session = server.session_factory(profile=NETEASE_PROFILE)(sample_account)
        await session.connect("secret")

        with pytest.raises(RestrictedAccessError) as exc_info:
            await session.open_folder("Archive")
        assert exc_info.value.folder == "Archive"
        assert "Unsafe Login" in exc_info.value.server_text
        # Restricted providers try read-write first, then read-only
        assert server.commands[-2:] == ["SELECT", "EXAMINE"]

        handle = await session.open_folder("INBOX")
        assert handle.name == "INBOX"

    async def test_restricted_classification_applies_to_any_provider(self, server, session):
        server.mailbox("Private", rejection=UNSAFE_LOGIN)
        with pytest.raises(RestrictedAccessError):
            await session.open_folder("Private")

    async def test_missing_folder(self, server, session):
        with pytest.raises(FolderOpenError):
            await session.open_folder("Nope")
        assert session.current_folder is None


class TestFetch:
    async def test_fetch_range(self, server, session):
        server.mailbox("INBOX").fill(10)
        await session.open_folder("INBOX")
        records = await session.fetch_range(9, 10)

        assert [r.uid for r in records] == [9, 10]
        assert records[0].raw == make_raw(9)
        assert server.requests_for("INBOX") == ["9:10"]

    async def test_fetch_requires_open_folder(self, session):
        with pytest.raises(StaleHandleError):
            await session.fetch_range(1, 1)

    async def test_invalid_range(self, server, session):
        server.mailbox("INBOX").fill(1)
        await session.open_folder("INBOX")
        with pytest.raises(ValueError):
            await session.fetch_range(3, 2)

    async def test_fetch_uids_since(self, server, session):
        server.mailbox("INBOX").fill(5)
        await session.open_folder("INBOX")

        assert [r.uid for r in await session.fetch_uids_since(3)] == [4, 5]
        # "6:*" still matches the newest message on the server
        assert await session.fetch_uids_since(5) == []

    async def test_highest_uid(self, server, session):
        box = server.mailbox("INBOX")
        box.fill(3)
        await session.open_folder("INBOX")
        assert await session.highest_uid() == 3

    async def test_highest_uid_of_empty_folder(self, server, session):
        server.mailbox("INBOX")
        await session.open_folder("INBOX")
        assert await session.highest_uid() == 0
        assert server.requests_for("INBOX") == []


class TestStaleHandleRecovery:
    async def test_recovers_transparently(self, server, session):
        server.mailbox("INBOX").fill(3)
        server.stale_fetches = 1

        records = await session.with_open_folder(
            "INBOX", FolderMode.READ_ONLY, lambda handle: session.fetch_range(1, handle.exists)
        )

        assert [r.uid for r in records] == [1, 2, 3]
        assert server.commands.count("EXAMINE") == 2

    async def test_gives_up_after_bounded_retries(self, server, session):
        server.mailbox("INBOX").fill(3)
        server.stale_fetches = 10

        with pytest.raises(StaleHandleError):
            await session.with_open_folder(
                "INBOX", FolderMode.READ_ONLY, lambda handle: session.fetch_range(1, 3)
            )
        # One attempt plus stale_retries reopenings
        assert server.commands.count("EXAMINE") == FAST_SYNC.stale_retries + 1


class TestIdle:
    async def test_push_updates_exists(self, server, session):
        server.mailbox("INBOX").fill(2)
        handle = await session.open_folder("INBOX")
        server.deliver("INBOX", make_raw(3))

        notifications = await session.idle_wait(timeout=1.0)

        assert notifications == ["3 EXISTS"]
        assert handle.exists == 3

    async def test_timeout_returns_nothing(self, server, session):
        server.mailbox("INBOX")
        await session.open_folder("INBOX")
        assert await session.idle_wait(timeout=0.01) == []

    async def test_commands_never_interleave(self, server, session):
        server.mailbox("INBOX").fill(5)
        server.fetch_delay = 0.01
        await session.open_folder("INBOX")

        await asyncio.gather(*(session.fetch_range(i, i) for i in range(1, 6)))
        assert server.max_in_flight == 1
