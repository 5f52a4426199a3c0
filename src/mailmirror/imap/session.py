# =============================================================================
# IMAP Session
# =============================================================================
# One stateful IMAP connection for one account, wrapping aioimaplib.
#
# State machine:
#
#   DISCONNECTED -> CONNECTING -> AUTHENTICATED <-> FOLDER_OPEN
#         ^                                              |
#         +------------------ disconnect() --------------+
#
# Key responsibilities:
#   - Connect with SSL/STARTTLS, bounded retries for network failures
#   - Client identification (IMAP ID) for providers that gate on it
#   - Best-effort TLS version check against the provider minimum
#   - Folder listing with type classification and subscription state
#   - Folder open with read-write/read-only fallbacks and restricted-folder
#     classification
#   - Stale-handle recovery: reopen and retry when the server dropped the
#     selected folder
#   - Flag updates and EXPUNGE on read-write folders
#   - IDLE primitives for the watcher
#
# Design notes:
#   - A session has exactly one owner (a sync job or a watcher loop). Commands
#     are additionally serialized by a lock so they can never interleave.
#   - Every command runs under command_timeout; a timeout is a network error.
# =============================================================================

import asyncio
import logging
import ssl
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from aioimaplib import aioimaplib

from mailmirror.config import ClientConfig, SyncConfig
from mailmirror.core import RemoteFolder
from mailmirror.imap.parsing import (
    FetchRecord,
    classify_folder,
    decode_modified_utf7,
    parse_fetch_response,
    parse_list_response,
    parse_select_response,
    parse_status_response,
    response_text,
)
from mailmirror.imap.providers import (
    Encryption,
    ServerProfile,
    is_restricted_access_error,
    is_stale_handle_error,
    resolve_account,
)

if TYPE_CHECKING:
    from mailmirror.core import Account

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Everything the mirror needs in one round trip. PEEK keeps \Seen untouched.
FETCH_ITEMS = "(UID FLAGS RFC822.SIZE INTERNALDATE BODY.PEEK[])"

STATUS_ITEMS = ("MESSAGES", "UNSEEN", "UIDVALIDITY", "UIDNEXT")

# ssl.SSLObject.version() strings
TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}

# What aioimaplib sends down the push queue when IDLE ends
_STOP_PUSH = b"stop_wait_server_push"

_TIMEOUT_ERRORS = (asyncio.TimeoutError, aioimaplib.CommandTimeout)


def quote_mailbox(name: str) -> str:
    """
    Quote an IMAP mailbox name if it contains special characters.

    Args:
        name: The folder name to quote (modified UTF-7, as the server sent it).

    Returns:
        Properly quoted folder name for IMAP commands.
    """
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return name


def create_ssl_context(profile: ServerProfile) -> ssl.SSLContext:
    """Default verifying context, raised to the provider's minimum TLS version."""
    context = ssl.create_default_context()
    if profile.quirks.min_tls_version is not None:
        context.minimum_version = profile.quirks.min_tls_version
    return context


def default_client_factory(profile: ServerProfile, timeout: float) -> Any:
    """Create the aioimaplib client for a profile. Connection starts immediately."""
    if profile.imap_encryption is Encryption.SSL:
        return aioimaplib.IMAP4_SSL(
            host=profile.imap_host,
            port=profile.imap_port,
            timeout=timeout,
            ssl_context=create_ssl_context(profile),
        )
    # Plain connection, upgraded with STARTTLS unless encryption is NONE
    return aioimaplib.IMAP4(
        host=profile.imap_host,
        port=profile.imap_port,
        timeout=timeout,
    )


ClientFactory = Callable[[ServerProfile, float], Any]


class SessionState(Enum):
    """Lifecycle of an IMAPSession."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATED = auto()
    FOLDER_OPEN = auto()


class FolderMode(Enum):
    """How a folder is opened: SELECT (read-write) or EXAMINE (read-only)."""
    READ_WRITE = "read-write"
    READ_ONLY = "read-only"


@dataclass
class OpenFolder:
    """
    The currently open folder.

    Attributes:
        name: Full server name.
        mode: Mode the server actually granted.
        exists: Message count at open time, updated from IDLE pushes and polls.
        uidvalidity: Epoch of the folder's UIDs.
        uidnext: Predicted next UID.
    """
    name: str
    mode: FolderMode
    exists: int = 0
    uidvalidity: int | None = None
    uidnext: int | None = None


@dataclass(frozen=True)
class TLSInfo:
    """Negotiated TLS parameters, as far as the transport exposes them."""
    protocol: str | None = None
    cipher: str | None = None

    @property
    def version(self) -> ssl.TLSVersion | None:
        return TLS_VERSIONS.get(self.protocol or "")


class IMAPSession:
    """
    Stateful IMAP session for one account.

    Usage:
        >>> session = IMAPSession(account, settings=config.sync)
        >>> await session.connect(password)
        >>> folders = await session.list_folders()
        >>> records = await session.with_open_folder(
        ...     "INBOX", FolderMode.READ_ONLY,
        ...     lambda handle: session.fetch_range(1, handle.exists),
        ... )
        >>> await session.disconnect()

    Attributes:
        account: Account this session belongs to.
        profile: Resolved server profile (host, port, quirks).
        state: Current SessionState.
        current_folder: The open folder, if any.
        tls_info: Negotiated TLS parameters, None if not inspectable.
        capabilities: Upper-cased server capabilities.
    """

    def __init__(
        self,
        account: "Account",
        profile: ServerProfile | None = None,
        *,
        settings: SyncConfig | None = None,
        identity: ClientConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """
        Initialize the session. No network activity happens here.

        Args:
            account: Account to connect as.
            profile: Server profile. Resolved from the account when omitted.
            settings: Timeouts and retry bounds.
            identity: Fields sent with the IMAP ID command.
            client_factory: Creates the aioimaplib client (replaceable in tests).
        """
        self.account = account
        self.profile = profile or resolve_account(account)
        self.settings = settings or SyncConfig()
        self.identity = identity or ClientConfig()
        self._client_factory = client_factory or default_client_factory

        self._client: Any = None
        self._command_lock = asyncio.Lock()

        self.state = SessionState.DISCONNECTED
        self.current_folder: OpenFolder | None = None
        self.tls_info: TLSInfo | None = None
        self.capabilities: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self.state in (SessionState.AUTHENTICATED, SessionState.FOLDER_OPEN)

    @property
    def supports_idle(self) -> bool:
        return "IDLE" in self.capabilities

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, password: str) -> None:
        """
        Connect, authenticate and identify.

        Network failures are retried up to settings.connect_retries times with
        exponential backoff. Authentication and TLS policy failures are not.

        Args:
            password: Account secret from the secret store.

        Raises:
            IMAPConnectionError: Network/TLS failure after all attempts.
            IMAPTimeoutError: Timeout after all attempts.
            IMAPAuthenticationError: Credentials rejected.
        """
        if self.state is not SessionState.DISCONNECTED:
            raise IMAPError(
                f"Session for {self.account.name} is already {self.state.name.lower()}"
            )

        attempts = self.settings.connect_retries + 1
        for attempt in range(1, attempts + 1):
            self.state = SessionState.CONNECTING
            try:
                await self._open_transport()
                await self._login(password)
            except (IMAPAuthenticationError, IMAPTLSError):
                self._drop_transport()
                raise
            except IMAPConnectionError as e:
                self._drop_transport()
                if attempt >= attempts:
                    raise
                delay = self.settings.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Connection attempt {attempt}/{attempts} for {self.account.name} "
                    f"failed: {e}; retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
            else:
                break

        self.state = SessionState.AUTHENTICATED
        logger.info(f"Connected to {self.profile.imap_host} as {self.account.email}")

        if self.profile.quirks.requires_client_identification:
            await self._identify()

    async def _open_transport(self) -> None:
        """Create the client, wait for the greeting, upgrade and verify TLS."""
        host, port = self.profile.imap_host, self.profile.imap_port
        encryption = self.profile.imap_encryption
        logger.debug(f"Connecting to {host}:{port} ({encryption.value})")

        try:
            self._client = self._client_factory(self.profile, self.settings.command_timeout)
            await asyncio.wait_for(
                self._client.wait_hello_from_server(),
                timeout=self.settings.connect_timeout,
            )
        except _TIMEOUT_ERRORS as e:
            raise IMAPTimeoutError(f"Timed out connecting to {host}:{port}") from e
        except (OSError, aioimaplib.Abort) as e:
            raise IMAPConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

        self._refresh_capabilities()

        if encryption is Encryption.STARTTLS:
            await self._starttls()

        if encryption is not Encryption.NONE:
            self._check_tls()

    async def _starttls(self) -> None:
        """
        Upgrade the plain connection to TLS in place.

        aioimaplib has no STARTTLS call of its own: the command goes through
        the client protocol and the event loop wraps the existing transport.

        Raises:
            IMAPTLSError: The server does not offer or refuses STARTTLS, or
                the handshake fails.
            IMAPTimeoutError: The handshake did not finish in time.
        """
        host = self.profile.imap_host
        protocol = self._client.protocol

        if "STARTTLS" not in self.capabilities:
            await self._execute("CAPABILITY", protocol.capability())
            self._refresh_capabilities()
        if "STARTTLS" not in self.capabilities:
            raise IMAPTLSError(f"{host} does not offer STARTTLS")

        logger.debug("Upgrading to TLS via STARTTLS")
        response = await self._execute("STARTTLS", protocol.simple_command("STARTTLS"))
        if response.result != "OK":
            raise IMAPTLSError(f"STARTTLS failed: {response_text(response.lines)}")

        loop = asyncio.get_running_loop()
        try:
            transport = await asyncio.wait_for(
                loop.start_tls(
                    protocol.transport,
                    protocol,
                    create_ssl_context(self.profile),
                    server_hostname=host,
                ),
                timeout=self.settings.connect_timeout,
            )
        except _TIMEOUT_ERRORS as e:
            raise IMAPTimeoutError(f"TLS handshake with {host} timed out") from e
        except OSError as e:
            raise IMAPTLSError(f"TLS handshake with {host} failed: {e}") from e
        if transport is None:
            raise IMAPTLSError(f"{host} closed the connection during the TLS handshake")

        protocol.transport = transport
        # Capabilities sent before the upgrade must be discarded (RFC 3501 6.2.1)
        await self._execute("CAPABILITY", protocol.capability())
        self._refresh_capabilities()

    def _refresh_capabilities(self) -> None:
        protocol = getattr(self._client, "protocol", None)
        self.capabilities = {c.upper() for c in getattr(protocol, "capabilities", ())}

    def _inspect_tls(self) -> TLSInfo | None:
        """
        Query the negotiated TLS parameters from the transport.

        Not every transport exposes an SSL object, so None is a normal result.
        """
        transport = getattr(getattr(self._client, "protocol", None), "transport", None)
        if transport is None:
            return None
        ssl_object = transport.get_extra_info("ssl_object")
        if ssl_object is None:
            return None
        cipher = ssl_object.cipher()
        return TLSInfo(protocol=ssl_object.version(), cipher=cipher[0] if cipher else None)

    def _check_tls(self) -> None:
        """
        Fail closed only when the negotiated version is provably too low.

        Raises:
            IMAPTLSError: If the version is known and below the minimum.
        """
        self.tls_info = self._inspect_tls()
        minimum = self.profile.quirks.min_tls_version
        version = self.tls_info.version if self.tls_info else None

        if version is None:
            logger.debug(
                f"Negotiated TLS version with {self.profile.imap_host} is unknown; "
                f"continuing with reduced confidence"
            )
            return

        logger.debug(
            f"TLS with {self.profile.imap_host}: {self.tls_info.protocol} "
            f"({self.tls_info.cipher})"
        )
        if minimum is not None and version < minimum:
            raise IMAPTLSError(
                f"{self.profile.imap_host} negotiated {self.tls_info.protocol}, "
                f"{self.profile.provider} requires at least {minimum.name}"
            )

    async def _login(self, password: str) -> None:
        """
        Raises:
            IMAPAuthenticationError: If the server rejects the credentials.
        """
        logger.debug(f"Authenticating as {self.account.email}")
        response = await self._execute(
            "LOGIN", self._require_client().login(self.account.email, password)
        )
        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.account.email}: "
                f"{response_text(response.lines)}"
            )
        self._refresh_capabilities()

    async def _identify(self) -> None:
        """Send IMAP ID. Failure is logged and ignored; many servers lack it."""
        try:
            response = await self._execute(
                "ID", self._require_client().id(**self.identity.as_id_fields())
            )
        except IMAPError as e:
            logger.warning(f"ID command failed for {self.account.name} (ignored): {e}")
            return

        if response.result != "OK":
            logger.info(
                f"Server rejected ID for {self.account.name} (ignored): "
                f"{response_text(response.lines)}"
            )
        else:
            logger.debug("Client identification accepted")

    def _drop_transport(self) -> None:
        """Forget a half-open connection after a failed connect attempt."""
        client, self._client = self._client, None
        self.state = SessionState.DISCONNECTED
        self.current_folder = None
        transport = getattr(getattr(client, "protocol", None), "transport", None)
        if transport is not None:
            transport.close()

    async def disconnect(self) -> None:
        """
        Close the open folder (if any), then LOGOUT. Safe to call repeatedly.
        """
        client = self._client
        if client is None:
            self.state = SessionState.DISCONNECTED
            self.current_folder = None
            return

        try:
            await self._close_folder_quietly()
            logger.debug(f"Sending LOGOUT for {self.account.name}")
            await asyncio.wait_for(client.logout(), timeout=self.settings.command_timeout)
        except Exception as e:
            logger.warning(f"Error during logout for {self.account.name}: {e}")
        finally:
            self._client = None
            self.state = SessionState.DISCONNECTED
            self.current_folder = None

    def _require_client(self) -> Any:
        if self._client is None:
            raise IMAPConnectionError(f"Session for {self.account.name} is not connected")
        return self._client

    async def _execute(self, verb: str, command: Awaitable[T]) -> T:
        """
        Run one IMAP command under the command lock and timeout.

        Raises:
            IMAPTimeoutError: The command did not finish in time.
            StaleHandleError: The client library says no folder is selected.
            IMAPConnectionError: The connection failed.
        """
        async with self._command_lock:
            try:
                return await asyncio.wait_for(command, timeout=self.settings.command_timeout)
            except _TIMEOUT_ERRORS as e:
                raise IMAPTimeoutError(
                    f"{verb} timed out after {self.settings.command_timeout:.0f}s"
                ) from e
            except aioimaplib.Abort as e:
                if is_stale_handle_error(str(e)):
                    raise StaleHandleError(f"{verb}: {e}") from e
                raise IMAPConnectionError(f"{verb} aborted: {e}") from e
            except OSError as e:
                raise IMAPConnectionError(f"{verb} failed: {e}") from e

    # =========================================================================
    # Folder Listing
    # =========================================================================

    async def list_folders(self) -> list[RemoteFolder]:
        """
        List all selectable folders with counts and subscription state.

        Returns:
            RemoteFolder objects in server order. Non-selectable containers
            are skipped.

        Raises:
            FolderListError: If not authenticated or LIST fails.
        """
        if not self.is_connected:
            raise FolderListError(
                f"Cannot list folders while {self.state.name.lower()}"
            )

        client = self._require_client()
        response = await self._execute("LIST", client.list('""', "*"))
        if response.result != "OK":
            raise FolderListError(f"LIST failed: {response_text(response.lines)}")

        entries = parse_list_response(response.lines)
        subscribed = await self._subscribed_names()
        with_ids = "OBJECTID" in self.capabilities

        folders: list[RemoteFolder] = []
        for entry in entries:
            if not entry.name:
                continue
            folder_type = classify_folder(entry.name, entry.attributes)
            if folder_type is None:
                logger.debug(f"Skipping non-selectable folder {entry.name!r}")
                continue

            status = await self._status_or_empty(entry.name, with_ids)
            upper_attrs = {attr.upper() for attr in entry.attributes}
            mailbox_id = status.get("MAILBOXID")
            uidvalidity = status.get("UIDVALIDITY")

            folders.append(RemoteFolder(
                full_name=entry.name,
                display_name=decode_modified_utf7(entry.leaf_name),
                folder_type=folder_type,
                message_count=int(status.get("MESSAGES", 0)),
                unread_count=int(status.get("UNSEEN", 0)),
                subscribed=subscribed is None or entry.name in subscribed,
                can_hold_messages=True,
                can_hold_folders="\\NOINFERIORS" not in upper_attrs,
                parent=entry.parent,
                delimiter=entry.delimiter or "/",
                remote_id=str(mailbox_id) if mailbox_id else None,
                uidvalidity=int(uidvalidity) if uidvalidity is not None else None,
                attributes=entry.attributes,
            ))

        logger.debug(f"Found {len(folders)} selectable folders for {self.account.name}")
        return folders

    async def _subscribed_names(self) -> set[str] | None:
        """Names from LSUB, or None when the server refuses LSUB."""
        response = await self._execute("LSUB", self._require_client().lsub('""', "*"))
        if response.result != "OK":
            logger.info(f"LSUB failed, treating all folders as subscribed: "
                        f"{response_text(response.lines)}")
            return None
        return {entry.name for entry in parse_list_response(response.lines)}

    async def _status_or_empty(self, name: str, with_ids: bool) -> dict[str, int | str]:
        """STATUS for listing; a refusal leaves the counts at zero."""
        items = STATUS_ITEMS + (("MAILBOXID",) if with_ids else ())
        response = await self._execute(
            "STATUS",
            self._require_client().status(quote_mailbox(name), f"({' '.join(items)})"),
        )
        if response.result != "OK":
            logger.debug(f"STATUS refused for {name!r}: {response_text(response.lines)}")
            return {}
        return parse_status_response(response.lines)

    async def folder_status(self, name: str) -> dict[str, int | str]:
        """
        Get message counts of a folder without opening it.

        Returns:
            Dictionary with MESSAGES, UNSEEN, UIDVALIDITY, UIDNEXT.

        Raises:
            RestrictedAccessError: If the provider blocks the folder.
            IMAPError: If the server refuses STATUS for another reason.
        """
        response = await self._execute(
            "STATUS",
            self._require_client().status(quote_mailbox(name), f"({' '.join(STATUS_ITEMS)})"),
        )
        if response.result != "OK":
            text = f"{response.result} STATUS {response_text(response.lines)}"
            if is_restricted_access_error(text):
                raise RestrictedAccessError(name, text)
            raise IMAPError(f"STATUS {name!r} failed: {text}")
        return parse_status_response(response.lines)

    # =========================================================================
    # Folder Open / Close
    # =========================================================================

    def _open_attempts(self, name: str, mode: FolderMode) -> tuple[FolderMode, ...]:
        quirks = self.profile.quirks
        if quirks.has_folder_access_restrictions and name.upper() != "INBOX":
            return (FolderMode.READ_WRITE, FolderMode.READ_ONLY)
        if mode is FolderMode.READ_WRITE or quirks.prefer_select_over_examine:
            return (FolderMode.READ_WRITE, FolderMode.READ_ONLY)
        return (FolderMode.READ_ONLY,)

    async def open_folder(
        self,
        name: str,
        mode: FolderMode = FolderMode.READ_ONLY,
    ) -> OpenFolder:
        """
        Open a folder, closing any other open folder first.

        An already open handle for the same folder is reused when its mode
        satisfies the request.

        Args:
            name: Full server name.
            mode: Requested mode. READ_WRITE falls back to READ_ONLY.

        Returns:
            The open folder handle.

        Raises:
            RestrictedAccessError: The provider's security policy blocks it.
            FolderOpenError: The folder cannot be opened for another reason.
        """
        if not self.is_connected:
            raise FolderOpenError(
                f"Cannot open {name!r} while {self.state.name.lower()}"
            )

        current = self.current_folder
        if current is not None and current.name == name:
            if current.mode is mode or mode is FolderMode.READ_ONLY:
                return current
        if current is not None:
            await self._close_folder_quietly()

        client = self._require_client()
        quoted = quote_mailbox(name)
        failures: list[str] = []

        for attempt in self._open_attempts(name, mode):
            if attempt is FolderMode.READ_WRITE:
                verb, command = "SELECT", client.select(quoted)
            else:
                verb, command = "EXAMINE", client.examine(quoted)

            response = await self._execute(verb, command)
            if response.result == "OK":
                status = parse_select_response(response.lines)
                granted = FolderMode.READ_ONLY if status.get("READ-ONLY") else attempt
                handle = OpenFolder(
                    name=name,
                    mode=granted,
                    exists=int(status.get("EXISTS", 0)),
                    uidvalidity=status.get("UIDVALIDITY"),
                    uidnext=status.get("UIDNEXT"),
                )
                self.current_folder = handle
                self.state = SessionState.FOLDER_OPEN
                logger.debug(f"Opened {name!r} {granted.value}, {handle.exists} messages")
                return handle

            text = f"{response.result} {verb} {response_text(response.lines)}"
            failures.append(text)
            logger.debug(f"{verb} {name!r} rejected: {text}")

        combined = "; ".join(failures)
        if any(is_restricted_access_error(text) for text in failures):
            raise RestrictedAccessError(name, combined)
        raise FolderOpenError(f"Cannot open folder {name!r}: {combined}")

    async def _close_folder_quietly(self) -> None:
        """
        Leave the open folder, ignoring errors.

        CLOSE expunges in read-write mode, so it is only sent for read-only
        handles. A read-write folder is left by the next SELECT/EXAMINE or by
        LOGOUT, neither of which expunges.
        """
        current, self.current_folder = self.current_folder, None
        if self.state is SessionState.FOLDER_OPEN:
            self.state = SessionState.AUTHENTICATED
        if current is None or self._client is None:
            return
        if current.mode is not FolderMode.READ_ONLY:
            return
        try:
            await self._execute("CLOSE", self._client.close())
        except IMAPError as e:
            logger.debug(f"Ignoring error while closing {current.name!r}: {e}")

    def _forget_folder(self) -> None:
        """Drop a handle the server no longer honors, without talking to it."""
        self.current_folder = None
        if self.state is SessionState.FOLDER_OPEN:
            self.state = SessionState.AUTHENTICATED

    async def with_open_folder(
        self,
        name: str,
        mode: FolderMode,
        operation: Callable[[OpenFolder], Awaitable[T]],
    ) -> T:
        """
        Run an operation against an open folder with stale-handle recovery.

        If the operation fails because the server silently closed the folder,
        the folder is reopened and the same operation retried, up to
        settings.stale_retries times with a fixed settings.stale_backoff delay.

        Args:
            name: Full server name.
            mode: Requested open mode.
            operation: Coroutine function receiving the OpenFolder.

        Returns:
            Whatever the operation returns.

        Raises:
            StaleHandleError: If the handle is still stale after all retries.
        """
        retries = 0
        while True:
            handle = await self.open_folder(name, mode)
            try:
                return await operation(handle)
            except StaleHandleError as e:
                if retries >= self.settings.stale_retries:
                    logger.warning(f"Folder {name!r} still stale after {retries} retries")
                    raise
                retries += 1
                logger.info(
                    f"Folder {name!r} was closed by the server ({e}); "
                    f"reopening, retry {retries}/{self.settings.stale_retries}"
                )
                self._forget_folder()
                await asyncio.sleep(self.settings.stale_backoff)

    # =========================================================================
    # Message Retrieval (requires an open folder)
    # =========================================================================

    def _require_open(self) -> OpenFolder:
        if self.state is not SessionState.FOLDER_OPEN or self.current_folder is None:
            raise StaleHandleError("No folder is open")
        return self.current_folder

    def _check_folder_response(self, verb: str, response: Any) -> None:
        if response.result == "OK":
            return
        text = f"{response.result} {verb} {response_text(response.lines)}"
        if is_stale_handle_error(text):
            raise StaleHandleError(text)
        if is_restricted_access_error(text):
            raise RestrictedAccessError(self.current_folder.name, text)
        raise IMAPError(text)

    async def fetch_range(self, start: int, end: int) -> list[FetchRecord]:
        """
        Fetch messages by sequence number (1 = oldest), inclusive.

        Raises:
            StaleHandleError: If no folder is open or the server closed it.
        """
        self._require_open()
        if start < 1 or end < start:
            raise ValueError(f"Invalid sequence range {start}:{end}")

        response = await self._execute(
            "FETCH", self._require_client().fetch(f"{start}:{end}", FETCH_ITEMS)
        )
        self._check_folder_response("FETCH", response)
        return parse_fetch_response(response.lines)

    async def fetch_uids_since(self, uid: int) -> list[FetchRecord]:
        """
        Fetch messages with a UID greater than uid.

        "N:*" always matches the last message, so older UIDs are filtered out.
        """
        self._require_open()
        response = await self._execute(
            "UID FETCH", self._require_client().uid("FETCH", f"{uid + 1}:*", FETCH_ITEMS)
        )
        self._check_folder_response("UID FETCH", response)
        return [record for record in parse_fetch_response(response.lines) if record.uid > uid]

    async def highest_uid(self) -> int:
        """UID of the newest message in the open folder (0 if empty)."""
        handle = self._require_open()
        if handle.exists == 0:
            return 0
        response = await self._execute("FETCH", self._require_client().fetch("*", "(UID)"))
        self._check_folder_response("FETCH", response)
        return max((record.uid for record in parse_fetch_response(response.lines)), default=0)

    # =========================================================================
    # Message Actions (requires a read-write folder)
    # =========================================================================

    def _require_writable(self) -> OpenFolder:
        handle = self._require_open()
        if handle.mode is not FolderMode.READ_WRITE:
            raise FolderOpenError(f"Folder {handle.name!r} is open read-only")
        return handle

    async def add_flags(self, uid: int, flags: str) -> None:
        """
        Add flags to one message, e.g. add_flags(42, "\\Seen").

        Raises:
            StaleHandleError: If no folder is open or the server closed it.
            FolderOpenError: If the folder was only granted read-only.
        """
        self._require_writable()
        response = await self._execute(
            "UID STORE",
            self._require_client().uid("STORE", str(uid), "+FLAGS.SILENT", f"({flags})"),
        )
        self._check_folder_response("UID STORE", response)

    async def expunge(self) -> None:
        """Remove messages flagged \\Deleted from the open folder."""
        self._require_writable()
        response = await self._execute("EXPUNGE", self._require_client().expunge())
        self._check_folder_response("EXPUNGE", response)

    # =========================================================================
    # IDLE Support
    # =========================================================================

    async def idle_wait(self, timeout: float) -> list[str]:
        """
        IDLE on the open folder until the server pushes something or timeout.

        Returns:
            Pushed lines (e.g. "12 EXISTS"), empty on timeout.
        """
        handle = self._require_open()
        client = self._require_client()

        idle_task = await self._execute("IDLE", client.idle_start(timeout=timeout))
        try:
            try:
                pushed = await client.wait_server_push(timeout=timeout)
            except asyncio.TimeoutError:
                pushed = []
        finally:
            if client.has_pending_idle():
                client.idle_done()
            try:
                await asyncio.wait_for(idle_task, timeout=self.settings.command_timeout)
            except _TIMEOUT_ERRORS as e:
                raise IMAPTimeoutError("IDLE did not terminate") from e

        if isinstance(pushed, (bytes, bytearray, str)):
            pushed = [pushed]

        notifications: list[str] = []
        for line in pushed or []:
            raw = bytes(line) if isinstance(line, (bytes, bytearray)) else str(line).encode()
            if raw == _STOP_PUSH:
                continue
            text = raw.decode("utf-8", errors="replace").strip().lstrip("* ")
            notifications.append(text)
            parts = text.split()
            if len(parts) == 2 and parts[1].upper() == "EXISTS" and parts[0].isdigit():
                handle.exists = int(parts[0])

        if notifications:
            logger.debug(f"IDLE notifications for {self.account.name}: {notifications}")
        return notifications

    async def noop(self) -> None:
        """Keep-alive / poll for untagged updates."""
        response = await self._execute("NOOP", self._require_client().noop())
        if response.result != "OK":
            raise IMAPConnectionError(f"NOOP failed: {response_text(response.lines)}")


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Network or TLS failure. Retried with backoff at the connection layer."""
    pass


class IMAPTimeoutError(IMAPConnectionError):
    """A connect or command timeout. Treated as a network failure."""
    pass


class IMAPTLSError(IMAPConnectionError):
    """TLS policy violation. Never retried."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails. Never retried automatically."""
    pass


class FolderListError(IMAPError):
    """Raised when the folder list cannot be retrieved."""
    pass


class FolderOpenError(IMAPError):
    """Raised when a folder cannot be opened in any mode."""
    pass


class RestrictedAccessError(IMAPError):
    """
    A provider security policy rejected a specific folder.

    Expected for some providers (NetEase "Unsafe Login"); the folder is
    skipped and the sync continues.
    """

    def __init__(self, folder: str, server_text: str) -> None:
        super().__init__(f"Access to folder {folder!r} is restricted by the provider: {server_text}")
        self.folder = folder
        self.server_text = server_text


class StaleHandleError(IMAPError):
    """The open folder handle is no longer valid on the server."""
    pass
