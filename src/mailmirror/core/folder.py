# =============================================================================
# Folder Models
# =============================================================================
# Two views of an IMAP mailbox:
#
#   - RemoteFolder: what the server reported during one listing pass.
#     Ephemeral, never persisted directly.
#   - LocalFolder: the persisted mirror, keyed by (account_id, full_name).
#     Carries local bookkeeping (identity, ever_synced, sync watermark) that
#     reconciliation must never overwrite with server data.
#
# full_name is the join key between the two. display_name and remote_id are
# only fallbacks for providers that re-encode folder names between calls.
# =============================================================================

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto


class FolderType(Enum):
    """
    Semantic role of a folder.

    These map to IMAP SPECIAL-USE attributes (RFC 6154) when available,
    or are inferred from common (and localized) naming conventions.
    """
    INBOX = auto()      # Primary incoming mail
    SENT = auto()       # Sent messages
    DRAFTS = auto()     # Unsent drafts
    TRASH = auto()      # Deleted messages
    SPAM = auto()       # Junk mail
    ARCHIVE = auto()    # Archived messages
    CUSTOM = auto()     # User-created or unrecognized folders


# SPECIAL-USE attribute -> folder type (compared upper-case)
SPECIAL_USE_TYPES: dict[str, FolderType] = {
    "\\SENT": FolderType.SENT,
    "\\DRAFTS": FolderType.DRAFTS,
    "\\TRASH": FolderType.TRASH,
    "\\JUNK": FolderType.SPAM,
    "\\ARCHIVE": FolderType.ARCHIVE,
    "\\ALL": FolderType.ARCHIVE,
}

# Localized name fragments, checked in order against the lower-cased leaf name.
# Chinese entries cover the NetEase and QQ defaults.
LOCALIZED_NAME_PATTERNS: tuple[tuple[FolderType, tuple[str, ...]], ...] = (
    (FolderType.SENT, ("sent", "已发送", "已发邮件", "gesendet", "envoy", "enviado")),
    (FolderType.DRAFTS, ("draft", "草稿", "entwürfe", "entwurf", "brouillon", "borrador")),
    (FolderType.TRASH, ("trash", "deleted", "已删除", "删除", "papierkorb", "corbeille", "papelera")),
    (FolderType.SPAM, ("spam", "junk", "垃圾", "indésirable", "correo no deseado")),
    (FolderType.ARCHIVE, ("archive", "archiv", "归档", "存档", "archivo")),
)


def detect_type_from_name(name: str) -> FolderType:
    """
    Infer a folder type from its name when no SPECIAL-USE attribute exists.

    INBOX is not detected here: only the exact top-level name INBOX is the
    inbox, and that check needs the full name.

    Args:
        name: Folder leaf name (already decoded from modified UTF-7).

    Returns:
        The detected FolderType, or CUSTOM if nothing matches.
    """
    lowered = name.strip().lower()
    for folder_type, fragments in LOCALIZED_NAME_PATTERNS:
        if any(fragment in lowered for fragment in fragments):
            return folder_type
    return FolderType.CUSTOM


@dataclass
class RemoteFolder:
    """
    A folder as reported by the server in one listing pass.

    Attributes:
        full_name: Server-side mailbox name, exactly as the server encodes it.
                   This is the stable identity used for joins.
        display_name: Decoded leaf name for humans.
        folder_type: Semantic role (inbox, sent, ...).
        message_count: STATUS MESSAGES.
        unread_count: STATUS UNSEEN.
        subscribed: Whether the folder appeared in LSUB.
        can_hold_messages: False for container-only folders.
        can_hold_folders: False when the server reports \\NoInferiors.
        parent: full_name of the parent folder, if any.
        delimiter: Hierarchy delimiter reported by LIST.
        remote_id: Server-assigned MAILBOXID (RFC 8474) when available.
        uidvalidity: STATUS UIDVALIDITY.
        attributes: Raw LIST attributes.
    """
    full_name: str
    display_name: str
    folder_type: FolderType = FolderType.CUSTOM
    message_count: int = 0
    unread_count: int = 0
    subscribed: bool = True
    can_hold_messages: bool = True
    can_hold_folders: bool = True
    parent: str | None = None
    delimiter: str = "/"
    remote_id: str | None = None
    uidvalidity: int | None = None
    attributes: list[str] = field(default_factory=list)


@dataclass
class LocalFolder:
    """
    The persisted mirror of a remote folder.

    Server-reported fields are refreshed on every reconciliation pass.
    Local bookkeeping (id, ever_synced, last_sync, highest_uid,
    uidvalidity) belongs to the sync engine and is preserved across passes.

    Attributes:
        account_id: Owning account.
        full_name: Join key with RemoteFolder.full_name.
        ever_synced: True once a message fetch pass has completed for this
                     folder, even if it found nothing. Distinguishes
                     "never synced" from "synced and empty".
        highest_uid: Highest UID stored locally (the fetch cursor).
        uidvalidity: UIDVALIDITY epoch that highest_uid belongs to.
        id: Local identity, generated on insert.
    """
    account_id: str
    full_name: str
    display_name: str = ""
    folder_type: FolderType = FolderType.CUSTOM
    message_count: int = 0
    unread_count: int = 0
    subscribed: bool = True
    can_hold_messages: bool = True
    parent: str | None = None
    delimiter: str = "/"
    remote_id: str | None = None

    # Local bookkeeping
    uidvalidity: int | None = None
    highest_uid: int = 0
    ever_synced: bool = False
    last_sync: datetime | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.full_name

    @property
    def is_inbox(self) -> bool:
        """IMAP treats INBOX case-insensitively."""
        return self.full_name.upper() == "INBOX"

    def __str__(self) -> str:
        unread = f" ({self.unread_count})" if self.unread_count > 0 else ""
        return f"{self.display_name}{unread}"
