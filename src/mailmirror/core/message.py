# =============================================================================
# Message Model
# =============================================================================
# Represents one mirrored email message:
#   - Envelope (From, To, Cc, Bcc, Subject, dates)
#   - Body: plain text plus the ORIGINAL HTML, kept separately. Derived text
#     is for previews and search; the untouched HTML is for faithful rendering.
#   - Identity: the Message-ID header, or a synthesized one when absent.
#     This is the deduplication key within an account.
#   - IMAP metadata (UID, flags, size)
#
# A message that failed to decode is still stored as a placeholder
# (parse_failed=True) so a single bad message never aborts a folder sync.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntFlag


class MessageFlags(IntFlag):
    """
    Email message flags, stored as a bitmask.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (usually shown as a star)
        - DELETED: Marked for deletion (will be purged on EXPUNGE)
        - DRAFT: Message is a draft (not yet sent)

    Usage:
        msg.flags = MessageFlags.SEEN | MessageFlags.FLAGGED
        if msg.flags & MessageFlags.SEEN:
            ...
    """
    NONE = 0            # No flags set
    SEEN = 1 << 0       # \\Seen
    ANSWERED = 1 << 1   # \\Answered
    FLAGGED = 1 << 2    # \\Flagged
    DELETED = 1 << 3    # \\Deleted
    DRAFT = 1 << 4      # \\Draft

    @classmethod
    def from_imap(cls, flags_str: str) -> "MessageFlags":
        """Convert an IMAP FLAGS list (without parentheses) to MessageFlags."""
        result = cls.NONE
        upper = flags_str.upper()
        if "\\SEEN" in upper:
            result |= cls.SEEN
        if "\\ANSWERED" in upper:
            result |= cls.ANSWERED
        if "\\FLAGGED" in upper:
            result |= cls.FLAGGED
        if "\\DELETED" in upper:
            result |= cls.DELETED
        if "\\DRAFT" in upper:
            result |= cls.DRAFT
        return result


@dataclass
class Message:
    """
    Represents a mirrored email message.

    Attributes:
        account_id: Owning account (dedup scope).
        folder_id: Local id of the folder the message was fetched from.
        uid: IMAP UID, only meaningful within the folder's UIDVALIDITY epoch.

        message_id: RFC 5322 Message-ID, or a synthesized identity.
        in_reply_to: Message-ID this message replies to.
        references: Message-IDs of the thread, oldest first.

        subject, sender, sender_name, recipients, cc, bcc, reply_to:
            Decoded envelope fields.
        date_sent: From the Date header, normalized to UTC.
        date_received: Server INTERNALDATE, or the time of the fetch.

        flags: IMAP flags.
        body_text: Plain text body (may be derived from HTML).
        body_html: The original HTML part, unmodified.
        text_from_html: True when body_text was extracted from body_html.
        has_attachments: True when any part is an attachment.
        size: RFC822.SIZE reported by the server.
        parse_failed: True for placeholder records of undecodable messages.

        id: Storage primary key, None until saved.
    """

    # Ownership and IMAP identity
    account_id: str = ""
    folder_id: str = ""
    uid: int = 0

    # Message identification (dedup and threading)
    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)

    # Envelope information
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    reply_to: list[str] = field(default_factory=list)

    # Timestamps
    date_sent: datetime | None = None
    date_received: datetime | None = None

    # Flags
    flags: MessageFlags = MessageFlags.NONE

    # Bodies
    body_text: str = ""
    body_html: str = ""
    text_from_html: bool = False

    # Structure / diagnostics
    has_attachments: bool = False
    size: int = 0
    parse_failed: bool = False

    # Storage field
    id: int | None = None

    @property
    def is_read(self) -> bool:
        """Returns True if the message has been read (SEEN flag)."""
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_starred(self) -> bool:
        """Returns True if the message is starred/flagged."""
        return bool(self.flags & MessageFlags.FLAGGED)

    @property
    def is_draft(self) -> bool:
        """Returns True if this is a draft message."""
        return bool(self.flags & MessageFlags.DRAFT)

    @property
    def has_html(self) -> bool:
        """Returns True if the message has an HTML body."""
        return bool(self.body_html.strip())

    @property
    def display_sender(self) -> str:
        """Prefers sender_name if available, falls back to the address."""
        return self.sender_name or self.sender

    @property
    def preview(self) -> str:
        """A short single-line preview of the body."""
        text = " ".join((self.body_text or "").split())
        if len(text) > 100:
            return text[:97] + "..."
        return text

    def mark_read(self) -> None:
        """Mark this message as read."""
        self.flags |= MessageFlags.SEEN

    def __str__(self) -> str:
        read_marker = " " if self.is_read else "*"
        return f"{read_marker} {self.display_sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(uid={self.uid}, message_id={self.message_id!r}, "
            f"subject={self.subject!r}, flags={self.flags!r})"
        )
