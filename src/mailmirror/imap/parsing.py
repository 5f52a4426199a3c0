# =============================================================================
# IMAP Response Parsing
# =============================================================================
# Turns aioimaplib response lines into mailmirror models.
#
# aioimaplib returns Response(result, lines) where lines mix text lines
# (bytes) and raw literals (bytearray). A literal always follows the line
# that announced it with a trailing {N} marker, e.g.:
#
#   b'3 FETCH (UID 42 FLAGS (\\Seen) RFC822.SIZE 512 BODY[] {512}'
#   bytearray(b'Return-Path: ...')
#   b')'
#
# Everything here is pure: no I/O, no session state.
# =============================================================================

import base64
import email
import email.errors
import email.header
import email.utils
import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import Message as EmailMessage
from typing import Iterable

from mailmirror.core import FolderType, Message, MessageFlags
from mailmirror.core.folder import SPECIAL_USE_TYPES, detect_type_from_name
from mailmirror.rendering import html_to_text

logger = logging.getLogger(__name__)

# Domain used for identities we have to make up
SYNTHETIC_ID_DOMAIN = "mailmirror.invalid"


def _to_text(line: bytes | bytearray | str) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def response_text(lines: Iterable[bytes | bytearray | str]) -> str:
    """Join response lines into one string for logging and classification."""
    return " ".join(_to_text(line).strip() for line in lines if line).strip()


# =============================================================================
# Folder Names
# =============================================================================

def decode_modified_utf7(name: str) -> str:
    """
    Decode an IMAP mailbox name from modified UTF-7 (RFC 3501 5.1.3).

    Undecodable sequences are kept verbatim rather than raising.

    Example:
        >>> decode_modified_utf7("&XfJT0ZAB-")
        '已发送'
    """
    result: list[str] = []
    i = 0
    while i < len(name):
        char = name[i]
        if char != "&":
            result.append(char)
            i += 1
            continue

        end = name.find("-", i)
        if end == -1:
            result.append(name[i:])
            break

        chunk = name[i + 1:end]
        if not chunk:
            result.append("&")  # "&-" is a literal ampersand
        else:
            encoded = chunk.replace(",", "/")
            encoded += "=" * (-len(encoded) % 4)
            try:
                result.append(base64.b64decode(encoded).decode("utf-16-be"))
            except (ValueError, UnicodeDecodeError):
                result.append(name[i:end + 1])
        i = end + 1

    return "".join(result)


@dataclass
class ListEntry:
    """One parsed LIST/LSUB response line."""
    name: str
    delimiter: str | None
    attributes: list[str] = field(default_factory=list)

    @property
    def leaf_name(self) -> str:
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[1]
        return self.name

    @property
    def parent(self) -> str | None:
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[0]
        return None


_LIST_LINE = re.compile(
    r'^\((?P<attrs>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.*)$',
    re.IGNORECASE,
)
_LITERAL_ONLY = re.compile(r"^\{(\d+)\}$")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def parse_list_response(lines: Iterable[bytes | bytearray | str]) -> list[ListEntry]:
    """
    Parse LIST or LSUB response lines.

    Format:
        (\\HasNoChildren) "/" "INBOX"
        (\\HasNoChildren \\Sent) "/" "Sent"
        (\\Noselect) NIL ""
    Mailbox names sent as literals are taken from the following item.
    """
    entries: list[ListEntry] = []
    pending: ListEntry | None = None

    for item in lines:
        if pending is not None:
            pending.name = _to_text(item)
            entries.append(pending)
            pending = None
            continue

        line = _to_text(item).strip()
        match = _LIST_LINE.match(line)
        if not match:
            continue  # "LIST completed." and friends

        delim_raw = match.group("delim")
        delimiter = None if delim_raw.upper() == "NIL" else _unquote(delim_raw)
        entry = ListEntry(
            name="",
            delimiter=delimiter,
            attributes=match.group("attrs").split(),
        )

        raw_name = match.group("name").strip()
        if _LITERAL_ONLY.match(raw_name):
            pending = entry
            continue
        entry.name = _unquote(raw_name)
        entries.append(entry)

    return entries


def classify_folder(name: str, attributes: Iterable[str]) -> FolderType | None:
    """
    Decide the role of a listed folder.

    Order: non-selectable (skip), SPECIAL-USE attribute, exact INBOX,
    localized name heuristics, else CUSTOM.

    Args:
        name: Full server name.
        attributes: LIST attributes.

    Returns:
        The FolderType, or None if the folder cannot be selected at all.
    """
    upper_attrs = {attr.upper() for attr in attributes}
    if "\\NOSELECT" in upper_attrs or "\\NONEXISTENT" in upper_attrs:
        return None

    for attribute, folder_type in SPECIAL_USE_TYPES.items():
        if attribute in upper_attrs:
            return folder_type

    if name.upper() == "INBOX":
        return FolderType.INBOX

    return detect_type_from_name(decode_modified_utf7(name))


# =============================================================================
# STATUS / SELECT
# =============================================================================

_MAILBOXID = re.compile(r"MAILBOXID\s+\(([^)]*)\)", re.IGNORECASE)
_STATUS_ITEMS = re.compile(r"\(([^()]*)\)\s*$")


def parse_status_response(lines: Iterable[bytes | bytearray | str]) -> dict[str, int | str]:
    """
    Parse a STATUS response into a dictionary.

    Example line:
        INBOX (MESSAGES 50 UNSEEN 3 UIDVALIDITY 1 UIDNEXT 51 MAILBOXID (F2212ea8))

    Returns:
        Upper-case item names mapped to ints; MAILBOXID maps to its string.
    """
    status: dict[str, int | str] = {}
    for item in lines:
        line = _to_text(item)

        mailbox_id = _MAILBOXID.search(line)
        if mailbox_id:
            status["MAILBOXID"] = mailbox_id.group(1).strip()
            line = line[:mailbox_id.start()] + line[mailbox_id.end():]

        match = _STATUS_ITEMS.search(line.strip())
        if not match:
            continue
        items = match.group(1).split()
        for i in range(0, len(items) - 1, 2):
            try:
                status[items[i].upper()] = int(items[i + 1])
            except ValueError:
                pass
    return status


_SELECT_PATTERNS = {
    "EXISTS": re.compile(r"(\d+)\s+EXISTS", re.IGNORECASE),
    "RECENT": re.compile(r"(\d+)\s+RECENT", re.IGNORECASE),
    "UIDVALIDITY": re.compile(r"UIDVALIDITY\s+(\d+)", re.IGNORECASE),
    "UIDNEXT": re.compile(r"UIDNEXT\s+(\d+)", re.IGNORECASE),
    "UNSEEN": re.compile(r"UNSEEN\s+(\d+)", re.IGNORECASE),
}


def parse_select_response(lines: Iterable[bytes | bytearray | str]) -> dict[str, int | bool]:
    """
    Parse SELECT/EXAMINE response lines.

    Returns:
        EXISTS, RECENT, UIDVALIDITY, UIDNEXT, UNSEEN where present, plus
        READ-ONLY when the server reported the folder as read-only.
    """
    status: dict[str, int | bool] = {}
    for item in lines:
        line = _to_text(item)
        for key, pattern in _SELECT_PATTERNS.items():
            match = pattern.search(line)
            if match:
                status[key] = int(match.group(1))
        if "[READ-ONLY]" in line.upper():
            status["READ-ONLY"] = True
    return status


# =============================================================================
# FETCH
# =============================================================================

@dataclass
class FetchRecord:
    """
    One message from a FETCH response, before MIME parsing.

    Attributes:
        sequence: Message sequence number (1 = oldest).
        uid: UID, 0 if the server did not send one.
        flags: Parsed FLAGS.
        size: RFC822.SIZE.
        internal_date: INTERNALDATE.
        raw: The BODY[] literal, None if the server sent none.
    """
    sequence: int
    uid: int = 0
    flags: MessageFlags = MessageFlags.NONE
    size: int = 0
    internal_date: datetime | None = None
    raw: bytes | None = None


_FETCH_START = re.compile(rb"^\*?\s*(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_BODY_LITERAL = re.compile(rb"BODY\[\]\s*\{(\d+)\}\s*$", re.IGNORECASE)
_ANY_LITERAL = re.compile(rb"\{(\d+)\}\s*$")
_UID = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
_FLAGS = re.compile(r"\bFLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_SIZE = re.compile(r"RFC822\.SIZE\s+(\d+)", re.IGNORECASE)
_INTERNALDATE = re.compile(r'INTERNALDATE\s+"([^"]+)"', re.IGNORECASE)


def parse_internal_date(value: str) -> datetime | None:
    """Parse an INTERNALDATE such as '17-Jul-1996 02:44:25 -0700' into UTC."""
    try:
        parsed = datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def _finish_record(record: FetchRecord, text_parts: list[bytes]) -> FetchRecord:
    text = b" ".join(text_parts).decode("utf-8", errors="replace")

    uid = _UID.search(text)
    if uid:
        record.uid = int(uid.group(1))
    flags = _FLAGS.search(text)
    if flags:
        record.flags = MessageFlags.from_imap(flags.group(1))
    size = _SIZE.search(text)
    if size:
        record.size = int(size.group(1))
    internal_date = _INTERNALDATE.search(text)
    if internal_date:
        record.internal_date = parse_internal_date(internal_date.group(1))
    return record


def parse_fetch_response(lines: Iterable[bytes | bytearray | str]) -> list[FetchRecord]:
    """
    Group FETCH response items into per-message records.

    Returns:
        Records in the order the server sent them.
    """
    records: list[FetchRecord] = []
    current: FetchRecord | None = None
    text_parts: list[bytes] = []
    literal_target: str | None = None  # "body" or "text"

    for item in lines:
        data = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode("utf-8")

        if literal_target is not None and current is not None:
            if literal_target == "body":
                current.raw = data
            else:
                text_parts.append(b'"' + data.replace(b'"', b"'") + b'"')
            literal_target = None
            continue

        start = _FETCH_START.match(data)
        if start:
            if current is not None:
                records.append(_finish_record(current, text_parts))
            current = FetchRecord(sequence=int(start.group(1)))
            text_parts = []
        elif current is None:
            continue

        if _BODY_LITERAL.search(data):
            text_parts.append(_BODY_LITERAL.sub(b"BODY[]", data))
            literal_target = "body"
        elif _ANY_LITERAL.search(data):
            text_parts.append(_ANY_LITERAL.sub(b"", data))
            literal_target = "text"
        else:
            text_parts.append(data)

    if current is not None:
        records.append(_finish_record(current, text_parts))

    return records


# =============================================================================
# Message Building
# =============================================================================

def decode_header_value(value) -> str:
    """Decode an RFC 2047 encoded header value (str or email.header.Header)."""
    if value is None:
        return ""
    try:
        decoded_parts = email.header.decode_header(value)
    except (email.errors.HeaderParseError, ValueError, LookupError):
        return str(value)

    result = []
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                result.append(part.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                result.append(part.decode("utf-8", errors="replace"))
        else:
            result.append(part)
    return "".join(result).strip()


def _addresses(msg: EmailMessage, header: str) -> list[tuple[str, str]]:
    values = [decode_header_value(v) for v in msg.get_all(header, [])]
    return [(name, addr) for name, addr in email.utils.getaddresses(values) if addr]


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def decode_part(part: EmailMessage) -> str:
    """Decode a message part to string, tolerating bogus charsets."""
    payload = part.get_payload(decode=True)
    if isinstance(payload, bytes):
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")
    return str(payload) if payload else ""


def extract_bodies(msg: EmailMessage) -> tuple[str, str, bool]:
    """
    Pick the text and HTML bodies of a parsed message.

    Returns:
        Tuple of (body_text, body_html, has_attachments). body_html is the
        first text/html part, unmodified.
    """
    body_text = ""
    body_html = ""
    has_attachments = False

    for part in msg.walk():
        if part.is_multipart():
            continue

        content_type = part.get_content_type()
        disposition = part.get_content_disposition()
        is_text = content_type in ("text/plain", "text/html")

        if disposition == "attachment" or (part.get_filename() and not is_text):
            has_attachments = True
        elif content_type == "text/plain" and not body_text:
            body_text = decode_part(part)
        elif content_type == "text/html" and not body_html:
            body_html = decode_part(part)

    return body_text, body_html, has_attachments


def synthesize_message_id(
    folder_name: str,
    uidvalidity: int | None,
    uid: int,
    raw: bytes | None = None,
    prefix: str = "",
) -> str:
    """
    Build a deterministic identity for a message without a Message-ID.

    The raw bytes are hashed when available so the same message gets the
    same identity on every fetch; otherwise folder, epoch and UID are used.
    """
    source = raw if raw else f"{folder_name}\0{uidvalidity}\0{uid}".encode("utf-8")
    digest = hashlib.sha1(source).hexdigest()[:24]
    return f"<{prefix}{digest}@{SYNTHETIC_ID_DOMAIN}>"


def build_message(
    record: FetchRecord,
    *,
    account_id: str,
    folder_id: str,
    folder_name: str,
    uidvalidity: int | None,
) -> Message:
    """
    Build a Message from a FETCH record.

    Raises:
        MessageParseError: If the record has no body or cannot be decoded.
    """
    if not record.raw:
        raise MessageParseError(f"no message body for UID {record.uid}")
    try:
        return _build_message(record, account_id, folder_id, folder_name, uidvalidity)
    except (email.errors.MessageError, ValueError, TypeError, LookupError,
            AttributeError, IndexError) as e:
        raise MessageParseError(f"cannot decode UID {record.uid}: {e}") from e


def _build_message(
    record: FetchRecord,
    account_id: str,
    folder_id: str,
    folder_name: str,
    uidvalidity: int | None,
) -> Message:
    msg = email.message_from_bytes(record.raw)

    message_id = decode_header_value(msg.get("Message-ID")).strip()
    if not message_id:
        message_id = synthesize_message_id(folder_name, uidvalidity, record.uid, record.raw)

    senders = _addresses(msg, "From")
    sender_name, sender = senders[0] if senders else ("", "")

    body_text, body_html, has_attachments = extract_bodies(msg)
    text_from_html = False
    if not body_text.strip() and body_html:
        body_text = html_to_text(body_html)
        text_from_html = True

    references = decode_header_value(msg.get("References")).split()

    return Message(
        account_id=account_id,
        folder_id=folder_id,
        uid=record.uid,
        message_id=message_id,
        in_reply_to=decode_header_value(msg.get("In-Reply-To")).strip(),
        references=references,
        subject=decode_header_value(msg.get("Subject")),
        sender=sender,
        sender_name=sender_name,
        recipients=[addr for _, addr in _addresses(msg, "To")],
        cc=[addr for _, addr in _addresses(msg, "Cc")],
        bcc=[addr for _, addr in _addresses(msg, "Bcc")],
        reply_to=[addr for _, addr in _addresses(msg, "Reply-To")],
        date_sent=_parse_date(decode_header_value(msg.get("Date"))),
        date_received=record.internal_date or datetime.now(timezone.utc),
        flags=record.flags,
        body_text=body_text,
        body_html=body_html,
        text_from_html=text_from_html,
        has_attachments=has_attachments,
        size=record.size or len(record.raw),
    )


def placeholder_message(
    record: FetchRecord,
    *,
    account_id: str,
    folder_id: str,
    folder_name: str,
    uidvalidity: int | None,
    reason: str,
) -> Message:
    """Stand-in record for a message that could not be decoded."""
    return Message(
        account_id=account_id,
        folder_id=folder_id,
        uid=record.uid,
        message_id=synthesize_message_id(
            folder_name, uidvalidity, record.uid, prefix="parse-failed."
        ),
        subject="(message could not be parsed)",
        body_text=reason,
        date_received=record.internal_date or datetime.now(timezone.utc),
        flags=record.flags,
        size=record.size,
        parse_failed=True,
    )


# =============================================================================
# Exceptions
# =============================================================================

class MessageParseError(Exception):
    """Raised when a fetched message cannot be turned into a Message."""
    pass
