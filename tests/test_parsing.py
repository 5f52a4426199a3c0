# =============================================================================
# IMAP Response Parsing Tests
# =============================================================================

from datetime import datetime, timezone

import pytest

from mailmirror.core import FolderType, MessageFlags
from mailmirror.imap.parsing import (
    FetchRecord,
    MessageParseError,
    build_message,
    classify_folder,
    decode_modified_utf7,
    parse_fetch_response,
    parse_list_response,
    parse_select_response,
    parse_status_response,
    placeholder_message,
    synthesize_message_id,
)

from conftest import make_raw

CONTEXT = dict(account_id="test", folder_id="f1", folder_name="INBOX", uidvalidity=7)


class TestFolderNames:
    def test_modified_utf7(self):
        assert decode_modified_utf7("&XfJT0ZAB-") == "已发送"
        assert decode_modified_utf7("Sent") == "Sent"
        assert decode_modified_utf7("R&AOk-sum&AOk-") == "Résumé"
        assert decode_modified_utf7("Tom &- Jerry") == "Tom & Jerry"

    def test_list_response(self):
        entries = parse_list_response([
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasChildren \\Noselect) "/" "[Gmail]"',
            b'(\\HasNoChildren \\Sent) "/" "[Gmail]/Sent Mail"',
            b'(\\HasNoChildren) NIL "Flat"',
            b"LIST completed.",
        ])
        assert [e.name for e in entries] == ["INBOX", "[Gmail]", "[Gmail]/Sent Mail", "Flat"]
        sent = entries[2]
        assert sent.attributes == ["\\HasNoChildren", "\\Sent"]
        assert sent.parent == "[Gmail]"
        assert sent.leaf_name == "Sent Mail"
        assert entries[3].delimiter is None
        assert entries[3].parent is None

    def test_list_response_with_literal_name(self):
        entries = parse_list_response([
            b'(\\HasNoChildren) "/" {11}',
            bytearray(b'Odd "name"'),
            b"LIST completed.",
        ])
        assert len(entries) == 1
        assert entries[0].name == 'Odd "name"'

    @pytest.mark.parametrize("name, attributes, expected", [
        ("INBOX", [], FolderType.INBOX),
        ("inbox", [], FolderType.INBOX),
        ("Lists/INBOX", [], FolderType.CUSTOM),
        ("Whatever", ["\\Sent"], FolderType.SENT),
        ("Whatever", ["\\Junk"], FolderType.SPAM),
        ("Whatever", ["\\All"], FolderType.ARCHIVE),
        ("Deleted Items", [], FolderType.TRASH),
        ("&XfJT0ZAB-", [], FolderType.SENT),
        ("&g0l6Pw-", [], FolderType.DRAFTS),
        ("Projects", [], FolderType.CUSTOM),
    ])
    def test_classify(self, name, attributes, expected):
        assert classify_folder(name, attributes) is expected

    @pytest.mark.parametrize("attribute", ["\\Noselect", "\\NonExistent"])
    def test_non_selectable_folders_are_skipped(self, attribute):
        assert classify_folder("[Gmail]", [attribute]) is None


class TestStatusAndSelect:
    def test_status(self):
        status = parse_status_response([
            b'"INBOX" (MESSAGES 50 UNSEEN 3 UIDVALIDITY 1 UIDNEXT 51)',
            b"STATUS completed.",
        ])
        assert status == {"MESSAGES": 50, "UNSEEN": 3, "UIDVALIDITY": 1, "UIDNEXT": 51}

    def test_status_with_mailbox_id(self):
        status = parse_status_response([
            b'Sent (MESSAGES 2 MAILBOXID (F2212ea8) UIDNEXT 3)',
        ])
        assert status["MAILBOXID"] == "F2212ea8"
        assert status["MESSAGES"] == 2
        assert status["UIDNEXT"] == 3

    def test_select(self):
        status = parse_select_response([
            b"FLAGS (\\Seen)",
            b"17 EXISTS",
            b"2 RECENT",
            b"OK [UNSEEN 12] First unseen",
            b"OK [UIDVALIDITY 3857529045] UIDs valid",
            b"OK [UIDNEXT 4392] Predicted next UID",
            b"[READ-WRITE] SELECT completed",
        ])
        assert status["EXISTS"] == 17
        assert status["RECENT"] == 2
        assert status["UIDVALIDITY"] == 3857529045
        assert status["UIDNEXT"] == 4392
        assert "READ-ONLY" not in status

    def test_examine_reports_read_only(self):
        status = parse_select_response([b"0 EXISTS", b"[READ-ONLY] EXAMINE completed"])
        assert status["READ-ONLY"] is True
        assert status["EXISTS"] == 0


class TestFetch:
    def test_records_with_bodies(self):
        first, second = make_raw(1), make_raw(2)
        records = parse_fetch_response([
            f'1 FETCH (UID 10 FLAGS (\\Seen \\Flagged) RFC822.SIZE {len(first)} '
            f'INTERNALDATE "15-Jan-2024 10:30:00 +0100" BODY[] {{{len(first)}}}'.encode(),
            bytearray(first),
            b")",
            f"2 FETCH (UID 11 FLAGS () BODY[] {{{len(second)}}}".encode(),
            bytearray(second),
            b")",
            b"FETCH completed.",
        ])
        assert [(r.sequence, r.uid) for r in records] == [(1, 10), (2, 11)]
        assert records[0].flags == MessageFlags.SEEN | MessageFlags.FLAGGED
        assert records[0].size == len(first)
        assert records[0].internal_date == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
        assert records[0].raw == first
        assert records[1].flags == MessageFlags.NONE
        assert records[1].raw == second

    def test_uid_only(self):
        records = parse_fetch_response([b"50 FETCH (UID 1234)", b"FETCH completed."])
        assert len(records) == 1
        assert records[0].uid == 1234
        assert records[0].raw is None


class TestBuildMessage:
    def test_plain_message(self):
        raw = make_raw(5)
        record = FetchRecord(sequence=1, uid=42, flags=MessageFlags.SEEN, raw=raw)
        message = build_message(record, **CONTEXT)

        assert message.message_id == "<msg5@example.com>"
        assert message.subject == "Message 5"
        assert message.sender == "sender5@example.com"
        assert message.sender_name == "Sender 5"
        assert message.recipients == ["me@example.com"]
        assert message.date_sent == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert message.body_text.strip() == "Body of message 5"
        assert message.is_read
        assert message.uid == 42
        assert message.folder_id == "f1"
        assert message.size == len(raw)

    def test_html_only_message_keeps_html(self):
        html = "<html><body><p>Hello <b>world</b></p></body></html>"
        message = build_message(FetchRecord(sequence=1, uid=1, raw=make_raw(1, html=html)), **CONTEXT)

        assert message.text_from_html
        assert "Hello world" in message.body_text
        assert message.body_html.strip() == html

    def test_encoded_subject(self):
        raw = make_raw(1, subject="=?utf-8?b?5L2g5aW9?=")
        message = build_message(FetchRecord(sequence=1, uid=1, raw=raw), **CONTEXT)
        assert message.subject == "你好"

    def test_missing_message_id_is_synthesized_deterministically(self):
        raw = make_raw(1, message_id="")
        first = build_message(FetchRecord(sequence=1, uid=1, raw=raw), **CONTEXT)
        again = build_message(FetchRecord(sequence=9, uid=99, raw=raw), **CONTEXT)
        assert first.message_id.endswith("@mailmirror.invalid>")
        assert first.message_id == again.message_id

    def test_attachment_detected(self):
        raw = (
            b"From: a@example.com\r\n"
            b"Message-ID: <att@example.com>\r\n"
            b"MIME-Version: 1.0\r\n"
            b'Content-Type: multipart/mixed; boundary="XX"\r\n\r\n'
            b"--XX\r\nContent-Type: text/plain\r\n\r\nSee attached\r\n"
            b"--XX\r\nContent-Type: application/pdf\r\n"
            b'Content-Disposition: attachment; filename="a.pdf"\r\n'
            b"Content-Transfer-Encoding: base64\r\n\r\nJVBERi0=\r\n"
            b"--XX--\r\n"
        )
        message = build_message(FetchRecord(sequence=1, uid=1, raw=raw), **CONTEXT)
        assert message.has_attachments
        assert message.body_text.strip() == "See attached"

    def test_missing_body_raises(self):
        with pytest.raises(MessageParseError):
            build_message(FetchRecord(sequence=1, uid=3, raw=b""), **CONTEXT)

    def test_placeholder(self):
        record = FetchRecord(sequence=1, uid=3, flags=MessageFlags.SEEN, size=10)
        message = placeholder_message(record, reason="broken", **CONTEXT)
        assert message.parse_failed
        assert message.uid == 3
        assert message.is_read
        assert message.message_id == synthesize_message_id(
            "INBOX", 7, 3, prefix="parse-failed."
        )
