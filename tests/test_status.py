# =============================================================================
# Status Board and Notification Tests
# =============================================================================

import logging
import threading

from mailmirror.core import Message, MessageFlags, SyncState
from mailmirror.imap.status import StatusBoard
from mailmirror.notify import LogNotificationSink, NewMessagesEvent, NotificationSink

from conftest import RecordingNotifier


class TestStatusBoard:
    def test_unknown_account_is_idle(self):
        status = StatusBoard().get("nobody")
        assert status.state is SyncState.IDLE
        assert not status.is_active

    def test_publish_overwrites(self):
        board = StatusBoard()
        board.publish("work", SyncState.SYNCING, detail="INBOX")
        board.publish("work", SyncState.ERROR, error="Connection refused")

        status = board.get("work")
        assert status.state is SyncState.ERROR
        assert status.error == "Connection refused"
        assert board.snapshot() == {"work": status}

    def test_snapshot_is_a_copy(self):
        board = StatusBoard()
        board.publish("work", SyncState.COMPLETED)
        snapshot = board.snapshot()
        board.publish("home", SyncState.CONNECTING)

        assert list(snapshot) == ["work"]

    def test_listeners(self):
        board = StatusBoard()
        seen = []

        def listener(account_id, status):
            seen.append((account_id, status.state))

        board.add_listener(listener)
        board.publish("work", SyncState.CONNECTING)
        board.remove_listener(listener)
        board.publish("work", SyncState.SYNCING)

        assert seen == [("work", SyncState.CONNECTING)]

    def test_failing_listener_does_not_block_others(self):
        board = StatusBoard()
        seen = []

        def broken(account_id, status):
            raise RuntimeError("listener bug")

        board.add_listener(broken)
        board.add_listener(lambda account_id, status: seen.append(status.state))
        board.publish("work", SyncState.COMPLETED)

        assert seen == [SyncState.COMPLETED]
        assert board.get("work").state is SyncState.COMPLETED

    def test_readers_on_other_threads(self):
        board = StatusBoard()
        results = []

        def reader():
            for _ in range(200):
                results.append(board.get("work").state)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for thread in threads:
            thread.start()
        for state in (SyncState.CONNECTING, SyncState.SYNCING, SyncState.COMPLETED):
            board.publish("work", state)
        for thread in threads:
            thread.join()

        assert len(results) == 800
        assert board.get("work").state is SyncState.COMPLETED


class TestNotifications:
    def test_sinks_satisfy_protocol(self):
        assert isinstance(LogNotificationSink(), NotificationSink)
        assert isinstance(RecordingNotifier(), NotificationSink)

    def test_event_unread(self):
        messages = [Message(uid=1, flags=MessageFlags.SEEN), Message(uid=2)]
        event = NewMessagesEvent(account_id="a", folder_id="f", folder_name="INBOX", messages=messages)
        assert [m.uid for m in event.unread] == [2]

    async def test_log_sink(self, sample_account, caplog):
        messages = [Message(uid=n, subject=f"Hello {n}", sender="a@example.com") for n in range(7)]

        with caplog.at_level(logging.INFO, logger="mailmirror.notify"):
            await LogNotificationSink().notify_new_messages(sample_account, messages)
            await LogNotificationSink().notify_sync_failure(sample_account.id, "boom")

        text = caplog.text
        assert "7 new message(s)" in text
        assert "Hello 4" in text
        assert "Hello 5" not in text
        assert "and 2 more" in text
        assert "Sync failed for test: boom" in text
