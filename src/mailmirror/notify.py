# =============================================================================
# Notifications
# =============================================================================
# Delivery of "new mail" and "sync failed" events to the outside world.
#
# The engine only knows the NotificationSink protocol. LogNotificationSink is
# the built-in sink used by the CLI; desktop or push notifications plug in by
# implementing the same two methods.
# =============================================================================

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from mailmirror.core import Account, Message

logger = logging.getLogger(__name__)


@dataclass
class NewMessagesEvent:
    """
    A batch of newly stored messages from one folder.

    Attributes:
        account_id: Owning account.
        folder_id: Local folder id.
        folder_name: Server name of the folder.
        messages: The stored messages, newest first.
        initial_sync: True when the folder was synced for the first time;
                      such batches are not announced to the user.
    """
    account_id: str
    folder_id: str
    folder_name: str
    messages: list[Message] = field(default_factory=list)
    initial_sync: bool = False

    @property
    def unread(self) -> list[Message]:
        return [message for message in self.messages if not message.is_read]


@runtime_checkable
class NotificationSink(Protocol):
    """Receiver of user-facing sync events."""

    async def notify_new_messages(self, account: Account, messages: list[Message]) -> None:
        ...

    async def notify_sync_failure(self, account_id: str, reason: str) -> None:
        ...


class LogNotificationSink:
    """NotificationSink writing to the log."""

    async def notify_new_messages(self, account: Account, messages: list[Message]) -> None:
        if not messages:
            return
        logger.info(f"{account.name}: {len(messages)} new message(s)")
        for message in messages[:5]:
            logger.info(f"  {message.display_sender}: {message.subject or '(no subject)'}")
        if len(messages) > 5:
            logger.info(f"  ... and {len(messages) - 5} more")

    async def notify_sync_failure(self, account_id: str, reason: str) -> None:
        logger.error(f"Sync failed for {account_id}: {reason}")
