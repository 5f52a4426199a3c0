# =============================================================================
# Folder Reconciliation
# =============================================================================
# Computes how the local folder mirror must change to match a server listing.
#
# Matching key priority for each remote folder:
#   1. full_name, exact
#   2. display_name      (only among locals whose full_name vanished remotely)
#   3. remote_id         (same restriction; RFC 8474 MAILBOXID)
#
# The fallbacks cover providers that change the encoding of folder names
# between listing calls: the folder is the same, its full_name is not.
#
# reconcile() is pure. The orchestrator applies the plan to the FolderStore.
# =============================================================================

import uuid
from dataclasses import dataclass, field, replace

from mailmirror.core import LocalFolder, RemoteFolder


@dataclass
class FolderPlan:
    """
    Result of a reconciliation pass.

    Attributes:
        inserts: New local folders to persist.
        updates: Existing local folders whose server-reported fields changed.
        deletions: Local folders that no longer exist on the server.
        folders: The complete local folder set after applying the plan,
                 in server listing order.
    """
    inserts: list[LocalFolder] = field(default_factory=list)
    updates: list[LocalFolder] = field(default_factory=list)
    deletions: list[LocalFolder] = field(default_factory=list)
    folders: list[LocalFolder] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when nothing needs to be written."""
        return not (self.inserts or self.updates or self.deletions)

    def __str__(self) -> str:
        return (
            f"+{len(self.inserts)} ~{len(self.updates)} -{len(self.deletions)}"
        )


def _merge(local: LocalFolder, remote: RemoteFolder) -> LocalFolder:
    """Server-reported fields from remote, local bookkeeping from local."""
    return replace(
        local,
        full_name=remote.full_name,
        display_name=remote.display_name or remote.full_name,
        folder_type=remote.folder_type,
        message_count=remote.message_count,
        unread_count=remote.unread_count,
        subscribed=remote.subscribed,
        can_hold_messages=remote.can_hold_messages,
        parent=remote.parent,
        delimiter=remote.delimiter,
        remote_id=remote.remote_id or local.remote_id,
    )


def _new_local(remote: RemoteFolder, account_id: str) -> LocalFolder:
    return LocalFolder(
        account_id=account_id,
        full_name=remote.full_name,
        display_name=remote.display_name or remote.full_name,
        folder_type=remote.folder_type,
        message_count=remote.message_count,
        unread_count=remote.unread_count,
        subscribed=remote.subscribed,
        can_hold_messages=remote.can_hold_messages,
        parent=remote.parent,
        delimiter=remote.delimiter,
        remote_id=remote.remote_id,
        id=uuid.uuid4().hex,
    )


def reconcile(
    remote: list[RemoteFolder],
    local: list[LocalFolder],
    account_id: str,
) -> FolderPlan:
    """
    Diff a server folder listing against the stored folders of one account.

    Each local folder is matched at most once. A remote folder without a
    match becomes an insert with a fresh id; a local folder nobody matched
    becomes a deletion. Running reconcile again with the same listing
    against the applied result yields an empty plan.

    Args:
        remote: Folders as listed by the server.
        local: Folders currently stored for the account.
        account_id: Owner of newly inserted folders.

    Returns:
        The FolderPlan to apply.
    """
    plan = FolderPlan()
    remote_names = {folder.full_name for folder in remote}
    by_full_name = {folder.full_name: folder for folder in local}
    matched: set[str] = set()

    # Fallback candidates: stored folders whose name the server no longer lists
    orphans = [folder for folder in local if folder.full_name not in remote_names]

    def take_orphan(predicate) -> LocalFolder | None:
        for candidate in orphans:
            if candidate.id not in matched and predicate(candidate):
                return candidate
        return None

    for folder in remote:
        existing = by_full_name.get(folder.full_name)
        if existing is not None and existing.id in matched:
            existing = None
        if existing is None and folder.display_name:
            existing = take_orphan(lambda c: c.display_name == folder.display_name)
        if existing is None and folder.remote_id:
            existing = take_orphan(lambda c: c.remote_id == folder.remote_id)

        if existing is None:
            created = _new_local(folder, account_id)
            plan.inserts.append(created)
            plan.folders.append(created)
            continue

        matched.add(existing.id)
        merged = _merge(existing, folder)
        if merged != existing:
            plan.updates.append(merged)
        plan.folders.append(merged)

    plan.deletions = [folder for folder in local if folder.id not in matched]
    return plan
