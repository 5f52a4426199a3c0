# =============================================================================
# mailmirror: IMAP Mailbox Mirroring Engine
# =============================================================================
#
# mailmirror keeps a local copy of one or more IMAP mailboxes in sync with
# the server, across providers that behave very differently:
#
#   - Provider quirk table (Gmail, Outlook, Yahoo, iCloud, QQ, NetEase, ...)
#   - Folder reconciliation between server listing and local mirror
#   - Incremental, deduplicated message fetch
#   - Restricted folders are skipped, not fatal (NetEase "Unsafe Login")
#   - Transparent recovery when the server closes the open folder
#   - IMAP IDLE watcher with polling fallback
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailmirror"

# Main entry point - this is what gets called by the 'mailmirror' command
from mailmirror.cli import main

__all__ = ["main", "__version__", "__app_name__"]
