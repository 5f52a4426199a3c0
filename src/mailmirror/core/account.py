# =============================================================================
# Account Model
# =============================================================================
# Represents a mailbox that mailmirror keeps in sync. Server settings are
# normally derived from the address through the provider table
# (see mailmirror.imap.providers); the imap_* fields only carry explicit
# overrides from the config file.
#
# IMPORTANT: Passwords are NOT stored here. They are retrieved from the system
# keyring at runtime through a SecretStore. The sync engine never persists
# credentials itself.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Account:
    """
    Represents an email account that is mirrored locally.

    Attributes:
        name: A unique identifier for this account (e.g., "personal", "work").
              Used as the key in config files and for keyring lookups.
        email: The email address associated with this account. The provider
               profile is resolved from its domain.
        display_name: Human-readable name. Defaults to the email address.

        imap_host: Optional server override. Empty means "use the provider
                   table".
        imap_port: Optional port override (None = provider default).
        imap_security: Optional security override ("ssl", "starttls", "none").

        id: Stable identity used by the stores. Defaults to the account name.
        enabled: Disabled accounts are ignored entirely.
        sync_enabled: Accounts can stay visible but be excluded from sync.

        last_sync: Timestamp of the last fully successful sync.
        last_error: Text of the last sync failure, cleared on success.

    Example:
        >>> account = Account(name="personal", email="user@163.com")
        >>> account.id
        'personal'
    """

    # Account identification
    name: str                           # Unique account identifier
    email: str                          # Email address
    display_name: str = ""              # Human-readable name

    # Optional IMAP overrides (empty = resolved from the provider table)
    imap_host: str = ""
    imap_port: int | None = None
    imap_security: str = ""             # "", "ssl", "starttls" or "none"

    # Identity and switches
    id: str = ""
    enabled: bool = True
    sync_enabled: bool = True

    # Status fields, written only by the sync engine
    last_sync: datetime | None = None
    last_error: str | None = None

    def __post_init__(self) -> None:
        """Fill in defaults derived from other fields."""
        if not self.display_name:
            self.display_name = self.email
        if not self.id:
            self.id = self.name

    @property
    def domain(self) -> str:
        """The lower-cased domain part of the address."""
        return self.email.rpartition("@")[2].strip().lower()

    @property
    def can_sync(self) -> bool:
        """True when the account is enabled and sync has not been switched off."""
        return self.enabled and self.sync_enabled

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        Passwords can be managed with the keyring CLI:
            keyring set mailmirror:personal user@example.com
        """
        return f"mailmirror:{self.name}"

    def __str__(self) -> str:
        """Human-readable representation showing account name and email."""
        return f"{self.name} <{self.email}>"
