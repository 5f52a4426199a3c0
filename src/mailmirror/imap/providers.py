# =============================================================================
# Provider Profiles and Quirks
# =============================================================================
# Maps an email address to server settings and behavioral quirks.
#
# Key responsibilities:
#   - Static domain-suffix table of well-known providers
#   - Generic fallback (imap.<domain>:993 SSL, smtp.<domain>:587 STARTTLS)
#   - Account overrides from the config file
#   - Classifiers for provider error texts (restricted folders, stale handles)
#
# Design notes:
#   - resolve() is pure: no DNS, no autoconfig, no network of any kind
#   - Error classification is free-text matching against the tables below.
#     Structured response codes (RFC 5530) are checked first where a server
#     sends them. Keep the tables narrow; every entry is a known server text.
# =============================================================================

import ssl
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mailmirror.core import Account


class Encryption(Enum):
    """Transport security for a server connection."""
    SSL = "ssl"             # Implicit TLS (993 / 465)
    STARTTLS = "starttls"   # Plain connect, upgrade with STARTTLS (143 / 587)
    NONE = "none"           # Plain text, only for local test servers


@dataclass(frozen=True)
class ProviderQuirks:
    """
    Behavioral flags that change how a session talks to a provider.

    Attributes:
        requires_client_identification: Send IMAP ID before folder operations.
        prefer_select_over_examine: Try a read-write open before read-only.
        has_folder_access_restrictions: Non-INBOX folders may be rejected by a
            provider security policy; such rejections are skipped, not fatal.
        min_tls_version: Fail closed when the negotiated TLS version is
            provably lower than this.
    """
    requires_client_identification: bool = False
    prefer_select_over_examine: bool = False
    has_folder_access_restrictions: bool = False
    min_tls_version: ssl.TLSVersion | None = None


@dataclass(frozen=True)
class ServerProfile:
    """
    Resolved connection parameters for one account.

    Derived, never persisted. Recomputed for every connection attempt.
    """
    provider: str
    imap_host: str
    imap_port: int
    imap_encryption: Encryption
    smtp_host: str
    smtp_port: int
    smtp_encryption: Encryption
    quirks: ProviderQuirks = field(default_factory=ProviderQuirks)


@dataclass(frozen=True)
class _ProviderEntry:
    """One row of the provider table. Hosts may contain a {domain} placeholder."""
    name: str
    domains: tuple[str, ...]
    imap_host: str
    smtp_host: str
    imap_port: int = 993
    imap_encryption: Encryption = Encryption.SSL
    smtp_port: int = 587
    smtp_encryption: Encryption = Encryption.STARTTLS
    quirks: ProviderQuirks = field(default_factory=ProviderQuirks)


# NetEase blocks non-INBOX folders for clients it considers "unsafe" until the
# user authorizes them on the web UI, and wants an ID command before SELECT.
NETEASE_QUIRKS = ProviderQuirks(
    requires_client_identification=True,
    prefer_select_over_examine=True,
    has_folder_access_restrictions=True,
    min_tls_version=ssl.TLSVersion.TLSv1_2,
)

PROVIDERS: tuple[_ProviderEntry, ...] = (
    _ProviderEntry(
        name="gmail",
        domains=("gmail.com", "googlemail.com"),
        imap_host="imap.gmail.com",
        smtp_host="smtp.gmail.com",
        quirks=ProviderQuirks(
            prefer_select_over_examine=True,
            min_tls_version=ssl.TLSVersion.TLSv1_2,
        ),
    ),
    _ProviderEntry(
        name="outlook",
        domains=("outlook.com", "hotmail.com", "live.com", "msn.com"),
        imap_host="outlook.office365.com",
        smtp_host="smtp-mail.outlook.com",
        quirks=ProviderQuirks(min_tls_version=ssl.TLSVersion.TLSv1_2),
    ),
    _ProviderEntry(
        name="office365",
        domains=("office365.com", "onmicrosoft.com"),
        imap_host="outlook.office365.com",
        smtp_host="smtp.office365.com",
        quirks=ProviderQuirks(min_tls_version=ssl.TLSVersion.TLSv1_2),
    ),
    _ProviderEntry(
        name="yahoo",
        domains=("yahoo.com", "ymail.com", "rocketmail.com"),
        imap_host="imap.mail.yahoo.com",
        smtp_host="smtp.mail.yahoo.com",
    ),
    _ProviderEntry(
        name="icloud",
        domains=("icloud.com", "me.com", "mac.com"),
        imap_host="imap.mail.me.com",
        smtp_host="smtp.mail.me.com",
    ),
    _ProviderEntry(
        name="qq",
        domains=("qq.com", "foxmail.com"),
        imap_host="imap.qq.com",
        smtp_host="smtp.qq.com",
    ),
    _ProviderEntry(
        name="netease",
        domains=("163.com", "126.com", "188.com", "yeah.net"),
        imap_host="imap.{domain}",
        smtp_host="smtp.{domain}",
        smtp_port=465,
        smtp_encryption=Encryption.SSL,
        quirks=NETEASE_QUIRKS,
    ),
)

GENERIC_PROVIDER = _ProviderEntry(
    name="generic",
    domains=(),
    imap_host="imap.{domain}",
    smtp_host="smtp.{domain}",
)

# Default ports when an override changes the security mode but not the port
DEFAULT_IMAP_PORTS = {
    Encryption.SSL: 993,
    Encryption.STARTTLS: 143,
    Encryption.NONE: 143,
}


def _domain_of(address: str) -> str:
    local, sep, domain = address.strip().rpartition("@")
    domain = domain.strip().lower().rstrip(".")
    if not sep or not local or not domain:
        raise ValueError(f"Not an email address: {address!r}")
    return domain


def _find_provider(domain: str) -> _ProviderEntry:
    for entry in PROVIDERS:
        for suffix in entry.domains:
            if domain == suffix or domain.endswith("." + suffix):
                return entry
    return GENERIC_PROVIDER


def resolve(address: str) -> ServerProfile:
    """
    Resolve the server profile for an email address.

    Lookup is by domain suffix against a small static table; unknown domains
    get a generic SSL profile on the default ports.

    Args:
        address: Email address, e.g. "someone@163.com".

    Returns:
        The resolved ServerProfile.

    Raises:
        ValueError: If the address has no local part or domain.

    Example:
        >>> resolve("user@126.com").imap_host
        'imap.126.com'
    """
    domain = _domain_of(address)
    entry = _find_provider(domain)
    # Subdomains of a known provider still use the provider's own host
    matched = next(
        (d for d in entry.domains if domain == d or domain.endswith("." + d)),
        domain,
    )
    return ServerProfile(
        provider=entry.name,
        imap_host=entry.imap_host.format(domain=matched),
        imap_port=entry.imap_port,
        imap_encryption=entry.imap_encryption,
        smtp_host=entry.smtp_host.format(domain=matched),
        smtp_port=entry.smtp_port,
        smtp_encryption=entry.smtp_encryption,
        quirks=entry.quirks,
    )


def resolve_account(account: "Account") -> ServerProfile:
    """
    Resolve the profile for an account, applying its config overrides.

    Quirks always come from the provider table, so an account that only
    overrides the host of a NetEase mailbox keeps the NetEase behavior.
    """
    profile = resolve(account.email)
    changes: dict = {}

    if account.imap_security:
        encryption = Encryption(account.imap_security)
        changes["imap_encryption"] = encryption
        if account.imap_port is None:
            changes["imap_port"] = DEFAULT_IMAP_PORTS[encryption]
    if account.imap_host:
        changes["imap_host"] = account.imap_host
    if account.imap_port is not None:
        changes["imap_port"] = account.imap_port

    return replace(profile, **changes) if changes else profile


# =============================================================================
# Error Classification
# =============================================================================

# Each entry is a group of fragments that must ALL appear in the upper-cased
# server text. Texts are built as "<result> <command> <response lines>".
RESTRICTED_ACCESS_SIGNATURES: tuple[tuple[str, ...], ...] = (
    ("UNSAFE LOGIN",),
    ("KEFU@188.COM",),
    ("NO SELECT", "UNSAFE"),
    ("NO SELECT", "PLEASE CONTACT"),
    ("NO EXAMINE", "UNSAFE"),
    ("NO EXAMINE", "PLEASE CONTACT"),
)

# RFC 5530 response codes that mean "this folder is off limits for you"
RESTRICTED_ACCESS_CODES: tuple[str, ...] = ("[NOPERM]",)

# Texts meaning the server (or the client library) no longer considers a
# folder to be open.
STALE_HANDLE_SIGNATURES: tuple[str, ...] = (
    "CLOSED FOLDER",
    "NOT ALLOWED ON A CLOSED",
    "NO MAILBOX SELECTED",
    "MAILBOX NOT SELECTED",
    "SELECT A MAILBOX FIRST",
    "ILLEGAL IN STATE AUTH",
)


def is_restricted_access_error(text: str) -> bool:
    """
    Tell whether a server text is a provider security-policy rejection.

    Args:
        text: Result, command and response lines of a failed command.

    Returns:
        True when the text matches a structured code or a known signature.

    Example:
        >>> is_restricted_access_error("NO SELECT Unsafe Login. Please contact kefu@188.com")
        True
    """
    upper = text.upper()
    if any(code in upper for code in RESTRICTED_ACCESS_CODES):
        return True
    return any(
        all(fragment in upper for fragment in signature)
        for signature in RESTRICTED_ACCESS_SIGNATURES
    )


def is_stale_handle_error(text: str) -> bool:
    """Tell whether a failure means the open folder was silently closed."""
    upper = text.upper()
    return any(signature in upper for signature in STALE_HANDLE_SIGNATURES)
