# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailmirror configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailmirror/  (default: ~/.config/mailmirror/)
#   - Data:    $XDG_DATA_HOME/mailmirror/    (default: ~/.local/share/mailmirror/)
#   - State:   $XDG_STATE_HOME/mailmirror/   (default: ~/.local/state/mailmirror/)
#
# Files:
#   - config.toml: User configuration (accounts, sync and watch tuning)
#   - mailmirror.db: SQLite mirror (in data directory)
#   - mailmirror.log: Rotating log file (in state directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mailmirror import __version__
from mailmirror.core import Account


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailmirror"

# Accepted values for an account's imap_security override
SECURITY_MODES = ("", "ssl", "starttls", "none")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _xdg_dir(env_var: str, *default: str) -> Path:
    value = os.environ.get(env_var)
    base = Path(value) if value else Path.home().joinpath(*default)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailmirror.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailmirror/
    """
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for mailmirror.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/mailmirror/
    This is where the SQLite mirror lives.
    """
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_state_home() -> Path:
    """
    Returns the XDG state directory for mailmirror.

    Respects $XDG_STATE_HOME if set, otherwise uses ~/.local/state/mailmirror/
    Logs are written here.
    """
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "state": get_xdg_state_home(),
    }
    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)
    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class SyncConfig:
    """
    Timeouts, retry bounds and batching for sync jobs.

    Attributes:
        connect_timeout: Seconds allowed for TCP + TLS + greeting.
        command_timeout: Seconds allowed for any single IMAP command.
        connect_retries: Extra connection attempts after a network failure.
                         Authentication failures are never retried.
        retry_backoff: Base delay between connection attempts (doubles).
        stale_retries: How often a folder operation is retried after the
                       server invalidated the open folder.
        stale_backoff: Fixed delay between stale-handle retries.
        batch_size: Messages per FETCH command.
        initial_fetch_limit: Newest N messages to fetch for a folder that was
                             never synced (0 = everything).
    """
    connect_timeout: float = 15.0
    command_timeout: float = 30.0
    connect_retries: int = 2
    retry_backoff: float = 1.0
    stale_retries: int = 2
    stale_backoff: float = 0.5
    batch_size: int = 50
    initial_fetch_limit: int = 0


@dataclass
class WatchConfig:
    """
    Settings for the real-time watcher.

    Attributes:
        use_idle: Use IMAP IDLE when the server supports it.
        folder: Folder to watch (full server name).
        idle_timeout: Seconds before an IDLE is refreshed (RFC 2177 says < 30 min).
        poll_interval: Seconds between STATUS polls in fallback mode.
        max_failures: Consecutive connection failures before the watcher
                      gives up on an account.
        backoff_base: First reconnect delay, doubled per failure.
        backoff_max: Upper bound for the reconnect delay.
    """
    use_idle: bool = True
    folder: str = "INBOX"
    idle_timeout: float = 29 * 60
    poll_interval: float = 60.0
    max_failures: int = 5
    backoff_base: float = 5.0
    backoff_max: float = 300.0


@dataclass
class ClientConfig:
    """
    Client identification sent with the IMAP ID command (RFC 2971).

    Some providers (NetEase) gate folder access on receiving it.
    """
    name: str = APP_NAME
    version: str = __version__
    vendor: str = APP_NAME

    def as_id_fields(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version, "vendor": self.vendor}


@dataclass
class Config:
    """
    Main configuration container for mailmirror.

    Attributes:
        default_account: Account used when a command names none.
        log_level: Default log level for the CLI.
        accounts: Configured accounts, keyed by name.
        sync: Sync job tuning.
        watch: Watcher tuning.
        client: IMAP ID fields.
        path: File this config was loaded from (None = defaults).

    Usage:
        >>> config = Config.load()
        >>> config.accounts["personal"].email
        'user@example.com'
    """
    default_account: str = ""
    log_level: str = "INFO"

    accounts: dict[str, Account] = field(default_factory=dict)

    sync: SyncConfig = field(default_factory=SyncConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    path: Path | None = None

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite mirror."""
        return get_xdg_data_home() / "mailmirror.db"

    @staticmethod
    def log_file_path() -> Path:
        """Returns the path to the log file."""
        return get_xdg_state_home() / "mailmirror.log"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from a TOML file.

        If the file doesn't exist, returns default configuration.

        Args:
            path: Explicit config file. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        if path is None:
            ensure_directories()
            path = cls.config_file_path()

        if not path.exists():
            config = cls()
            config.path = path
            return config

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        config = cls._from_dict(data)
        config.path = path
        config.validate()
        return config

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to a TOML file.

        Args:
            path: Target file. Defaults to where the config was loaded from,
                  then to the XDG location.
        """
        target = path or self.path or self.config_file_path()
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    def validate(self) -> None:
        """
        Check value ranges that would otherwise fail deep inside a sync.

        Raises:
            ConfigError: On the first invalid value.
        """
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"general.log_level must be one of {', '.join(LOG_LEVELS)}")
        for key in ("connect_timeout", "command_timeout", "retry_backoff", "stale_backoff"):
            if getattr(self.sync, key) < 0:
                raise ConfigError(f"sync.{key} must not be negative")
        for key in ("connect_retries", "stale_retries", "initial_fetch_limit"):
            if getattr(self.sync, key) < 0:
                raise ConfigError(f"sync.{key} must not be negative")
        if self.sync.batch_size < 1:
            raise ConfigError("sync.batch_size must be at least 1")
        if self.watch.max_failures < 1:
            raise ConfigError("watch.max_failures must be at least 1")
        for key in ("idle_timeout", "poll_interval", "backoff_base", "backoff_max"):
            if getattr(self.watch, key) < 0:
                raise ConfigError(f"watch.{key} must not be negative")
        for name, account in self.accounts.items():
            if "@" not in account.email:
                raise ConfigError(f"accounts.{name}.email is not an email address")
            if account.imap_security not in SECURITY_MODES:
                raise ConfigError(
                    f"accounts.{name}.imap_security must be one of ssl, starttls, none"
                )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Unknown keys are ignored; missing keys fall back to defaults.
        """
        config = cls()

        general = data.get("general", {})
        config.default_account = general.get("default_account", "")
        config.log_level = str(general.get("log_level", "INFO")).upper()

        sync = data.get("sync", {})
        defaults = SyncConfig()
        config.sync = SyncConfig(
            connect_timeout=float(sync.get("connect_timeout", defaults.connect_timeout)),
            command_timeout=float(sync.get("command_timeout", defaults.command_timeout)),
            connect_retries=int(sync.get("connect_retries", defaults.connect_retries)),
            retry_backoff=float(sync.get("retry_backoff", defaults.retry_backoff)),
            stale_retries=int(sync.get("stale_retries", defaults.stale_retries)),
            stale_backoff=float(sync.get("stale_backoff", defaults.stale_backoff)),
            batch_size=int(sync.get("batch_size", defaults.batch_size)),
            initial_fetch_limit=int(sync.get("initial_fetch_limit", defaults.initial_fetch_limit)),
        )

        watch = data.get("watch", {})
        watch_defaults = WatchConfig()
        config.watch = WatchConfig(
            use_idle=bool(watch.get("use_idle", watch_defaults.use_idle)),
            folder=watch.get("folder", watch_defaults.folder),
            idle_timeout=float(watch.get("idle_timeout", watch_defaults.idle_timeout)),
            poll_interval=float(watch.get("poll_interval", watch_defaults.poll_interval)),
            max_failures=int(watch.get("max_failures", watch_defaults.max_failures)),
            backoff_base=float(watch.get("backoff_base", watch_defaults.backoff_base)),
            backoff_max=float(watch.get("backoff_max", watch_defaults.backoff_max)),
        )

        client = data.get("client", {})
        client_defaults = ClientConfig()
        config.client = ClientConfig(
            name=client.get("name", client_defaults.name),
            version=client.get("version", client_defaults.version),
            vendor=client.get("vendor", client_defaults.vendor),
        )

        # Accounts - each key under [accounts] is an account name
        for name, acct_data in data.get("accounts", {}).items():
            config.accounts[name] = Account(
                name=name,
                email=acct_data.get("email", ""),
                display_name=acct_data.get("display_name", ""),
                imap_host=acct_data.get("imap_host", ""),
                imap_port=acct_data.get("imap_port"),
                imap_security=acct_data.get("imap_security", ""),
                enabled=acct_data.get("enabled", True),
                sync_enabled=acct_data.get("sync_enabled", True),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {
            "general": {
                "default_account": self.default_account,
                "log_level": self.log_level,
            },
            "sync": {
                "connect_timeout": self.sync.connect_timeout,
                "command_timeout": self.sync.command_timeout,
                "connect_retries": self.sync.connect_retries,
                "retry_backoff": self.sync.retry_backoff,
                "stale_retries": self.sync.stale_retries,
                "stale_backoff": self.sync.stale_backoff,
                "batch_size": self.sync.batch_size,
                "initial_fetch_limit": self.sync.initial_fetch_limit,
            },
            "watch": {
                "use_idle": self.watch.use_idle,
                "folder": self.watch.folder,
                "idle_timeout": self.watch.idle_timeout,
                "poll_interval": self.watch.poll_interval,
                "max_failures": self.watch.max_failures,
                "backoff_base": self.watch.backoff_base,
                "backoff_max": self.watch.backoff_max,
            },
            "client": {
                "name": self.client.name,
                "version": self.client.version,
                "vendor": self.client.vendor,
            },
            "accounts": {},
        }

        for name, account in self.accounts.items():
            entry: dict[str, Any] = {
                "email": account.email,
                "display_name": account.display_name,
                "enabled": account.enabled,
                "sync_enabled": account.sync_enabled,
            }
            # TOML has no null, so unset overrides are simply omitted
            if account.imap_host:
                entry["imap_host"] = account.imap_host
            if account.imap_port is not None:
                entry["imap_port"] = account.imap_port
            if account.imap_security:
                entry["imap_security"] = account.imap_security
            data["accounts"][name] = entry

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
    print(f"Log file:     {Config.log_file_path()}")
