# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailsync configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailsync/  (default: ~/.config/mailsync/)
#   - Data:    $XDG_DATA_HOME/mailsync/    (default: ~/.local/share/mailsync/)
#
# Files:
#   - config.toml: User configuration (accounts, sync defaults)
#   - mailsync.db: SQLite database (in data directory)
#
# Example config.toml:
#
#   [general]
#   log_level = "INFO"
#
#   [sync]
#   strategy = "parallel"
#   max_concurrency = 3
#   limit = 50              # 0 = fetch every message
#
#   [accounts.personal]
#   host = "imap.example.com"
#   user = "me@example.com"
#   # secret omitted: looked up in the keyring as "mailsync:personal"
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mailsync.core import Account


# =============================================================================
# XDG Directory Management
# =============================================================================

# Directory name under each XDG base directory
APP_NAME = "mailsync"


def _xdg_dir(variable: str, fallback: Path) -> Path:
    value = os.environ.get(variable)
    return (Path(value) if value else fallback) / APP_NAME


def get_xdg_config_home() -> Path:
    """$XDG_CONFIG_HOME/mailsync, or ~/.config/mailsync when unset."""
    return _xdg_dir("XDG_CONFIG_HOME", Path.home() / ".config")


def get_xdg_data_home() -> Path:
    """
    $XDG_DATA_HOME/mailsync, or ~/.local/share/mailsync when unset.

    The message store lives here.
    """
    return _xdg_dir("XDG_DATA_HOME", Path.home() / ".local" / "share")


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class GeneralConfig:
    """
    General settings.

    Attributes:
        log_level: Root logging level name ("DEBUG", "INFO", "WARNING", ...).
    """
    log_level: str = "INFO"


@dataclass
class SyncConfig:
    """
    Defaults for sync runs. Each value can be overridden per run.

    Attributes:
        strategy: "sequential" (one folder at a time on the pooled connection)
                  or "parallel" (worker pool with dedicated connections).
        max_concurrency: Parallel folder workers (1-10).
        limit: Most recent messages to fetch per folder (0 = all).
        include_spam: Include spam-like folders in the default folder set.
        continue_on_error: Keep going after a folder fails.
        fetch_body: Download full bodies rather than headers only.
        batch_size: Sequence numbers requested per FETCH command.
    """
    strategy: str = "parallel"
    max_concurrency: int = 3
    limit: int = 50                     # 0 = no limit
    include_spam: bool = True
    continue_on_error: bool = True
    fetch_body: bool = True
    batch_size: int = 50


@dataclass
class ConnectionConfig:
    """
    Default IMAP timeouts, in seconds. Accounts may override each one.
    """
    connect_timeout: float = 10.0
    auth_timeout: float = 5.0
    command_timeout: float = 30.0
    idle_timeout: float = 300.0         # Pooled connections older than this are replaced


@dataclass
class ProgressConfig:
    """
    How long finished sessions stay queryable, in seconds.
    """
    success_grace: float = 30.0
    error_grace: float = 60.0


@dataclass
class SecurityConfig:
    """
    Attributes:
        encryption_key: Fernet key for stored message fields. Empty means
                        use $MAILSYNC_ENCRYPTION_KEY or the system keyring.
    """
    encryption_key: str = ""


@dataclass
class Config:
    """
    Main configuration container for mailsync.

    Attributes:
        general: General settings.
        sync: Sync run defaults.
        connection: Default IMAP timeouts.
        progress: Session retention settings.
        security: Encryption settings.
        accounts: Configured IMAP accounts, keyed by id.

    Usage:
        >>> config = Config.load()
        >>> config.accounts["personal"].host
        'imap.example.com'
    """
    general: GeneralConfig = field(default_factory=GeneralConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    # Account configurations (id -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """XDG location of config.toml."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """XDG location of the message store."""
        return get_xdg_data_home() / "mailsync.db"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Read and validate a config file.

        A missing file is not an error: the defaults are returned.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        # Load and parse the TOML file
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Write the config as TOML, creating its directory as needed."""
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Build and validate a Config from parsed TOML.

        Account entries inherit the [connection] timeouts unless they set
        their own.
        """
        config = cls()

        general = data.get("general", {})
        config.general = GeneralConfig(
            log_level=str(general.get("log_level", "INFO")).upper(),
        )

        sync = data.get("sync", {})
        config.sync = SyncConfig(
            strategy=sync.get("strategy", "parallel"),
            max_concurrency=sync.get("max_concurrency", 3),
            limit=sync.get("limit", 50),
            include_spam=sync.get("include_spam", True),
            continue_on_error=sync.get("continue_on_error", True),
            fetch_body=sync.get("fetch_body", True),
            batch_size=sync.get("batch_size", 50),
        )
        if config.sync.strategy not in ("sequential", "parallel"):
            raise ConfigError(f"Unknown sync strategy: {config.sync.strategy!r}")
        if not 1 <= config.sync.max_concurrency <= 10:
            raise ConfigError("sync.max_concurrency must be between 1 and 10")
        if config.sync.limit < 0 or config.sync.batch_size < 1:
            raise ConfigError("sync.limit must be >= 0 and sync.batch_size >= 1")

        conn = data.get("connection", {})
        config.connection = ConnectionConfig(
            connect_timeout=float(conn.get("connect_timeout", 10.0)),
            auth_timeout=float(conn.get("auth_timeout", 5.0)),
            command_timeout=float(conn.get("command_timeout", 30.0)),
            idle_timeout=float(conn.get("idle_timeout", 300.0)),
        )

        progress = data.get("progress", {})
        config.progress = ProgressConfig(
            success_grace=float(progress.get("success_grace", 30.0)),
            error_grace=float(progress.get("error_grace", 60.0)),
        )

        security = data.get("security", {})
        config.security = SecurityConfig(
            encryption_key=security.get("encryption_key", ""),
        )

        # Accounts - each key under [accounts] is an account id
        defaults = config.connection
        for account_id, acct in data.get("accounts", {}).items():
            if not acct.get("host") or not acct.get("user"):
                raise ConfigError(f"Account {account_id!r} needs 'host' and 'user'")
            try:
                config.accounts[account_id] = Account(
                    id=account_id,
                    host=acct["host"],
                    user=acct["user"],
                    secret=acct.get("secret", ""),
                    port=acct.get("port", 993),
                    security=acct.get("security", "ssl"),
                    connect_timeout=float(acct.get("connect_timeout", defaults.connect_timeout)),
                    auth_timeout=float(acct.get("auth_timeout", defaults.auth_timeout)),
                    command_timeout=float(acct.get("command_timeout", defaults.command_timeout)),
                    idle_timeout=float(acct.get("idle_timeout", defaults.idle_timeout)),
                )
            except ValueError as e:
                raise ConfigError(f"Account {account_id!r}: {e}") from e

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Inverse of _from_dict, for tomli_w.

        Secrets are never written back; they belong in the keyring.
        """
        data: dict[str, Any] = {}

        data["general"] = {"log_level": self.general.log_level}

        data["sync"] = {
            "strategy": self.sync.strategy,
            "max_concurrency": self.sync.max_concurrency,
            "limit": self.sync.limit,
            "include_spam": self.sync.include_spam,
            "continue_on_error": self.sync.continue_on_error,
            "fetch_body": self.sync.fetch_body,
            "batch_size": self.sync.batch_size,
        }

        data["connection"] = {
            "connect_timeout": self.connection.connect_timeout,
            "auth_timeout": self.connection.auth_timeout,
            "command_timeout": self.connection.command_timeout,
            "idle_timeout": self.connection.idle_timeout,
        }

        data["progress"] = {
            "success_grace": self.progress.success_grace,
            "error_grace": self.progress.error_grace,
        }

        if self.security.encryption_key:
            data["security"] = {"encryption_key": self.security.encryption_key}

        data["accounts"] = {}
        for account_id, account in self.accounts.items():
            entry: dict[str, Any] = {
                "host": account.host,
                "user": account.user,
                "port": account.port,
                "security": account.security,
            }
            # Only write timeouts that differ from [connection]
            for name in ("connect_timeout", "auth_timeout", "command_timeout", "idle_timeout"):
                value = getattr(account, name)
                if value != getattr(self.connection, name):
                    entry[name] = value
            data["accounts"][account_id] = entry

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised for unreadable TOML or invalid settings."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """Show where mailsync reads its config and keeps its data (--paths)."""
    for label, path in (
        ("Config dir", get_xdg_config_home()),
        ("Data dir", get_xdg_data_home()),
        ("Config file", Config.config_file_path()),
        ("Database", Config.database_path()),
    ):
        print(f"{label + ':':<13} {path}")
