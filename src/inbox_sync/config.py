# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating inbox-sync configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/inbox-sync/  (default: ~/.config/inbox-sync/)
#   - Data:    $XDG_DATA_HOME/inbox-sync/    (default: ~/.local/share/inbox-sync/)
#
# Files:
#   - config.toml: Engine configuration (sync defaults, timeouts, security)
#   - inbox-sync.db: SQLite database (in data directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from inbox_sync.errors import ConfigurationError


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "inbox-sync"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for inbox-sync.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/inbox-sync/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for inbox-sync.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/inbox-sync/
    This is where the SQLite database lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """
    Creates the XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class DatabaseConfig:
    """
    Configuration for the cache database.

    Attributes:
        path: SQLite file. Empty means the XDG data location.
    """
    path: str = ""


@dataclass
class SyncConfig:
    """
    Defaults for fetch and sync calls.

    Attributes:
        mailbox: Mailbox synced when the caller names none.
        limit: Page size when the caller names none.
        cache_limit: Cached messages kept per account when neither the
                     caller nor the user's settings say otherwise.
        cache_limit_setting: User-settings key holding the per-user limit.
    """
    mailbox: str = "INBOX"
    limit: int = 15
    cache_limit: int = 15
    cache_limit_setting: str = "inbox_cache_limit"


@dataclass
class NetworkConfig:
    """
    Network behaviour for mail server sessions.

    Attributes:
        timeout: Seconds allowed for connect, greeting and each socket
                 operation. Keeps unreachable servers from hanging a call.
    """
    timeout: float = 30.0


@dataclass
class Pop3Config:
    """
    POP3-specific behaviour.

    Attributes:
        starttls: How to honour an account that asks for STARTTLS.
                  - "implicit": connect with implicit TLS instead (logged)
                  - "upgrade": plaintext connect followed by a real STLS
    """
    starttls: str = "implicit"


@dataclass
class SearchConfig:
    """
    Live server search.

    Attributes:
        max_results: Most matches fetched per search.
        since_months: Default date bound in months (0 = all time).
    """
    max_results: int = 100
    since_months: int = 6


@dataclass
class SecurityConfig:
    """
    Where the key that decrypts account secrets lives.

    The key is looked up in the system keyring first
    (keyring get <keyring_service> <keyring_key>), then in the
    environment variable named by key_env.
    """
    keyring_service: str = APP_NAME
    keyring_key: str = "secret-key"
    key_env: str = "INBOX_SYNC_SECRET_KEY"


@dataclass
class Config:
    """
    Main configuration container for inbox-sync.

    Usage:
        >>> config = Config.load()
        >>> config.sync.cache_limit
        15
    """
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    pop3: Pop3Config = field(default_factory=Pop3Config)
    search: SearchConfig = field(default_factory=SearchConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def default_database_path() -> Path:
        """Returns the default path to the SQLite database."""
        return get_xdg_data_home() / "inbox-sync.db"

    def database_path(self) -> Path:
        """Returns the configured database path."""
        if self.database.path:
            return Path(self.database.path).expanduser()
        return self.default_database_path()

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from a TOML file.

        If the file doesn't exist, returns default configuration.

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

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to a TOML file.

        Args:
            path: Destination. Defaults to the XDG location.
        """
        if path is None:
            ensure_directories()
            path = self.config_file_path()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create a Config object from parsed TOML."""
        config = cls()

        database = data.get("database", {})
        config.database = DatabaseConfig(path=database.get("path", ""))

        sync = data.get("sync", {})
        config.sync = SyncConfig(
            mailbox=sync.get("mailbox", "INBOX"),
            limit=sync.get("limit", 15),
            cache_limit=sync.get("cache_limit", 15),
            cache_limit_setting=sync.get("cache_limit_setting", "inbox_cache_limit"),
        )

        network = data.get("network", {})
        config.network = NetworkConfig(timeout=float(network.get("timeout", 30.0)))

        pop3 = data.get("pop3", {})
        starttls = pop3.get("starttls", "implicit")
        if starttls not in ("implicit", "upgrade"):
            raise ConfigError(
                f"Invalid [pop3] starttls value {starttls!r}: expected 'implicit' or 'upgrade'"
            )
        config.pop3 = Pop3Config(starttls=starttls)

        search = data.get("search", {})
        config.search = SearchConfig(
            max_results=search.get("max_results", 100),
            since_months=search.get("since_months", 6),
        )

        security = data.get("security", {})
        config.security = SecurityConfig(
            keyring_service=security.get("keyring_service", APP_NAME),
            keyring_key=security.get("keyring_key", "secret-key"),
            key_env=security.get("key_env", "INBOX_SYNC_SECRET_KEY"),
        )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        return {
            "database": {
                "path": self.database.path,
            },
            "sync": {
                "mailbox": self.sync.mailbox,
                "limit": self.sync.limit,
                "cache_limit": self.sync.cache_limit,
                "cache_limit_setting": self.sync.cache_limit_setting,
            },
            "network": {
                "timeout": self.network.timeout,
            },
            "pop3": {
                "starttls": self.pop3.starttls,
            },
            "search": {
                "max_results": self.search.max_results,
                "since_months": self.search.since_months,
            },
            "security": {
                "keyring_service": self.security.keyring_service,
                "keyring_key": self.security.keyring_key,
                "key_env": self.security.key_env,
            },
        }


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(ConfigurationError):
    """Raised when there's an error loading or parsing configuration."""
    user_message = "Invalid inbox-sync configuration"


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths(config: Config | None = None) -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    config = config or Config()
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {config.database_path()}")
