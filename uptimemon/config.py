"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .registry import (
    DEFAULT_CHECK_INTERVAL_MS,
    ValidationError,
    validate_check_interval,
    validate_is_active,
    validate_name,
    validate_url,
)


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Upper bound for a single probe, independent of any site's interval.
MAX_PROBE_TIMEOUT_MS = 30000

DEFAULT_USER_AGENT = "uptimemon/0.1"


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the probe scheduler."""

    probe_timeout_ms: int = 10000
    store_retry_attempts: int = 3  # extra attempts after the first failed write
    store_retry_delay_ms: int = 500  # doubles on every retry
    sync_interval: int = 10  # seconds between full registry resyncs, 0 disables
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        if not 1 <= self.probe_timeout_ms <= MAX_PROBE_TIMEOUT_MS:
            raise ConfigError(
                f"Probe timeout must be between 1 and {MAX_PROBE_TIMEOUT_MS} ms (got {self.probe_timeout_ms})"
            )
        if self.store_retry_attempts < 0:
            raise ConfigError(f"Store retry attempts must be non-negative (got {self.store_retry_attempts})")
        if self.store_retry_delay_ms < 0:
            raise ConfigError(f"Store retry delay must be non-negative (got {self.store_retry_delay_ms})")
        if self.sync_interval < 0:
            raise ConfigError(f"Sync interval must be non-negative (got {self.sync_interval})")
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")


@dataclass(frozen=True)
class SiteConfig:
    """A site to register on startup if no site with the same URL exists."""

    name: str
    url: str
    check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS
    is_active: bool = True

    def __post_init__(self) -> None:
        try:
            validate_name(self.name)
            validate_url(self.url)
            validate_check_interval(self.check_interval_ms)
            validate_is_active(self.is_active)
        except ValidationError as e:
            raise ConfigError(f"Invalid site '{self.name}': {e}")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "uptimemon" / "uptime.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    port: int = 3000

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    sites: list[SiteConfig] = field(default_factory=list)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def __post_init__(self) -> None:
        urls = [site.url for site in self.sites]
        duplicates = [url for url in urls if urls.count(url) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate site URLs found: {set(duplicates)}")


def _parse_site_config(data: dict, index: int) -> SiteConfig:
    """Parse a single site entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Site entry {index} must be a dictionary")

    name = data.get("name")
    url = data.get("url")

    if name is None:
        raise ConfigError(f"Site entry {index} is missing 'name' field")
    if url is None:
        raise ConfigError(f"Site entry {index} is missing 'url' field")

    try:
        check_interval_ms = int(data.get("check_interval_ms", DEFAULT_CHECK_INTERVAL_MS))
    except (TypeError, ValueError):
        raise ConfigError(f"Site entry {index} has a non-numeric 'check_interval_ms'")

    return SiteConfig(
        name=str(name),
        url=str(url),
        check_interval_ms=check_interval_ms,
        is_active=data.get("is_active", True),
    )


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        probe_timeout_ms=int(data.get("probe_timeout_ms", 10000)),
        store_retry_attempts=int(data.get("store_retry_attempts", 3)),
        store_retry_delay_ms=int(data.get("store_retry_delay_ms", 500)),
        sync_interval=int(data.get("sync_interval", 10)),
        user_agent=str(data.get("user_agent", DEFAULT_USER_AGENT)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(path=os.path.expanduser(str(data.get("path", DEFAULT_DB_PATH))))


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 3000)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - UPTIMEMON_PROBE_TIMEOUT_MS: Override monitor.probe_timeout_ms
    - UPTIMEMON_SYNC_INTERVAL: Override monitor.sync_interval
    - UPTIMEMON_DB_PATH: Override database.path
    - UPTIMEMON_API_PORT: Override api.port
    - UPTIMEMON_API_ENABLED: Override api.enabled (true/false)
    """
    for section in ("monitor", "database", "api"):
        if config_data.get(section) is None:
            config_data[section] = {}

    probe_timeout = os.environ.get("UPTIMEMON_PROBE_TIMEOUT_MS")
    if probe_timeout is not None:
        config_data["monitor"]["probe_timeout_ms"] = int(probe_timeout)

    sync_interval = os.environ.get("UPTIMEMON_SYNC_INTERVAL")
    if sync_interval is not None:
        config_data["monitor"]["sync_interval"] = int(sync_interval)

    db_path = os.environ.get("UPTIMEMON_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    api_port = os.environ.get("UPTIMEMON_API_PORT")
    if api_port is not None:
        config_data["api"]["port"] = int(api_port)

    api_enabled = os.environ.get("UPTIMEMON_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid environment override: {e}")

    sites_data = data.get("sites")
    sites: list[SiteConfig] = []
    if sites_data is not None:
        if not isinstance(sites_data, list):
            raise ConfigError("'sites' must be a list")
        sites = [_parse_site_config(site_data, i) for i, site_data in enumerate(sites_data)]

    try:
        return Config(
            sites=sites,
            monitor=_parse_monitor_config(data.get("monitor")),
            database=_parse_database_config(data.get("database")),
            api=_parse_api_config(data.get("api")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
