"""Configuration management."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from modportal_monitor.core.catalog import DEFAULT_KNOWN_VERSIONS, DEFAULT_VERSION

CONFIG_ENV_VAR = "MODPORTAL_CONFIG"


@dataclass
class PortalConfig:
    """Mod portal API settings."""
    base_url: str = "https://mods.factorio.com"
    assets_url: str = "https://assets-mod.factorio.com"
    timeout: float = 30.0
    max_retries: int = 3
    initial_retry_delay: float = 2.0
    request_delay: float = 0.0


@dataclass
class DiscordConfig:
    """Discord REST settings."""
    api_url: str = "https://discord.com/api/v10"
    timeout: float = 30.0


@dataclass
class PollingConfig:
    """Update loop settings."""
    interval: float = 60.0
    max_deferral: float = 86400.0


@dataclass
class CatalogConfig:
    """Runtime-version buckets."""
    known_versions: list[str] = field(default_factory=lambda: list(DEFAULT_KNOWN_VERSIONS))
    default_version: str = DEFAULT_VERSION


@dataclass
class PathsConfig:
    """Path settings."""
    state_dir: Path = Path("state")


@dataclass
class StateConfig:
    """Persisted state read retries."""
    read_attempts: int = 3
    read_retry_delay: float = 1.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"


@dataclass
class Settings:
    """Application settings."""

    # API keys (from environment only)
    discord_token: str = ""

    # Config sections
    portal: PortalConfig = field(default_factory=PortalConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def poll_interval(self) -> float:
        return self.polling.interval

    @property
    def state_dir(self) -> Path:
        return self.paths.state_dir

    @property
    def known_versions(self) -> list[str]:
        return self.catalog.known_versions

    @property
    def default_version(self) -> str:
        return self.catalog.default_version


def get_config_path() -> Path:
    """Resolve the config path, preferring an explicit environment override."""
    return Path(os.getenv(CONFIG_ENV_VAR, "config.yaml"))


def load_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping, got {type(data).__name__}")
    return data


def get_settings(config_path: Optional[Path] = None) -> Settings:
    """Get application settings from YAML config and environment."""
    config = load_config(config_path or get_config_path())

    settings = Settings(discord_token=os.getenv("DISCORD_TOKEN", ""))

    sections = {
        "portal": settings.portal,
        "discord": settings.discord,
        "polling": settings.polling,
        "catalog": settings.catalog,
        "state": settings.state,
        "logging": settings.logging,
    }
    for name, section in sections.items():
        for key, value in (config.get(name) or {}).items():
            if not hasattr(section, key):
                raise ValueError(f"Unknown setting {name}.{key}")
            setattr(section, key, value)

    if "paths" in config:
        for key, value in config["paths"].items():
            if not hasattr(settings.paths, key):
                raise ValueError(f"Unknown setting paths.{key}")
            setattr(settings.paths, key, Path(value))

    if settings.catalog.default_version not in settings.catalog.known_versions:
        raise ValueError(
            f"Default version {settings.catalog.default_version} is not in catalog.known_versions"
        )

    return settings
