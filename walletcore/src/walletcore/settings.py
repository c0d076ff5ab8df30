"""
Unified settings management for walletsync.

This module provides a centralized configuration system using pydantic-settings
that supports:
1. TOML configuration file (~/.walletsync/config.toml)
2. Environment variables
3. CLI arguments (via typer, handled by the CLI)

Priority (highest to lowest):
1. CLI arguments
2. Environment variables
3. Config file
4. Default values

Usage:
    from walletcore.settings import get_settings

    settings = get_settings()
    print(settings.backend.url)
    print(settings.backend.stop_gap)

Environment Variable Naming:
    - Use uppercase with double underscore for nested settings
    - Examples: BACKEND__URL, BACKEND__STOP_GAP, LOGGING__LEVEL
    - Maps to TOML sections: BACKEND__URL -> [backend] url
"""

from __future__ import annotations

import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from walletcore.models import BackendType, NetworkType
from walletcore.paths import CONFIG_FILE_ENV, DATA_DIR_ENV, get_default_data_dir

DEFAULT_BACKEND_URLS: dict[str, str] = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
    "signet": "https://mempool.space/signet/api",
    "regtest": "http://127.0.0.1:3002",
}

DEFAULT_ELECTRUM_URLS: dict[str, str] = {
    "mainnet": "ssl://electrum.blockstream.info:50002",
    "testnet": "ssl://electrum.blockstream.info:60002",
    "signet": "ssl://mempool.space:60602",
    "regtest": "tcp://127.0.0.1:50001",
}


class BackendSettings(BaseModel):
    """Chain indexing backend configuration."""

    type: BackendType = Field(
        default=BackendType.ESPLORA,
        description="Backend type: esplora or electrum",
    )
    url: str | None = Field(
        default=None,
        description=(
            "Esplora base URL or Electrum server (tcp://host:port, ssl://host:port); "
            "defaults to a public instance for the network"
        ),
    )
    proxy: str | None = Field(
        default=None,
        description="Proxy URL, e.g. socks5://127.0.0.1:9050",
    )
    retry: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Connection retry count for each request",
    )
    timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Request timeout in seconds (no timeout if unset)",
    )
    concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Parallel requests issued within one batch",
    )
    stop_gap: int = Field(
        default=20,
        ge=1,
        description="Unused script gap that ends a keychain scan; also the sync chunk size",
    )

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        return v.rstrip("/") if v else v


class WalletSettings(BaseModel):
    """Wallet store configuration."""

    network: NetworkType = Field(
        default=NetworkType.MAINNET,
        description="Bitcoin network (mainnet, testnet, signet, regtest)",
    )
    database: str = Field(
        default="wallet.json",
        description="Wallet database file name inside the data directory",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )


class WalletSyncSettings(BaseSettings):
    """
    Main walletsync settings class.

    Loads configuration from multiple sources with the following priority:
    1. CLI arguments (passed as init kwargs)
    2. Environment variables
    3. TOML config file (~/.walletsync/config.toml)
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path | None = Field(
        default=None,
        description="Data directory (defaults to ~/.walletsync)",
    )

    backend: BackendSettings = Field(default_factory=BackendSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Customize settings sources and their priority.

        Priority (highest to lowest):
        1. init_settings (CLI arguments passed to constructor)
        2. env_settings (environment variables with __ delimiter)
        3. toml_settings (config.toml file)
        4. defaults (in field definitions)
        """
        toml_source = TomlConfigSettingsSource(settings_cls)
        return (
            init_settings,
            env_settings,
            toml_source,
        )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            return self.data_dir
        return get_default_data_dir()

    def get_backend_url(self) -> str:
        """Get the backend URL, using the network default if not set."""
        if self.backend.url:
            return self.backend.url
        if self.backend.type == BackendType.ELECTRUM:
            return DEFAULT_ELECTRUM_URLS[self.wallet.network.value]
        return DEFAULT_BACKEND_URLS[self.wallet.network.value]


def get_config_path() -> Path:
    """Get the path to the config file."""
    env_path = os.environ.get(CONFIG_FILE_ENV)
    if env_path:
        return Path(env_path)
    data_dir_env = os.environ.get(DATA_DIR_ENV)
    data_dir = Path(data_dir_env) if data_dir_env else Path.home() / ".walletsync"
    return data_dir / "config.toml"


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Custom settings source that reads from a TOML config file.

    The config file is expected at ~/.walletsync/config.toml,
    $WALLETSYNC_DATA_DIR/config.toml, or $WALLETSYNC_CONFIG_FILE.
    """

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        config_path = get_config_path()

        if not config_path.exists():
            logger.debug(f"Config file not found at {config_path}, using defaults")
            return

        try:
            with open(config_path, "rb") as f:
                self._config = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Invalid TOML syntax in config file {config_path}")
            logger.error(f"Error: {e}")
            logger.error("Please fix the syntax errors in your config file and try again.")
            sys.exit(1)
        except OSError as e:
            logger.error(f"Failed to load config from {config_path}: {e}")
            sys.exit(1)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        """Get field value from TOML config."""
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        """Return all config values as a flat dict for pydantic-settings."""
        return self._config


def generate_config_template() -> str:
    """
    Generate a config file template with all settings commented out.

    This allows users to see all available settings with their defaults
    and descriptions, while only uncommenting what they want to change.
    """
    lines: list[str] = [
        "# walletsync configuration",
        "#",
        "# Settings are commented out by default - uncomment to override.",
        "#",
        "# Priority (highest to lowest):",
        "#   1. CLI arguments",
        "#   2. Environment variables",
        "#   3. This config file",
        "#   4. Built-in defaults",
        "#",
        "# Environment variables use uppercase with double underscore for nesting:",
        "#   BACKEND__TYPE=electrum",
        "#   BACKEND__URL=https://blockstream.info/api",
        "#   BACKEND__STOP_GAP=20",
        "",
        "# Data directory (defaults to ~/.walletsync or $WALLETSYNC_DATA_DIR)",
        "# data_dir = ",
        "",
    ]

    def add_section(title: str, model_cls: type[BaseModel], prefix: str) -> None:
        lines.append(f"# {'=' * 60}")
        lines.append(f"# {title}")
        lines.append(f"# {'=' * 60}")
        lines.append(f"[{prefix}]")
        lines.append("")

        for field_name, field_info in model_cls.model_fields.items():
            if field_info.description:
                lines.append(f"# {field_info.description}")

            default = field_info.default
            if isinstance(default, bool):
                value_str = str(default).lower()
            elif isinstance(default, (BackendType, NetworkType)):
                value_str = f'"{default.value}"'
            elif isinstance(default, str):
                value_str = f'"{default}"'
            elif default is None:
                lines.append(f"# {field_name} = ")
                lines.append("")
                continue
            else:
                value_str = str(default)

            lines.append(f"# {field_name} = {value_str}")
            lines.append("")

    add_section("Backend Settings", BackendSettings, "backend")
    add_section("Wallet Settings", WalletSettings, "wallet")
    add_section("Logging Settings", LoggingSettings, "logging")

    return "\n".join(lines)


def ensure_config_file(data_dir: Path | None = None) -> Path:
    """
    Ensure the config file exists, creating a template if it doesn't.

    Args:
        data_dir: Optional data directory path. Uses default if not provided.

    Returns:
        Path to the config file.
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = data_dir / "config.toml"

    if not config_path.exists():
        logger.info(f"Creating config file template at {config_path}")
        data_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(generate_config_template())

    return config_path


# Global settings instance (lazy-loaded)
_settings: WalletSyncSettings | None = None


def get_settings(**overrides: Any) -> WalletSyncSettings:
    """
    Get the walletsync settings instance.

    On first call, loads settings from all sources. Subsequent calls
    return the cached instance unless reset_settings() is called.

    Args:
        **overrides: Optional settings overrides (highest priority)

    Returns:
        WalletSyncSettings instance
    """
    global _settings
    if _settings is None or overrides:
        _settings = WalletSyncSettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "BackendSettings",
    "LoggingSettings",
    "WalletSettings",
    "WalletSyncSettings",
    "ensure_config_file",
    "generate_config_template",
    "get_config_path",
    "get_settings",
    "reset_settings",
]
