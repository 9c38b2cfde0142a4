"""
Configuration settings management for Waypost.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.waypost/config.yaml by default, with the
path overridable via the WAYPOST_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".waypost"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Restore tuning defaults
DEFAULT_BATCH_SIZE = 50
DEFAULT_REFRESH_EVERY_FAILURES = 5


@dataclass
class BackupConfig:
    """Backup and restore settings."""

    output_dir: str = str(DEFAULT_CONFIG_DIR / "backups")
    batch_size: int = DEFAULT_BATCH_SIZE
    refresh_every_failures: int = DEFAULT_REFRESH_EVERY_FAILURES


@dataclass
class PhotoConfig:
    """Photo asset store settings."""

    directory_name: str = "Photos"


@dataclass
class Settings:
    """
    Complete Waypost configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with WAYPOST_.

    Attributes:
        data_dir: Directory holding the SQLite store and the photo directory.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Backup/restore settings.
        photos: Photo store settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    backup: BackupConfig = field(default_factory=BackupConfig)
    photos: PhotoConfig = field(default_factory=PhotoConfig)

    @property
    def photo_dir(self) -> Path:
        """Directory where live photo files are kept."""
        return Path(self.data_dir).expanduser() / self.photos.directory_name


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from WAYPOST_CONFIG environment variable if set,
    otherwise returns the default path (~/.waypost/config.yaml).
    """
    env_path = os.environ.get("WAYPOST_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses WAYPOST_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a YAML mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    waypost_data = data.get("waypost") or {}

    if "data_dir" in waypost_data:
        settings.data_dir = str(waypost_data["data_dir"])
    if "log_level" in waypost_data:
        settings.log_level = str(waypost_data["log_level"]).upper()

    backup = data.get("backup") or {}
    try:
        if "output_dir" in backup:
            settings.backup.output_dir = str(backup["output_dir"])
        if "batch_size" in backup:
            settings.backup.batch_size = int(backup["batch_size"])
        if "refresh_every_failures" in backup:
            settings.backup.refresh_every_failures = int(
                backup["refresh_every_failures"]
            )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid backup setting: {e}") from e

    photos = data.get("photos") or {}
    if "directory_name" in photos:
        settings.photos.directory_name = str(photos["directory_name"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "WAYPOST_DATA_DIR": ("data_dir", str),
        "WAYPOST_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "WAYPOST_BACKUP_OUTPUT_DIR": ("backup.output_dir", str),
        "WAYPOST_BACKUP_BATCH_SIZE": ("backup.batch_size", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.batch_size < 1:
        raise ConfigurationError("batch_size must be at least 1")

    if settings.backup.refresh_every_failures < 1:
        raise ConfigurationError("refresh_every_failures must be at least 1")

    if not settings.photos.directory_name.strip():
        raise ConfigurationError("photos.directory_name must not be blank")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "waypost": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "backup": {
            "output_dir": settings.backup.output_dir,
            "batch_size": settings.backup.batch_size,
            "refresh_every_failures": settings.backup.refresh_every_failures,
        },
        "photos": {
            "directory_name": settings.photos.directory_name,
        },
    }
