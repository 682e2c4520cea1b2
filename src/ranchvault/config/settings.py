"""
Configuration settings management for ranchvault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.ranchvault/config.yaml by default, with the
path overridable via the RANCHVAULT_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".ranchvault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_BLOB_BACKENDS = ("local", "http")
VALID_DUPLICATE_POLICIES = ("skip", "update", "error")


@dataclass
class BlobStoreConfig:
    """Where photo blobs live."""

    backend: str = "local"
    root: str = str(DEFAULT_CONFIG_DIR / "data" / "blobs")
    url: str = ""
    bucket: str = "animal-photos"
    timeout_seconds: float = 60.0
    chunk_size: int = 1024 * 1024


@dataclass
class ExportConfig:
    """Archive export settings."""

    output_dir: str = str(DEFAULT_CONFIG_DIR / "backups")
    page_size: int = 500
    compression_level: int = 6
    # Throttle: emit progress every N items or every interval, whichever first
    progress_every: int = 25
    progress_interval_seconds: float = 2.0
    # Media items larger than this spill from memory to a temp file
    spool_max_bytes: int = 8 * 1024 * 1024


@dataclass
class RestoreConfig:
    """Archive restore settings."""

    batch_size: int = 500
    duplicate_policy: str = "skip"
    media_retries: int = 3
    # A lock not refreshed for this long is taken over as abandoned
    lock_ttl_seconds: int = 3600
    progress_every: int = 25
    progress_interval_seconds: float = 2.0


@dataclass
class RetryConfig:
    """Retry settings for transient store errors."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0


@dataclass
class Settings:
    """
    Complete ranchvault configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with RANCHVAULT_.

    Attributes:
        data_dir: Directory holding the record store database.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        blob_store: Photo blob storage backend.
        export: Export (backup) settings.
        restore: Restore settings.
        retry: Bounded retry settings for transient failures.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    blob_store: BlobStoreConfig = field(default_factory=BlobStoreConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from RANCHVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.ranchvault/config.yaml).
    """
    env_path = os.environ.get("RANCHVAULT_CONFIG")
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
                    uses RANCHVAULT_CONFIG environment variable or default path.

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
            raise ConfigurationError("Config file must contain a mapping")

        try:
            settings = _apply_config_data(settings, config_data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value in config file: {e}") from e

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
    core = data.get("ranchvault", {}) or {}

    if "data_dir" in core:
        settings.data_dir = str(core["data_dir"])
    if "log_level" in core:
        settings.log_level = str(core["log_level"]).upper()

    blob = data.get("blob_store", {}) or {}
    if "backend" in blob:
        settings.blob_store.backend = str(blob["backend"]).lower()
    if "root" in blob:
        settings.blob_store.root = str(blob["root"])
    if "url" in blob:
        settings.blob_store.url = str(blob["url"])
    if "bucket" in blob:
        settings.blob_store.bucket = str(blob["bucket"])
    if "timeout_seconds" in blob:
        settings.blob_store.timeout_seconds = float(blob["timeout_seconds"])
    if "chunk_size" in blob:
        settings.blob_store.chunk_size = int(blob["chunk_size"])

    export = data.get("export", {}) or {}
    if "output_dir" in export:
        settings.export.output_dir = str(export["output_dir"])
    if "page_size" in export:
        settings.export.page_size = int(export["page_size"])
    if "compression_level" in export:
        settings.export.compression_level = int(export["compression_level"])
    if "progress_every" in export:
        settings.export.progress_every = int(export["progress_every"])
    if "progress_interval_seconds" in export:
        settings.export.progress_interval_seconds = float(export["progress_interval_seconds"])
    if "spool_max_bytes" in export:
        settings.export.spool_max_bytes = int(export["spool_max_bytes"])

    restore = data.get("restore", {}) or {}
    if "batch_size" in restore:
        settings.restore.batch_size = int(restore["batch_size"])
    if "duplicate_policy" in restore:
        settings.restore.duplicate_policy = str(restore["duplicate_policy"]).lower()
    if "media_retries" in restore:
        settings.restore.media_retries = int(restore["media_retries"])
    if "lock_ttl_seconds" in restore:
        settings.restore.lock_ttl_seconds = int(restore["lock_ttl_seconds"])
    if "progress_every" in restore:
        settings.restore.progress_every = int(restore["progress_every"])
    if "progress_interval_seconds" in restore:
        settings.restore.progress_interval_seconds = float(restore["progress_interval_seconds"])

    retry = data.get("retry", {}) or {}
    if "max_retries" in retry:
        settings.retry.max_retries = int(retry["max_retries"])
    if "base_delay" in retry:
        settings.retry.base_delay = float(retry["base_delay"])
    if "max_delay" in retry:
        settings.retry.max_delay = float(retry["max_delay"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "RANCHVAULT_DATA_DIR": ("data_dir", str),
        "RANCHVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "RANCHVAULT_BLOB_BACKEND": ("blob_store.backend", lambda x: x.lower()),
        "RANCHVAULT_BLOB_ROOT": ("blob_store.root", str),
        "RANCHVAULT_BLOB_URL": ("blob_store.url", str),
        "RANCHVAULT_BLOB_BUCKET": ("blob_store.bucket", str),
        "RANCHVAULT_DUPLICATE_POLICY": ("restore.duplicate_policy", lambda x: x.lower()),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

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
    if settings.log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if settings.blob_store.backend not in VALID_BLOB_BACKENDS:
        raise ConfigurationError(
            f"Invalid blob_store backend: {settings.blob_store.backend}. "
            f"Must be one of: {', '.join(VALID_BLOB_BACKENDS)}"
        )

    if settings.blob_store.backend == "http" and not settings.blob_store.url:
        raise ConfigurationError("blob_store.url is required for the http backend")

    if settings.blob_store.chunk_size < 1:
        raise ConfigurationError("blob_store.chunk_size must be at least 1")

    if settings.export.page_size < 1:
        raise ConfigurationError("export.page_size must be at least 1")

    if not 0 <= settings.export.compression_level <= 9:
        raise ConfigurationError("export.compression_level must be between 0 and 9")

    if settings.restore.batch_size < 1:
        raise ConfigurationError("restore.batch_size must be at least 1")

    if settings.restore.duplicate_policy not in VALID_DUPLICATE_POLICIES:
        raise ConfigurationError(
            f"Invalid duplicate_policy: {settings.restore.duplicate_policy}. "
            f"Must be one of: {', '.join(VALID_DUPLICATE_POLICIES)}"
        )

    if settings.restore.progress_every < 1:
        raise ConfigurationError("restore.progress_every must be at least 1")

    if settings.restore.media_retries < 0 or settings.retry.max_retries < 0:
        raise ConfigurationError("Retry counts cannot be negative")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "ranchvault": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "blob_store": {
            "backend": settings.blob_store.backend,
            "root": settings.blob_store.root,
            "url": settings.blob_store.url,
            "bucket": settings.blob_store.bucket,
            "timeout_seconds": settings.blob_store.timeout_seconds,
            "chunk_size": settings.blob_store.chunk_size,
        },
        "export": {
            "output_dir": settings.export.output_dir,
            "page_size": settings.export.page_size,
            "compression_level": settings.export.compression_level,
            "progress_every": settings.export.progress_every,
            "progress_interval_seconds": settings.export.progress_interval_seconds,
            "spool_max_bytes": settings.export.spool_max_bytes,
        },
        "restore": {
            "batch_size": settings.restore.batch_size,
            "duplicate_policy": settings.restore.duplicate_policy,
            "media_retries": settings.restore.media_retries,
            "lock_ttl_seconds": settings.restore.lock_ttl_seconds,
            "progress_every": settings.restore.progress_every,
            "progress_interval_seconds": settings.restore.progress_interval_seconds,
        },
        "retry": {
            "max_retries": settings.retry.max_retries,
            "base_delay": settings.retry.base_delay,
            "max_delay": settings.retry.max_delay,
        },
    }
