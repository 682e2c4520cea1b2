"""
Configuration management for ranchvault.

This module handles loading, validating, and saving configuration settings,
as well as encrypted storage of the blob store service key.
"""

from ranchvault.config.credentials import (
    CredentialError,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    blob_endpoint,
    resolve_blob_service_key,
)
from ranchvault.config.settings import (
    BlobStoreConfig,
    ConfigurationError,
    ExportConfig,
    RestoreConfig,
    RetryConfig,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    # Settings
    "Settings",
    "BlobStoreConfig",
    "ExportConfig",
    "RestoreConfig",
    "RetryConfig",
    "load_config",
    "save_config",
    "ConfigurationError",
    # Credentials
    "CredentialStore",
    "CredentialError",
    "CredentialStoreNotInitializedError",
    "CredentialStoreLockedError",
    "InvalidPassphraseError",
    "CredentialNotFoundError",
    "resolve_blob_service_key",
    "blob_endpoint",
]
