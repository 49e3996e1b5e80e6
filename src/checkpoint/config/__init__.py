"""
Configuration management for Checkpoint.

This module handles loading, validating, and saving configuration settings,
as well as encrypted storage of database passwords.
"""

from checkpoint.config.credentials import (
    CredentialError,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    database_env_var,
    database_service,
    resolve_database_password,
)
from checkpoint.config.settings import (
    DEFAULT_CONFIG_DIR,
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
    "DEFAULT_CONFIG_DIR",
    # Credentials
    "CredentialStore",
    "CredentialError",
    "CredentialStoreNotInitializedError",
    "CredentialStoreLockedError",
    "InvalidPassphraseError",
    "CredentialNotFoundError",
    "database_service",
    "database_env_var",
    "resolve_database_password",
]
