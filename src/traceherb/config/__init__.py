"""Application configuration helpers."""

from __future__ import annotations

from .env import float_env_var, int_env_var, optional_env_var, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError
from .http_resilience import CacheConfig, RateLimit, ResilienceConfig, RetryPolicy
from .logging import configure_logging
from .portals import PORTAL_ROLES, PortalConfig, get_portal_config, get_portal_configs
from .storage import (
    DatabaseConfig,
    StorageConfig,
    get_database_config,
    get_database_uri,
    get_http_cache_path,
    get_storage_config,
)
from .sync import SyncConfig, get_sync_config

__all__ = [
    "PORTAL_ROLES",
    "CacheConfig",
    "ConfigurationError",
    "DatabaseConfig",
    "MissingConfigurationError",
    "PortalConfig",
    "RateLimit",
    "ResilienceConfig",
    "RetryPolicy",
    "StorageConfig",
    "SyncConfig",
    "configure_logging",
    "float_env_var",
    "get_database_config",
    "get_database_uri",
    "get_http_cache_path",
    "get_portal_config",
    "get_portal_configs",
    "get_storage_config",
    "get_sync_config",
    "int_env_var",
    "optional_env_var",
    "require_env_vars",
]
