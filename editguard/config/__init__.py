"""Configuration module for editguard."""

from .defaults import get_default_config
from .manager import ConfigManager, create_config_manager
from .providers import ConfigProvider, LocalFileConfigProvider
from .schema import (
    ConfigValidationError,
    SnapshotConfig,
    deep_merge,
    normalize_strategy,
    validate_config,
)

__all__ = [
    "ConfigManager",
    "ConfigProvider",
    "ConfigValidationError",
    "LocalFileConfigProvider",
    "SnapshotConfig",
    "create_config_manager",
    "deep_merge",
    "get_default_config",
    "normalize_strategy",
    "validate_config",
]
