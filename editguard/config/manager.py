"""Configuration manager with hot-reload support."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from editguard.config.constants import CONFIG_FILE_NAME
from editguard.config.defaults import get_default_config
from editguard.config.providers import ConfigProvider, LocalFileConfigProvider
from editguard.config.schema import SnapshotConfig, deep_merge, validate_config
from editguard.utils.logger import get_logger

logger = get_logger("config.manager")


class ConfigManager:
    """Holds the live configuration dict and notifies listeners on change."""

    def __init__(self, provider: ConfigProvider):
        self.provider = provider
        self._config: dict[str, Any] = {}
        self._change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def initialize(self) -> None:
        """Load the initial configuration."""
        self._config = await self.provider.load()
        self._loaded = True
        logger.debug("Configuration initialized", config_keys=list(self._config))

    async def start_watching(self) -> None:
        """Start watching for configuration changes."""
        await self.provider.watch(self._on_config_changed)

    async def stop_watching(self) -> None:
        """Stop watching for configuration changes."""
        await self.provider.stop_watching()

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key."""
        return self._config.get(key, default)

    def get_all(self) -> dict[str, Any]:
        """Get the entire configuration dictionary."""
        return self._config.copy()

    def typed(self) -> SnapshotConfig:
        """Validate the live dict into a SnapshotConfig.

        Raises:
            ConfigValidationError: If the merged configuration is invalid.
        """
        return validate_config(self._config)

    async def update(self, updates: dict[str, Any]) -> None:
        """Update multiple configuration values at once and persist them."""
        candidate = deep_merge(self._config, updates)
        validate_config(candidate)
        self._config = candidate

        if isinstance(self.provider, LocalFileConfigProvider):
            user_cfg = deep_merge(self.provider.user_config, updates)
            await self.provider.save(user_cfg)
        else:
            await self.provider.save(self._config)

        logger.info("Configuration updated", keys=list(updates.keys()))
        self._notify_callbacks()

    def register_change_callback(
        self, callback: Callable[[dict[str, Any]], None]
    ) -> None:
        """Register a callback to be called when configuration changes."""
        self._change_callbacks.append(callback)

    def _on_config_changed(self, new_config: dict[str, Any]) -> None:
        """Internal handler for configuration changes from provider."""
        old_config = self._config.copy()
        self._config = new_config

        changed_keys = [
            key
            for key in set(old_config) | set(new_config)
            if old_config.get(key) != new_config.get(key)
        ]

        if changed_keys:
            logger.info("Configuration reloaded", changed_keys=sorted(changed_keys))
        else:
            logger.debug("Configuration reloaded with no changes")

        self._notify_callbacks()

    def _notify_callbacks(self) -> None:
        """Notify all registered callbacks of configuration change."""
        for callback in self._change_callbacks:
            try:
                callback(self._config.copy())
            except Exception as e:
                logger.error(
                    "Error in config change callback",
                    error=str(e),
                    callback=getattr(callback, "__name__", repr(callback)),
                )


def create_config_manager(
    state_dir: Path,
    *,
    overrides: dict[str, Any] | None = None,
) -> ConfigManager:
    """Create a config manager for a workspace bookkeeping directory.

    Args:
        state_dir: Directory holding the workspace config.json
        overrides: Values layered over the defaults before the file is read
    """
    defaults = deep_merge(get_default_config(), overrides or {})
    provider = LocalFileConfigProvider(
        state_dir / CONFIG_FILE_NAME, defaults=defaults, create_if_missing=False
    )
    return ConfigManager(provider)
