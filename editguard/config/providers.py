"""Configuration providers - abstract and concrete implementations."""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from editguard.config.schema import deep_merge, normalize_config
from editguard.utils.logger import get_logger

logger = get_logger("config.providers")


class ConfigProvider(ABC):
    """Abstract base class for configuration providers."""

    @abstractmethod
    async def load(self) -> dict[str, Any]:
        """Load configuration from the provider."""
        pass

    @abstractmethod
    async def save(self, config: dict[str, Any]) -> None:
        """Save configuration to the provider."""
        pass

    @abstractmethod
    async def watch(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Watch for configuration changes and call callback when changed."""
        pass

    @abstractmethod
    async def stop_watching(self) -> None:
        """Stop watching for configuration changes."""
        pass


class LocalFileConfigProvider(ConfigProvider):
    """Configuration provider that stores config in a local JSON file.

    The workspace config normally does not exist; with ``create_if_missing``
    off the provider serves defaults until a user writes the file.
    """

    def __init__(
        self,
        config_path: Path,
        defaults: dict[str, Any] | None = None,
        *,
        create_if_missing: bool = True,
    ):
        self.config_path = config_path
        self.defaults = defaults or {}
        self._observer: Any = None  # Observer from watchdog
        self._callback: Callable[[dict[str, Any]], None] | None = None
        self._last_mtime: float | None = None
        self._last_valid_config: dict[str, Any] | None = None
        # Original user config without defaults
        self._user_config: dict[str, Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.create_if_missing = create_if_missing

    @property
    def user_config(self) -> dict[str, Any]:
        return dict(self._user_config or {})

    async def load(self) -> dict[str, Any]:
        """Load configuration from file, merged over defaults."""
        if not self.config_path.exists():
            if not self.create_if_missing:
                logger.debug(
                    "Config file not found, using defaults",
                    path=str(self.config_path),
                )
                merged = self.defaults.copy()
                self._last_valid_config = merged.copy()
                self._user_config = {}
                return merged
            logger.info(
                "Config file not found, creating with defaults",
                path=str(self.config_path),
            )
            await self.save({})
            return self.defaults.copy()

        try:
            content = self.config_path.read_text(encoding="utf-8")
            config = json.loads(content)
            self._last_mtime = self.config_path.stat().st_mtime

            merged = normalize_config(deep_merge(self.defaults, config))

            self._last_valid_config = merged.copy()
            self._user_config = config.copy()

            logger.debug("Config loaded from file", path=str(self.config_path))
            return merged
        except json.JSONDecodeError as e:
            logger.error(
                "Invalid JSON syntax in config file",
                error=str(e),
                line=e.lineno,
                column=e.colno,
                path=str(self.config_path),
            )
            return self._fallback_config()
        except (ValueError, AttributeError) as exc:
            logger.error(
                "Invalid configuration structure",
                error=str(exc),
                path=str(self.config_path),
            )
            return self._fallback_config()
        except OSError as e:
            logger.error(
                "Failed to load config",
                error=str(e),
                path=str(self.config_path),
            )
            return self._fallback_config()

    def _fallback_config(self) -> dict[str, Any]:
        # Return last valid config if available, otherwise defaults
        if self._last_valid_config is not None:
            logger.warning(
                "Using last valid configuration", path=str(self.config_path)
            )
            return self._last_valid_config.copy()
        logger.warning(
            "No previous valid config, using defaults", path=str(self.config_path)
        )
        return self.defaults.copy()

    async def save(self, config: dict[str, Any]) -> None:
        """Atomically save user configuration to file."""
        user_config = normalize_config(config)
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_suffix(".tmp")
            content = json.dumps(user_config, ensure_ascii=False, indent=2)
            tmp_path.write_text(content, encoding="utf-8")
            tmp_path.replace(self.config_path)

            self._last_mtime = self.config_path.stat().st_mtime
            self._user_config = user_config.copy()
            self._last_valid_config = deep_merge(self.defaults, user_config)
            logger.debug("Config saved to file", path=str(self.config_path))
        except OSError as e:
            logger.error(
                "Failed to save config",
                error=str(e),
                path=str(self.config_path),
            )
            raise

    async def watch(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Watch for file changes and reload configuration."""
        self._callback = callback
        # Store reference to the event loop for thread-safe task creation
        self._loop = asyncio.get_running_loop()

        class ConfigFileHandler(FileSystemEventHandler):
            def __init__(self, provider: LocalFileConfigProvider):
                self.provider = provider

            def _handle_event(self, event):
                if event.is_directory:
                    return

                if (
                    Path(event.src_path).resolve()
                    != self.provider.config_path.resolve()
                ):
                    return

                # Skip duplicate events for an unchanged mtime
                try:
                    current_mtime = self.provider.config_path.stat().st_mtime
                    if self.provider._last_mtime == current_mtime:
                        return
                except FileNotFoundError:
                    return

                logger.debug("Config file changed, reloading", path=event.src_path)

                # Schedule coroutine in the main event loop from this thread
                if self.provider._loop and not self.provider._loop.is_closed():
                    asyncio.run_coroutine_threadsafe(
                        self.provider._handle_file_change(), self.provider._loop
                    )

            def on_modified(self, event):
                self._handle_event(event)

            def on_created(self, event):
                self._handle_event(event)

        self._observer = Observer()
        event_handler = ConfigFileHandler(self)

        # Watch the parent directory (watching file directly doesn't work on all systems)
        watch_dir = self.config_path.parent
        watch_dir.mkdir(parents=True, exist_ok=True)
        self._observer.schedule(event_handler, str(watch_dir), recursive=False)
        self._observer.start()

        logger.info("Started watching config file", path=str(self.config_path))

    async def _handle_file_change(self) -> None:
        """Internal handler for file changes."""
        try:
            new_config = await self.load()
            if self._callback:
                self._callback(new_config)
        except Exception as e:
            logger.error("Error handling config file change", error=str(e))

    async def stop_watching(self) -> None:
        """Stop watching for file changes."""
        if self._observer:
            try:
                loop = asyncio.get_running_loop()
                await asyncio.wait_for(
                    loop.run_in_executor(None, self._observer.stop), timeout=2.0
                )
                await asyncio.wait_for(
                    loop.run_in_executor(
                        None, lambda: self._observer.join(timeout=1.0)
                    ),
                    timeout=2.0,
                )
                logger.info("Stopped watching config file")
            except (TimeoutError, asyncio.CancelledError) as e:
                logger.debug("Observer stop interrupted", reason=type(e).__name__)
                self._observer.stop()
            finally:
                self._observer = None
