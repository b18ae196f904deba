"""Configuration manager for runtime routing configuration."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.models.config import LLMManagerConfig
from llmkeymanager.domain.models.model_catalog import DEFAULT_CONFIG
from llmkeymanager.infrastructure.config.file_loader import (
    ConfigurationError,
    ConfigurationFileLoader,
)


class ConfigurationSnapshot:
    """Represents a snapshot of configuration state for versioning and rollback."""

    def __init__(
        self,
        version: int,
        config: LLMManagerConfig,
        overrides: LLMManagerConfig,
        file_config: LLMManagerConfig | None,
        timestamp: datetime,
    ) -> None:
        """Initialize configuration snapshot.

        Args:
            version: Version number for this snapshot.
            config: Effective configuration at this version.
            overrides: Runtime overrides at this version.
            file_config: Configuration read from file at this version.
            timestamp: Timestamp when snapshot was created.
        """
        self.version = version
        self.config = config
        self.overrides = overrides
        self.file_config = file_config
        self.timestamp = timestamp


class ConfigurationManager:
    """Holds the active LLMManagerConfig with reload and rollback.

    The effective configuration is layered: built-in defaults, then the
    configuration file (if any), then runtime overrides from configure().
    Every change creates a new version; readers always see a complete,
    validated config object.

    Example:
        ```python
        manager = ConfigurationManager(config_file_path="routing.yaml")
        await manager.load_configuration()
        await manager.configure({"special_models": {"smart": "claude-3-5-sonnet-latest"}})
        config = manager.get_config()
        await manager.rollback()
        ```
    """

    def __init__(
        self,
        base_config: LLMManagerConfig = DEFAULT_CONFIG,
        config_file_path: str | Path | None = None,
        observability_manager: ObservabilityManager | None = None,
        max_history: int = 10,
    ) -> None:
        """Initialize ConfigurationManager.

        Args:
            base_config: Defaults under every other layer.
            config_file_path: Optional YAML/JSON file with routing configuration.
            observability_manager: Optional ObservabilityManager for logging and events.
            max_history: Maximum number of configuration snapshots to keep for rollback.

        Raises:
            ConfigurationError: If the configuration file does not exist.
        """
        self._file_loader = (
            ConfigurationFileLoader(config_file_path=config_file_path)
            if config_file_path is not None
            else None
        )
        self._observability = observability_manager
        self._max_history = max_history

        self._base = base_config
        self._file_config: LLMManagerConfig | None = None
        self._overrides = LLMManagerConfig()
        self._config = base_config

        self._history: list[ConfigurationSnapshot] = []
        self._current_version = 0
        self._add_to_history(self._snapshot())

        self._lock = asyncio.Lock()

    @property
    def current_version(self) -> int:
        return self._current_version

    def get_config(self) -> LLMManagerConfig:
        """Return the effective configuration."""
        return self._config

    def _compose(
        self, file_config: LLMManagerConfig | None, overrides: LLMManagerConfig
    ) -> LLMManagerConfig:
        config = self._base
        if file_config is not None:
            config = config.merge(file_config)
        return config.merge(overrides)

    def _snapshot(self) -> ConfigurationSnapshot:
        return ConfigurationSnapshot(
            version=self._current_version,
            config=self._config,
            overrides=self._overrides,
            file_config=self._file_config,
            timestamp=datetime.now(timezone.utc),
        )

    def _apply(
        self, file_config: LLMManagerConfig | None, overrides: LLMManagerConfig
    ) -> LLMManagerConfig:
        self._file_config = file_config
        self._overrides = overrides
        self._config = self._compose(file_config, overrides)
        self._current_version += 1
        self._add_to_history(self._snapshot())
        return self._config

    async def configure(self, overrides: LLMManagerConfig | dict[str, Any]) -> LLMManagerConfig:
        """Merge runtime overrides into the active configuration.

        Entries in each map replace entries with the same name; other
        entries are kept.

        Raises:
            ConfigurationError: If the overrides are invalid.
        """
        async with self._lock:
            try:
                new_overrides = self._overrides.merge(overrides)
            except PydanticValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(part) for part in first["loc"]) or None
                raise ConfigurationError(first["msg"], field=field) from e
            config = self._apply(self._file_config, new_overrides)

        await self._emit("configuration_updated", {"version": self._current_version})
        return config

    async def load_configuration(self) -> LLMManagerConfig:
        """Load the configuration file and apply it.

        The file is validated before anything changes; on error the active
        configuration stays as it was.

        Raises:
            ConfigurationError: If no file is configured or it is invalid.
        """
        if self._file_loader is None:
            raise ConfigurationError("No configuration file configured")

        async with self._lock:
            try:
                file_config = self._file_loader.load_config()
            except ConfigurationError:
                raise
            except Exception as e:
                raise ConfigurationError(f"Failed to load configuration: {e}") from e
            config = self._apply(file_config, self._overrides)

        await self._emit(
            "configuration_loaded",
            {
                "version": self._current_version,
                "aliases_count": len(config.special_models),
                "chains_count": len(config.fallback_chains),
            },
        )
        return config

    async def reload(self) -> LLMManagerConfig:
        """Re-read the configuration file (hot reload)."""
        return await self.load_configuration()

    async def rollback(self, version: int | None = None) -> LLMManagerConfig:
        """Rollback configuration to a previous version.

        Args:
            version: Version number to rollback to. If None, rolls back to previous version.

        Returns:
            The restored configuration. The rollback itself becomes a new version.

        Raises:
            ConfigurationError: If version not found.
        """
        async with self._lock:
            if version is None:
                if len(self._history) < 2:
                    raise ConfigurationError("No previous version available for rollback")
                target = self._history[-2]
            else:
                target = next((s for s in self._history if s.version == version), None)
                if target is None:
                    raise ConfigurationError(f"Configuration version {version} not found")
            config = self._apply(target.file_config, target.overrides)

        await self._emit(
            "configuration_rollback",
            {"version": self._current_version, "restored_version": target.version},
        )
        return config

    def get_history(self) -> list[dict[str, Any]]:
        """Get configuration history, oldest first."""
        return [
            {
                "version": snapshot.version,
                "timestamp": snapshot.timestamp.isoformat(),
                "aliases_count": len(snapshot.config.special_models),
                "chains_count": len(snapshot.config.fallback_chains),
            }
            for snapshot in self._history
        ]

    def _add_to_history(self, snapshot: ConfigurationSnapshot) -> None:
        """Add snapshot to history, maintaining max_history limit."""
        self._history.append(snapshot)
        # Keep only last max_history snapshots
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]

    async def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._observability is None:
            return
        try:
            await self._observability.emit_event(
                event_type=event_type,
                payload=payload,
                metadata={"timestamp": datetime.now(timezone.utc).isoformat()},
            )
        except Exception as e:
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"event_type": event_type},
            )
