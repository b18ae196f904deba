"""Configuration file loader for YAML and JSON files."""

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from llmkeymanager.domain.models.config import LLMManagerConfig

CONFIG_FILE_ENV = "LLMKEYMANAGER_CONFIG_FILE"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Human-readable error message.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return error message with field name if available."""
        if self.field:
            return f"Configuration error in field '{self.field}': {self.message}"
        return self.message


class ConfigurationFileLoader:
    """Loads routing configuration from YAML or JSON files.

    The file holds up to three mappings: ``special_models`` (alias to model
    id), ``fallback_chains`` (capability tag to ordered model ids) and
    ``supported_model_types`` (model id to capability tags).

    Example file:
        ```yaml
        special_models:
          smart: gpt-4o
        fallback_chains:
          fast-chat: [gpt-4o-mini, claude-3-5-haiku-latest]
        ```
    """

    ALLOWED_SECTIONS = frozenset({"special_models", "fallback_chains", "supported_model_types"})

    def __init__(self, config_file_path: str | Path | None = None) -> None:
        """Initialize ConfigurationFileLoader.

        Args:
            config_file_path: Path to configuration file. If None, attempts to
                            load from LLMKEYMANAGER_CONFIG_FILE environment variable.
                            If not set, raises ConfigurationError.

        Raises:
            ConfigurationError: If no path is available or the file does not exist.
        """
        if config_file_path is None:
            config_file_path = os.getenv(CONFIG_FILE_ENV)
            if not config_file_path:
                raise ConfigurationError(
                    f"Configuration file path not provided and {CONFIG_FILE_ENV} "
                    "environment variable is not set"
                )

        self._config_path = Path(config_file_path)
        if not self._config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self._config_path}")

    @property
    def path(self) -> Path:
        return self._config_path

    def load(self) -> dict[str, Any]:
        """Load raw configuration data from file.

        Automatically detects file format (YAML or JSON) based on file extension.

        Raises:
            ConfigurationError: If file format is invalid or file cannot be parsed.
        """
        suffix = self._config_path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            return self._load_yaml()
        elif suffix == ".json":
            return self._load_json()
        else:
            raise ConfigurationError(
                f"Unsupported configuration file format: {suffix}. "
                "Supported formats: .yaml, .yml, .json"
            )

    def _load_yaml(self) -> dict[str, Any]:
        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
                if data is None:
                    return {}
                if not isinstance(data, dict):
                    raise ConfigurationError("YAML file must contain a dictionary/mapping")
                return data
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e

    def _load_json(self) -> dict[str, Any]:
        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
                if not isinstance(data, dict):
                    raise ConfigurationError("JSON file must contain an object")
                return data
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e

    def validate_structure(self, config: dict[str, Any]) -> None:
        """Validate the top-level structure of loaded data.

        Raises:
            ConfigurationError: On unknown sections or malformed entries.
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a dictionary")

        for key in config:
            if key not in self.ALLOWED_SECTIONS:
                raise ConfigurationError(
                    f"Unknown configuration key: '{key}'. "
                    f"Allowed keys: {', '.join(sorted(self.ALLOWED_SECTIONS))}",
                    field=key,
                )

        for section in self.ALLOWED_SECTIONS & set(config):
            if not isinstance(config[section], dict):
                raise ConfigurationError(
                    f"Configuration '{section}' must be a mapping", field=section
                )

        for alias, model_id in config.get("special_models", {}).items():
            if not isinstance(model_id, str) or not model_id.strip():
                raise ConfigurationError(
                    f"Alias '{alias}' must map to a non-empty model id",
                    field=f"special_models.{alias}",
                )

        for capability, chain in config.get("fallback_chains", {}).items():
            if not isinstance(chain, list) or not chain:
                raise ConfigurationError(
                    f"Fallback chain '{capability}' must be a non-empty list",
                    field=f"fallback_chains.{capability}",
                )

        for model_id, tags in config.get("supported_model_types", {}).items():
            if not isinstance(tags, list) or any(not isinstance(t, str) for t in tags):
                raise ConfigurationError(
                    f"Capabilities of '{model_id}' must be a list of strings",
                    field=f"supported_model_types.{model_id}",
                )

    def parse_config(self, config: dict[str, Any]) -> LLMManagerConfig:
        """Validate raw data and build an LLMManagerConfig.

        Raises:
            ConfigurationError: If the data is invalid.
        """
        self.validate_structure(config)
        try:
            return LLMManagerConfig(**config)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or None
            raise ConfigurationError(first["msg"], field=field) from e

    def load_config(self) -> LLMManagerConfig:
        """Load and parse the configuration file."""
        return self.parse_config(self.load())
