"""Configuration settings using pydantic-settings."""

from typing import Any

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ManagerSettings(BaseSettings):
    """Configuration settings for LLMKeyManager.

    Settings can be loaded from environment variables or passed as keyword
    arguments. Environment variables are prefixed with 'LLMKEYMANAGER_'
    (e.g., LLMKEYMANAGER_DATABASE_URL=sqlite+aiosqlite:///./keys.db).

    Example:
        ```python
        # From environment variables
        settings = ManagerSettings()

        # From dictionary
        settings = ManagerSettings.from_dict({"default_timeout_seconds": 30})
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="LLMKEYMANAGER_",
        case_sensitive=False,
        extra="ignore",
    )

    # StateStore configuration
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy async URL of the SQLite store; in-memory store if unset",
    )
    max_usage_entries: int = Field(
        default=1000,
        description="Usage records to retain; 0 for unlimited",
    )
    max_error_entries: int = Field(
        default=500,
        description="Error records to retain; 0 for unlimited",
    )

    # Vault configuration
    master_key: str | None = Field(
        default=None,
        description="Base64 32-byte platform master key used when unlocking without passphrase",
        repr=False,
    )
    master_key_file: str | None = Field(
        default=None,
        description="Path of the platform key file, created with mode 0600 on first use",
    )
    kdf_iterations: int = Field(
        default=600_000,
        description="PBKDF2-HMAC-SHA256 iterations for passphrase unlock",
        ge=1,
    )

    # SelectionEngine configuration
    default_timeout_seconds: float = Field(
        default=60.0,
        description="Per-attempt timeout when the request sets none",
        gt=0,
    )

    # Availability backoff configuration
    base_backoff_ms: int = Field(default=1000, ge=1)
    max_backoff_ms: int = Field(default=300_000, ge=1)
    backoff_jitter: float = Field(
        default=0.2,
        description="Relative jitter applied to computed backoff delays",
        ge=0,
        lt=1,
    )
    max_transient_retries: int = Field(
        default=5,
        description="Consecutive Server/Network failures before a pair is disabled",
        ge=1,
    )
    max_unknown_retries: int = Field(
        default=3,
        description="Consecutive Unknown failures before a pair is disabled",
        ge=1,
    )
    quota_unknown_reset_hours: float = Field(
        default=24.0,
        description="Cooldown after a quota failure with no known reset time",
        gt=0,
    )

    # HealthProber configuration
    revalidation_interval_hours: float = Field(
        default=12.0,
        description="Re-probe keys whose last verification is older than this",
        gt=0,
    )

    # Observability configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="json",
        description="Log renderer: json or console",
    )

    # Routing configuration
    config_file: str | None = Field(
        default=None,
        description="YAML or JSON file with aliases, capability overrides and fallback chains",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(sorted(_LOG_LEVELS))}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.strip().lower()
        if fmt not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return fmt

    @field_validator("max_backoff_ms")
    @classmethod
    def validate_max_backoff(cls, v: int, info: ValidationInfo) -> int:
        base = info.data.get("base_backoff_ms")
        if base is not None and v < base:
            raise ValueError("max_backoff_ms must not be smaller than base_backoff_ms")
        return v

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "ManagerSettings":
        """Create settings from a dictionary.

        Args:
            config: Dictionary with configuration values.

        Returns:
            ManagerSettings instance.
        """
        return cls(**config)
