"""LLMManagerConfig: alias table, capability overrides and fallback chains."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LLMManagerConfig(BaseModel):
    """Process-wide routing configuration.

    Example:
        ```python
        config = LLMManagerConfig(
            special_models={"smart": "gpt-4o"},
            fallback_chains={"fast": ["gpt-4o-mini", "claude-3-5-haiku-latest"]},
        )
        merged = config.merge({"special_models": {"cheap": "gemini-1.5-flash"}})
        ```
    """

    supported_model_types: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Capability overrides keyed by model id",
    )
    special_models: dict[str, str] = Field(
        default_factory=dict,
        description="Alias table mapping an alias to one concrete model id",
    )
    fallback_chains: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Ordered model ids per capability tag",
    )

    model_config = ConfigDict(frozen=True)

    @field_validator("fallback_chains")
    @classmethod
    def validate_chains(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for capability, chain in v.items():
            if not chain:
                raise ValueError(f"Fallback chain '{capability}' must list at least one model")
            if any(not isinstance(m, str) or not m.strip() for m in chain):
                raise ValueError(f"Fallback chain '{capability}' contains an empty model id")
        return v

    def merge(self, other: "LLMManagerConfig | dict[str, Any]") -> "LLMManagerConfig":
        """Return a new config where entries from ``other`` override this one per map."""
        if isinstance(other, dict):
            other = LLMManagerConfig(**other)
        return LLMManagerConfig(
            supported_model_types={**self.supported_model_types, **other.supported_model_types},
            special_models={**self.special_models, **other.special_models},
            fallback_chains={**self.fallback_chains, **other.fallback_chains},
        )
