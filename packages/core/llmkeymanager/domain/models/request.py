"""Normalized chat/embedding requests and responses exchanged with adapters."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from llmkeymanager.domain.models.key_record import RateLimitData


class ChatMessage(BaseModel):
    """A single chat message."""

    role: Literal["system", "user", "assistant", "tool"] = Field(...)
    content: str = Field(...)


class LogicalRequest(BaseModel):
    """Fields shared by every request routed through the Selection Engine.

    ``model`` may be an explicit model id, an alias from the alias table, or
    a capability tag that expands to a fallback chain.
    """

    model: str = Field(..., description="Model id, alias or capability tag", min_length=1)
    provider_id: str | None = Field(
        default=None,
        description="Restrict candidates to a single provider",
    )
    timeout_seconds: float | None = Field(
        default=None,
        description="Per-attempt timeout; the manager default applies when unset",
        gt=0,
    )
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra provider parameters passed through to the adapter",
    )

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("provider_id")
    @classmethod
    def normalize_provider_id(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else v


class ChatRequest(LogicalRequest):
    """Normalized chat completion request."""

    messages: list[ChatMessage] = Field(..., min_length=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)


class EmbeddingRequest(LogicalRequest):
    """Normalized embedding request."""

    input: list[str] = Field(..., min_length=1)


class TokenUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderResponse(BaseModel):
    """Fields every adapter response carries.

    Adapters fill the provider data; the Selection Engine fills the
    routing annotations (key_id, model_id, attempts, latency_ms).
    """

    usage: TokenUsage = Field(default_factory=TokenUsage)
    rate_limits: RateLimitData | None = Field(
        default=None,
        description="Rate-limit headers observed on this response, if any",
    )
    key_id: str | None = Field(default=None)
    model_id: str | None = Field(default=None)
    attempts: int = Field(default=0, description="Attempts made for this request", ge=0)
    latency_ms: float = Field(default=0.0, ge=0)
    raw: dict[str, Any] = Field(default_factory=dict, description="Provider payload")

    model_config = ConfigDict(protected_namespaces=())


class ChatResponse(ProviderResponse):
    content: str = Field(default="")
    finish_reason: str | None = Field(default=None)


class EmbeddingResponse(ProviderResponse):
    embeddings: list[list[float]] = Field(default_factory=list)
