"""Append-only usage and error log records."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from llmkeymanager.domain.models.classified_error import ErrorKind


class UsageDataPoint(BaseModel):
    """Outcome of one attempt that reached the provider and returned."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    key_id: str = Field(..., min_length=1)
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    latency_ms: float = Field(default=0.0, ge=0)
    cost: float = Field(default=0.0, description="Estimated cost in USD", ge=0)
    success: bool = Field(default=True)
    attempt: int = Field(default=1, description="1-based attempt number in its request", ge=1)

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ErrorLogEntry(BaseModel):
    """Classified failure of one attempt."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    key_id: str = Field(..., min_length=1)
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    error_kind: ErrorKind = Field(...)
    status_code: int | None = Field(default=None)
    message: str = Field(default="", description="Failure message with secrets redacted")
    retry_after_ms: int | None = Field(default=None, ge=0)
    attempt: int = Field(default=1, ge=1)

    model_config = ConfigDict(frozen=True, protected_namespaces=())
