"""ClassifiedError data model and ErrorKind taxonomy."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Closed taxonomy every provider failure is normalized into."""

    RateLimit = "rate_limit"
    """Provider throttled the request (HTTP 429 or equivalent)."""

    Auth = "auth"
    """Credential rejected. Never retried automatically."""

    Server = "server"
    """Provider-side failure (5xx). Transient."""

    Network = "network"
    """Transport failure: timeout, connection reset, DNS. Transient."""

    Quota = "quota"
    """Quota or billing exhausted. Retried once the quota resets."""

    Unknown = "unknown"
    """Anything else. Transient with a conservative retry cap."""


class ClassifiedError(BaseModel):
    """Provider-independent description of one failed attempt.

    The Selection Engine and the availability state machine only ever see
    this shape, never the provider's native error object.
    """

    kind: ErrorKind = Field(..., description="Taxonomy bucket")
    message: str = Field(default="", description="Human readable message, secrets redacted")
    retry_after_ms: int | None = Field(
        default=None,
        description="Provider supplied retry hint in milliseconds",
        ge=0,
    )
    status_code: int | None = Field(default=None, description="HTTP status, if any")
    provider_id: str | None = Field(default=None)
    model_id: str | None = Field(default=None)
    quota_reset_at: datetime | None = Field(
        default=None,
        description="Known quota reset time, if the provider reported one",
    )

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    @property
    def is_retryable(self) -> bool:
        """Whether the failure may be retried automatically."""
        return self.kind != ErrorKind.Auth
