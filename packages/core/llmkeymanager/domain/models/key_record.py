"""KeyRecord data model, key enums and provider rate-limit snapshots."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class KeyPriority(str, Enum):
    """Operator-assigned priority of a key, used to order candidates."""

    High = "high"
    Medium = "medium"
    Low = "low"

    @property
    def rank(self) -> int:
        """Sort rank where a lower number is tried first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {KeyPriority.High: 0, KeyPriority.Medium: 1, KeyPriority.Low: 2}


class KeyVerificationStatus(str, Enum):
    """Result of the most recent verification of a key as a whole."""

    Untested = "untested"
    """Key was added but never probed."""

    Testing = "testing"
    """A probe for this key is in flight."""

    Valid = "valid"
    """Last probe succeeded."""

    Invalid = "invalid"
    """Provider rejected the credential (authentication failure)."""

    RetryScheduled = "retry_scheduled"
    """Last probe failed transiently; another probe is due at next_retry_at."""


class RateLimitWindow(BaseModel):
    """One rate-limit window as reported by provider headers."""

    limit: int | None = Field(default=None, description="Window ceiling", ge=0)
    remaining: int | None = Field(default=None, description="Units left in window", ge=0)
    reset: str | None = Field(
        default=None,
        description="Reset hint: a duration such as '6m0s' or an RFC 3339 timestamp",
    )


class RateLimitData(BaseModel):
    """Snapshot of request and token rate limits returned by a provider."""

    requests: RateLimitWindow = Field(default_factory=RateLimitWindow)
    tokens: RateLimitWindow = Field(default_factory=RateLimitWindow)
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the snapshot was taken",
    )


class KeyRecord(BaseModel):
    """A stored provider credential plus its health and usage metadata.

    Only the ciphertext of the secret is held here. The plaintext never
    touches this model; it exists solely inside a Vault decrypt scope.
    """

    id: str = Field(..., description="Opaque stable identifier", min_length=1)
    provider_id: str = Field(..., description="Provider this key belongs to", min_length=1)
    label: str = Field(default="", description="Human readable label")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_used: datetime | None = Field(default=None, description="Last successful use")
    usage_count: int = Field(default=0, ge=0)
    is_revoked: bool = Field(default=False, description="Logically destroyed, kept for audit")
    is_enabled: bool = Field(default=True)
    is_corrupt: bool = Field(
        default=False,
        description="Ciphertext failed authentication; the key cannot be used until re-added",
    )
    priority: KeyPriority = Field(default=KeyPriority.Medium)
    average_latency: float = Field(
        default=0.0,
        description="Rolling average latency in milliseconds; 0 means unknown",
        ge=0,
    )
    verification_status: KeyVerificationStatus = Field(default=KeyVerificationStatus.Untested)
    tier: str | None = Field(default=None, description="Provider account tier, if detected")
    rate_limits: RateLimitData | None = Field(default=None)
    retry_after: int | None = Field(
        default=None,
        description="Provider supplied retry hint in milliseconds from the last failure",
        ge=0,
    )
    next_retry_at: datetime | None = Field(default=None)
    last_verified_at: datetime | None = Field(default=None)
    encrypted_secret: str = Field(..., description="Base64 AES-GCM ciphertext", min_length=1)
    nonce: str = Field(..., description="Base64 initialization vector", min_length=1)
    fingerprint: str = Field(..., description="SHA-256 hex digest of the plaintext", min_length=1)

    model_config = ConfigDict(
        frozen=False,
        validate_assignment=True,
        str_strip_whitespace=True,
    )

    @field_validator("provider_id")
    @classmethod
    def validate_provider_id(cls, v: str) -> str:
        """Normalize provider ID."""
        if len(v) > 100:
            raise ValueError("Provider ID must be 100 characters or less")
        return v.strip().lower()

    @property
    def is_usable(self) -> bool:
        """Whether the key may take part in selection at all."""
        return self.is_enabled and not self.is_revoked and not self.is_corrupt

    def public_view(self) -> dict:
        """Metadata without the ciphertext, for dashboards and exports to UI."""
        return self.model_dump(exclude={"encrypted_secret", "nonce"})

    def __repr__(self) -> str:
        """String representation that never exposes the ciphertext."""
        return (
            f"KeyRecord(id={self.id!r}, provider_id={self.provider_id!r}, "
            f"label={self.label!r}, priority={self.priority.value}, "
            f"usage_count={self.usage_count}, is_revoked={self.is_revoked})"
        )
