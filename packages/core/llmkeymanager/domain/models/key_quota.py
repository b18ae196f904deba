"""KeyQuota data model for per-key usage accounting."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

QUOTA_WARNING_THRESHOLD = 0.8
QUOTA_CRITICAL_THRESHOLD = 0.95


class KeyQuota(BaseModel):
    """Running ledger entry for one key.

    ``limit`` is a token ceiling. ``None`` means the ceiling is unknown and
    the key is treated as unbounded until the provider reports one.
    """

    key_id: str = Field(..., min_length=1)
    limit: int | None = Field(default=None, description="Token ceiling for the window", ge=0)
    used: int = Field(default=0, description="Tokens used in the current window", ge=0)
    request_limit: int | None = Field(default=None, ge=0)
    requests_used: int = Field(default=0, ge=0)
    reset_time: datetime | None = Field(default=None, description="When the window resets")
    estimated_cost: float = Field(default=0.0, description="Estimated spend in USD", ge=0)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(validate_assignment=True)

    def remaining(self) -> float:
        """Tokens left in the window, or infinity if no ceiling is known."""
        if self.limit is None:
            return float("inf")
        return float(max(self.limit - self.used, 0))

    def is_exhausted(self) -> bool:
        """Whether a known ceiling has been reached."""
        if self.limit is not None and self.used >= self.limit:
            return True
        return self.request_limit is not None and self.requests_used >= self.request_limit

    def usage_percentage(self) -> float:
        """Fraction of the token ceiling consumed, 0.0 when unbounded."""
        if not self.limit:
            return 0.0
        return min(self.used / self.limit, 1.0)

    @property
    def is_warning(self) -> bool:
        return self.usage_percentage() >= QUOTA_WARNING_THRESHOLD

    @property
    def is_critical(self) -> bool:
        return self.usage_percentage() >= QUOTA_CRITICAL_THRESHOLD
