"""Per (key, model) availability metadata and the ModelState enum.

ModelState is the one definition of availability states. The state machine in
``llmkeymanager.domain.components.availability_state_machine`` owns the
transition rules; every other module refers to these values.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from llmkeymanager.domain.models.key_record import RateLimitData


class ModelState(str, Enum):
    """Availability state of one (key, model) pair."""

    Untested = "untested"
    """Never probed or used. Treated optimistically as eligible."""

    Probing = "probing"
    """A health probe is in flight."""

    Available = "available"
    """Last probe or request succeeded."""

    Unavailable = "unavailable"
    """Just failed; resolved immediately to CoolingDown or PermanentlyDisabled."""

    CoolingDown = "cooling_down"
    """Transient failure, waiting for next_retry_at."""

    PermanentlyDisabled = "permanently_disabled"
    """Terminal until the key is re-enabled by an operator."""


class VerifiedModelMetadata(BaseModel):
    """Health and capability record for one (key, model) pair.

    ``is_available`` is derived from ``state`` and cannot drift from it.
    ``next_retry_at`` is present exactly when the pair is cooling down.
    Instances are replaced rather than mutated field by field so the
    invariants are checked on every change.
    """

    key_id: str = Field(..., description="Owning key", min_length=1)
    model_id: str = Field(..., min_length=1)
    provider_id: str = Field(..., min_length=1)
    state: ModelState = Field(default=ModelState.Untested)
    last_checked_at: datetime | None = Field(default=None)
    model_priority: int = Field(default=1, ge=1, le=5)
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: datetime | None = Field(
        default=None,
        description="Earliest time of the next automatic retry; None means no auto-retry",
    )
    last_error_code: int | None = Field(default=None)
    error_message: str | None = Field(default=None)
    quota_remaining: int | None = Field(default=None, ge=0)
    quota_reset_at: datetime | None = Field(default=None)
    capabilities: list[str] = Field(default_factory=list)
    rate_limits: RateLimitData | None = Field(default=None)
    context_window: int | None = Field(default=None, ge=0)
    max_output: int | None = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(
        validate_assignment=True,
        str_strip_whitespace=True,
        protected_namespaces=(),
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_available(self) -> bool:
        """Whether the pair is in the accepting state."""
        return self.state == ModelState.Available

    @model_validator(mode="after")
    def validate_retry_schedule(self) -> "VerifiedModelMetadata":
        """Keep next_retry_at consistent with the state."""
        if self.state == ModelState.CoolingDown and self.next_retry_at is None:
            raise ValueError("CoolingDown requires next_retry_at")
        if self.state != ModelState.CoolingDown and self.next_retry_at is not None:
            raise ValueError(f"next_retry_at must be None in state {self.state.value}")
        return self

    def evolve(self, **changes) -> "VerifiedModelMetadata":
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump(exclude={"is_available"})
        data.update(changes)
        return VerifiedModelMetadata(**data)
