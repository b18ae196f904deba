"""StateTransition data model for the availability audit trail."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StateTransition(BaseModel):
    """One availability state change of a (key, model) pair.

    Recorded for every transition so operators can reconstruct why a key
    was cooled down or disabled.
    """

    key_id: str = Field(..., description="Key the pair belongs to", min_length=1)
    model_id: str = Field(..., description="Model of the pair", min_length=1)
    from_state: str = Field(..., description="Previous state value")
    to_state: str = Field(..., description="New state value")
    transition_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Timestamp when transition occurred",
    )
    trigger: str = Field(
        ...,
        description="Event that caused the transition (probe_succeeded, traffic_failed, ...)",
        min_length=1,
    )
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context about transition",
    )

    model_config = ConfigDict(
        frozen=True,  # Immutable audit trail
        validate_assignment=True,
        protected_namespaces=(),
    )
