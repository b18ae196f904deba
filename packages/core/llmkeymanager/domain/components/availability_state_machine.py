"""Availability state machine for (key, model) pairs.

The machine is pure: it takes the current VerifiedModelMetadata, an event
and the current time, and returns the next metadata plus the list of state
changes it went through. Persistence, locking and events live in
AvailabilityManager.

Transition table:

    Untested | Available | CoolingDown  --ProbeStarted-->        Probing
    any non-terminal                    --*Succeeded-->          Available
    any non-terminal                    --*Failed(kind)-->       Unavailable
    Unavailable                         --(retryable)-->         CoolingDown
    Unavailable                         --(Auth | ceiling)-->    PermanentlyDisabled
    any                                 --ManualReset-->         Untested

PermanentlyDisabled ignores every event except ManualReset.
"""

import random
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.verified_model import ModelState, VerifiedModelMetadata


class TransitionEvent(str, Enum):
    """Events that drive the availability state machine."""

    ProbeStarted = "probe_started"
    ProbeSucceeded = "probe_succeeded"
    ProbeFailed = "probe_failed"
    TrafficSucceeded = "traffic_succeeded"
    TrafficFailed = "traffic_failed"
    ManualReset = "manual_reset"

    @property
    def is_failure(self) -> bool:
        return self in (TransitionEvent.ProbeFailed, TransitionEvent.TrafficFailed)

    @property
    def is_success(self) -> bool:
        return self in (TransitionEvent.ProbeSucceeded, TransitionEvent.TrafficSucceeded)


class InvalidTransitionError(Exception):
    """Raised when an event is applied without the data it requires."""

    pass


class BackoffPolicy(BaseModel):
    """Retry scheduling parameters."""

    base_delay_ms: int = Field(default=1000, ge=1)
    max_delay_ms: int = Field(default=5 * 60 * 1000, ge=1)
    jitter: float = Field(default=0.2, ge=0, lt=1)
    quota_unknown_reset_ms: int = Field(default=24 * 60 * 60 * 1000, ge=1)
    max_transient_retries: int = Field(
        default=5,
        description="Server/Network failures tolerated before permanent disable",
        ge=0,
    )
    max_unknown_retries: int = Field(
        default=3,
        description="Unknown failures tolerated before permanent disable",
        ge=0,
    )

    model_config = ConfigDict(frozen=True)


class StateChange(BaseModel):
    from_state: ModelState
    to_state: ModelState

    model_config = ConfigDict(frozen=True)


class TransitionResult(BaseModel):
    """Outcome of applying one event."""

    metadata: VerifiedModelMetadata
    changes: list[StateChange] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


class AvailabilityStateMachine:
    """Transition rules and backoff policy for VerifiedModelMetadata.

    Example:
        ```python
        machine = AvailabilityStateMachine()
        result = machine.apply(
            metadata,
            TransitionEvent.TrafficFailed,
            now=datetime.now(timezone.utc),
            error=ClassifiedError(kind=ErrorKind.RateLimit, retry_after_ms=30000),
        )
        assert result.metadata.state == ModelState.CoolingDown
        ```
    """

    _VALID_TRANSITIONS: dict[ModelState, set[ModelState]] = {
        ModelState.Untested: {ModelState.Probing, ModelState.Available, ModelState.Unavailable},
        ModelState.Probing: {ModelState.Available, ModelState.Unavailable},
        ModelState.Available: {ModelState.Probing, ModelState.Unavailable},
        ModelState.Unavailable: {ModelState.CoolingDown, ModelState.PermanentlyDisabled},
        ModelState.CoolingDown: {ModelState.Probing, ModelState.Available, ModelState.Unavailable},
        ModelState.PermanentlyDisabled: set(),
    }

    _ELIGIBLE_STATES = frozenset({ModelState.Available, ModelState.Untested})

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._policy = policy or BackoffPolicy()
        self._rng = rng or random.Random()

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    def is_valid_transition(self, from_state: ModelState, to_state: ModelState) -> bool:
        """Check whether a direct state change is allowed.

        ManualReset to Untested is always allowed and not listed in the table.
        """
        if to_state == ModelState.Untested:
            return True
        return to_state in self._VALID_TRANSITIONS.get(from_state, set())

    def is_usable(self, metadata: VerifiedModelMetadata | None, now: datetime) -> bool:
        """Return whether a (key, model) pair may take traffic at ``now``.

        A pair with no metadata has never been probed and is eligible. A
        cooling-down pair stays ineligible after its retry time passes until a
        probe moves it back to Available; see is_retry_due().
        """
        if metadata is None:
            return True
        return metadata.state in self._ELIGIBLE_STATES

    def is_retry_due(self, metadata: VerifiedModelMetadata, now: datetime) -> bool:
        """Whether a cooling-down pair has reached its retry time."""
        return (
            metadata.state == ModelState.CoolingDown
            and metadata.next_retry_at is not None
            and metadata.next_retry_at <= now
        )

    def backoff_delay_ms(self, retry_count: int) -> int:
        """Exponential delay with jitter: min(2^n * base, max) * (1 +/- jitter)."""
        exponent = min(retry_count, 32)
        delay = min(self._policy.base_delay_ms * (2**exponent), self._policy.max_delay_ms)
        if self._policy.jitter:
            delay *= self._rng.uniform(1 - self._policy.jitter, 1 + self._policy.jitter)
        return max(int(delay), 0)

    def compute_next_retry_at(
        self,
        metadata: VerifiedModelMetadata,
        error: ClassifiedError,
        now: datetime,
    ) -> datetime | None:
        """Compute when a failed pair may be retried.

        Args:
            metadata: Metadata before the failure was applied.
            error: Classified failure.
            now: Current time.

        Returns:
            Next retry time, or None when the failure is never retried.
        """
        if error.kind == ErrorKind.Auth:
            return None

        if error.kind == ErrorKind.RateLimit and error.retry_after_ms is not None:
            return now + timedelta(milliseconds=error.retry_after_ms)

        if error.kind == ErrorKind.Quota:
            reset_at = error.quota_reset_at or metadata.quota_reset_at
            if reset_at is not None and reset_at > now:
                return reset_at
            return now + timedelta(milliseconds=self._policy.quota_unknown_reset_ms)

        return now + timedelta(milliseconds=self.backoff_delay_ms(metadata.retry_count))

    def _exceeds_ceiling(self, kind: ErrorKind, retry_count: int) -> bool:
        if kind in (ErrorKind.Server, ErrorKind.Network):
            return retry_count > self._policy.max_transient_retries
        if kind == ErrorKind.Unknown:
            return retry_count > self._policy.max_unknown_retries
        return False

    def apply(
        self,
        metadata: VerifiedModelMetadata,
        event: TransitionEvent,
        now: datetime,
        error: ClassifiedError | None = None,
    ) -> TransitionResult:
        """Apply an event and return the resulting metadata.

        Args:
            metadata: Current metadata of the pair.
            event: Event to apply.
            now: Current time.
            error: Classified failure; required for failure events.

        Returns:
            TransitionResult with the new metadata and the state changes made.
            ``changes`` is empty when the event does not move the pair.

        Raises:
            InvalidTransitionError: If a failure event has no error.
        """
        current = metadata.state

        if event == TransitionEvent.ManualReset:
            reset = metadata.evolve(
                state=ModelState.Untested,
                retry_count=0,
                next_retry_at=None,
                last_error_code=None,
                error_message=None,
            )
            changes = [] if current == ModelState.Untested else [
                StateChange(from_state=current, to_state=ModelState.Untested)
            ]
            return TransitionResult(metadata=reset, changes=changes)

        if current == ModelState.PermanentlyDisabled:
            return TransitionResult(metadata=metadata)

        if event == TransitionEvent.ProbeStarted:
            if current == ModelState.Probing:
                return TransitionResult(metadata=metadata)
            probing = metadata.evolve(state=ModelState.Probing, next_retry_at=None)
            return TransitionResult(
                metadata=probing,
                changes=[StateChange(from_state=current, to_state=ModelState.Probing)],
            )

        if event.is_success:
            available = metadata.evolve(
                state=ModelState.Available,
                retry_count=0,
                next_retry_at=None,
                last_checked_at=now,
                last_error_code=None,
                error_message=None,
            )
            changes = [] if current == ModelState.Available else [
                StateChange(from_state=current, to_state=ModelState.Available)
            ]
            return TransitionResult(metadata=available, changes=changes)

        if error is None:
            raise InvalidTransitionError(f"{event.value} requires a classified error")

        retry_count = metadata.retry_count + 1
        next_retry_at = self.compute_next_retry_at(metadata, error, now)
        if next_retry_at is None or self._exceeds_ceiling(error.kind, retry_count):
            final_state = ModelState.PermanentlyDisabled
            next_retry_at = None
        else:
            final_state = ModelState.CoolingDown

        updates: dict = {
            "state": final_state,
            "retry_count": retry_count,
            "next_retry_at": next_retry_at,
            "last_checked_at": now,
            "last_error_code": error.status_code,
            "error_message": error.message or None,
        }
        if error.kind == ErrorKind.Quota:
            updates["quota_remaining"] = 0
            updates["quota_reset_at"] = next_retry_at

        failed = metadata.evolve(**updates)
        changes = []
        if current != ModelState.Unavailable:
            changes.append(StateChange(from_state=current, to_state=ModelState.Unavailable))
        changes.append(StateChange(from_state=ModelState.Unavailable, to_state=final_state))
        return TransitionResult(metadata=failed, changes=changes)
