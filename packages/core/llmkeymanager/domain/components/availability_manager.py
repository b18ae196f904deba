"""AvailabilityManager: persisted availability state for (key, model) pairs."""

from datetime import datetime, timezone
from typing import Any

from llmkeymanager.domain.components.availability_state_machine import (
    AvailabilityStateMachine,
    TransitionEvent,
    TransitionResult,
)
from llmkeymanager.domain.components.key_locks import KeyLockRegistry
from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.interfaces.state_store import StateStore, StateStoreError
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.model_catalog import model_priority_for
from llmkeymanager.domain.models.state_transition import StateTransition
from llmkeymanager.domain.models.verified_model import ModelState, VerifiedModelMetadata


class AvailabilityManager:
    """Applies availability events to stored metadata.

    Each event is applied under the owning key's lock: read the current
    metadata, run the state machine, persist the result and the audit
    trail, then emit a state_transition event per change.
    """

    def __init__(
        self,
        state_store: StateStore,
        observability_manager: ObservabilityManager,
        key_locks: KeyLockRegistry,
        state_machine: AvailabilityStateMachine | None = None,
    ) -> None:
        """Initialize AvailabilityManager.

        Args:
            state_store: StateStore holding VerifiedModelMetadata.
            observability_manager: ObservabilityManager for events and logs.
            key_locks: Shared per-key lock registry.
            state_machine: Transition rules; a default machine is used if None.
        """
        self._state_store = state_store
        self._observability = observability_manager
        self._key_locks = key_locks
        self._machine = state_machine or AvailabilityStateMachine()

    @property
    def state_machine(self) -> AvailabilityStateMachine:
        return self._machine

    async def get_metadata(self, key_id: str, model_id: str) -> VerifiedModelMetadata | None:
        return await self._state_store.get_model_metadata(key_id, model_id)

    async def list_metadata(
        self,
        key_id: str | None = None,
        model_id: str | None = None,
    ) -> list[VerifiedModelMetadata]:
        return await self._state_store.list_model_metadata(key_id=key_id, model_id=model_id)

    def is_usable(
        self, metadata: VerifiedModelMetadata | None, now: datetime | None = None
    ) -> bool:
        """Single source of truth for traffic eligibility of a pair."""
        return self._machine.is_usable(metadata, now or datetime.now(timezone.utc))

    def _new_metadata(
        self,
        key_id: str,
        model_id: str,
        provider_id: str,
        capabilities: list[str] | None,
    ) -> VerifiedModelMetadata:
        return VerifiedModelMetadata(
            key_id=key_id,
            model_id=model_id,
            provider_id=provider_id,
            model_priority=model_priority_for(model_id),
            capabilities=capabilities or [],
        )

    async def ensure_metadata(
        self,
        key_id: str,
        model_id: str,
        provider_id: str,
        capabilities: list[str] | None = None,
    ) -> VerifiedModelMetadata:
        """Return metadata for a pair, creating an Untested record if missing."""
        async with self._key_locks.hold(key_id):
            existing = await self._state_store.get_model_metadata(key_id, model_id)
            if existing is not None:
                return existing
            metadata = self._new_metadata(key_id, model_id, provider_id, capabilities)
            await self._state_store.save_model_metadata(metadata)
            return metadata

    async def record_event(
        self,
        key_id: str,
        model_id: str,
        provider_id: str,
        event: TransitionEvent,
        error: ClassifiedError | None = None,
        now: datetime | None = None,
        capabilities: list[str] | None = None,
    ) -> VerifiedModelMetadata:
        """Apply an event to a pair and persist the outcome.

        Missing metadata is created as Untested first, so the first traffic
        on a never-probed pair is recorded like any other.

        Args:
            key_id: Key of the pair.
            model_id: Model of the pair.
            provider_id: Provider of the key.
            event: Event to apply.
            error: Classified failure for failure events.
            now: Current time; defaults to now.
            capabilities: Capabilities to store if the pair is new.

        Returns:
            Metadata after the event.

        Raises:
            StateStoreError: If persisting fails.
        """
        now = now or datetime.now(timezone.utc)
        async with self._key_locks.hold(key_id):
            metadata = await self._state_store.get_model_metadata(key_id, model_id)
            if metadata is None:
                metadata = self._new_metadata(key_id, model_id, provider_id, capabilities)

            result = self._machine.apply(metadata, event, now=now, error=error)
            transitions = self._audit_records(result, event, error, now)
            try:
                await self._state_store.save_model_metadata(result.metadata)
                for transition in transitions:
                    await self._state_store.save_state_transition(transition)
            except StateStoreError as e:
                raise StateStoreError(f"Failed to save availability transition: {e}") from e

        for transition in transitions:
            await self._emit_transition(transition, result.metadata, error)
        return result.metadata

    async def record_traffic_success(
        self, key_id: str, model_id: str, provider_id: str, now: datetime | None = None
    ) -> VerifiedModelMetadata:
        return await self.record_event(
            key_id, model_id, provider_id, TransitionEvent.TrafficSucceeded, now=now
        )

    async def record_traffic_failure(
        self,
        key_id: str,
        model_id: str,
        provider_id: str,
        error: ClassifiedError,
        now: datetime | None = None,
    ) -> VerifiedModelMetadata:
        return await self.record_event(
            key_id, model_id, provider_id, TransitionEvent.TrafficFailed, error=error, now=now
        )

    async def reset_key(self, key_id: str) -> list[VerifiedModelMetadata]:
        """ManualReset every pair of a key, e.g. after it is re-enabled or rotated."""
        reset: list[VerifiedModelMetadata] = []
        for metadata in await self._state_store.list_model_metadata(key_id=key_id):
            reset.append(
                await self.record_event(
                    key_id,
                    metadata.model_id,
                    metadata.provider_id,
                    TransitionEvent.ManualReset,
                )
            )
        return reset

    async def due_for_retry(self, now: datetime | None = None) -> list[VerifiedModelMetadata]:
        """Cooling-down pairs whose retry time has passed."""
        now = now or datetime.now(timezone.utc)
        return [
            m
            for m in await self._state_store.list_model_metadata()
            if self._machine.is_retry_due(m, now)
        ]

    def _audit_records(
        self,
        result: TransitionResult,
        event: TransitionEvent,
        error: ClassifiedError | None,
        now: datetime,
    ) -> list[StateTransition]:
        context: dict[str, Any] = {
            "retry_count": result.metadata.retry_count,
            "next_retry_at": result.metadata.next_retry_at.isoformat()
            if result.metadata.next_retry_at
            else None,
        }
        if error is not None:
            context["error_kind"] = error.kind.value
            context["status_code"] = error.status_code
            context["retry_after_ms"] = error.retry_after_ms
        return [
            StateTransition(
                key_id=result.metadata.key_id,
                model_id=result.metadata.model_id,
                from_state=change.from_state.value,
                to_state=change.to_state.value,
                transition_timestamp=now,
                trigger=event.value,
                context=context,
            )
            for change in result.changes
        ]

    async def _emit_transition(
        self,
        transition: StateTransition,
        metadata: VerifiedModelMetadata,
        error: ClassifiedError | None,
    ) -> None:
        if transition.to_state == ModelState.PermanentlyDisabled.value:
            level = "ERROR" if error is not None and error.kind == ErrorKind.Auth else "WARNING"
            await self._observability.log(
                level=level,
                message="Key/model pair permanently disabled",
                context={
                    "key_id": metadata.key_id,
                    "model_id": metadata.model_id,
                    "error_kind": error.kind.value if error else None,
                    "retry_count": metadata.retry_count,
                },
            )
        try:
            await self._observability.emit_event(
                event_type="state_transition",
                payload={
                    "key_id": transition.key_id,
                    "model_id": transition.model_id,
                    "from_state": transition.from_state,
                    "to_state": transition.to_state,
                    "trigger": transition.trigger,
                    "next_retry_at": transition.context.get("next_retry_at"),
                },
                metadata={
                    "transition_timestamp": transition.transition_timestamp.isoformat(),
                },
            )
        except Exception as e:
            # Log error but don't fail state transition if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit state_transition event: {e}",
                context={"key_id": transition.key_id, "model_id": transition.model_id},
            )
