"""Tests for AvailabilityManager."""

from datetime import datetime, timedelta, timezone

import pytest

from llmkeymanager.domain.components.availability_manager import AvailabilityManager
from llmkeymanager.domain.components.availability_state_machine import TransitionEvent
from llmkeymanager.domain.interfaces.state_store import StateQuery, StateStoreError
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.verified_model import ModelState
from llmkeymanager.infrastructure.state_store.memory_store import InMemoryStateStore


class FailingTransitionStore(InMemoryStateStore):
    """Store whose transition writes fail."""

    async def save_state_transition(self, transition) -> None:
        raise StateStoreError("disk full")


class TestAvailabilityManager:
    """Tests for recording availability events."""

    @pytest.mark.asyncio
    async def test_first_traffic_creates_metadata(self, availability, store) -> None:
        """Test that traffic on an unknown pair creates its metadata."""
        metadata = await availability.record_traffic_success("key-1", "gpt-4o", "openai")

        assert metadata.state == ModelState.Available
        assert metadata.model_priority == 5
        stored = await store.get_model_metadata("key-1", "gpt-4o")
        assert stored is not None
        assert stored.state == ModelState.Available

    @pytest.mark.asyncio
    async def test_every_change_is_audited(self, availability, store) -> None:
        """Test that each state change is persisted as a StateTransition."""
        await availability.record_traffic_success("key-1", "gpt-4o", "openai")
        await availability.record_traffic_failure(
            "key-1",
            "gpt-4o",
            "openai",
            ClassifiedError(kind=ErrorKind.RateLimit, retry_after_ms=5000, status_code=429),
        )

        transitions = await store.query_transitions(StateQuery(key_id="key-1"))
        assert [(t.from_state, t.to_state) for t in transitions] == [
            ("untested", "available"),
            ("available", "unavailable"),
            ("unavailable", "cooling_down"),
        ]
        assert transitions[-1].trigger == "traffic_failed"
        assert transitions[-1].context["error_kind"] == "rate_limit"
        assert transitions[-1].context["retry_after_ms"] == 5000

    @pytest.mark.asyncio
    async def test_transition_events_emitted(self, availability, observability) -> None:
        """Test that a state_transition event is emitted per change."""
        await availability.record_event(
            "key-1", "gpt-4o", "openai", TransitionEvent.ProbeStarted
        )

        events = observability.events_of("state_transition")
        assert len(events) == 1
        assert events[0]["payload"]["from_state"] == "untested"
        assert events[0]["payload"]["to_state"] == "probing"

    @pytest.mark.asyncio
    async def test_emit_failure_does_not_fail_transition(
        self, store, key_locks, state_machine, failing_observability
    ) -> None:
        """Test that event emission failures are logged, not raised."""
        manager = AvailabilityManager(store, failing_observability, key_locks, state_machine)

        metadata = await manager.record_traffic_success("key-1", "gpt-4o", "openai")

        assert metadata.state == ModelState.Available
        assert any(
            "Failed to emit state_transition event" in log["message"]
            for log in failing_observability.logs
        )

    @pytest.mark.asyncio
    async def test_store_failure_raises(self, observability, key_locks, state_machine) -> None:
        """Test that persistence failures surface as StateStoreError."""
        manager = AvailabilityManager(
            FailingTransitionStore(), observability, key_locks, state_machine
        )

        with pytest.raises(StateStoreError, match="Failed to save availability transition"):
            await manager.record_traffic_success("key-1", "gpt-4o", "openai")

    @pytest.mark.asyncio
    async def test_auth_failure_logged_as_error(self, availability, observability) -> None:
        """Test that a permanent disable caused by Auth is logged at ERROR."""
        metadata = await availability.record_traffic_failure(
            "key-1", "gpt-4o", "openai", ClassifiedError(kind=ErrorKind.Auth, status_code=401)
        )

        assert metadata.state == ModelState.PermanentlyDisabled
        disabled_logs = [
            log for log in observability.logs if log["message"].endswith("permanently disabled")
        ]
        assert disabled_logs[0]["level"] == "ERROR"

    @pytest.mark.asyncio
    async def test_ensure_metadata_is_idempotent(self, availability) -> None:
        """Test that ensure_metadata never overwrites existing state."""
        await availability.record_traffic_success("key-1", "gpt-4o", "openai")

        metadata = await availability.ensure_metadata(
            "key-1", "gpt-4o", "openai", capabilities=["text-chat"]
        )

        assert metadata.state == ModelState.Available

    @pytest.mark.asyncio
    async def test_reset_key_resets_every_model(self, availability) -> None:
        """Test that reset_key returns all pairs of a key to Untested."""
        auth = ClassifiedError(kind=ErrorKind.Auth)
        await availability.record_traffic_failure("key-1", "gpt-4o", "openai", auth)
        await availability.record_traffic_failure("key-1", "gpt-4o-mini", "openai", auth)
        await availability.record_traffic_success("key-2", "gpt-4o", "openai")

        reset = await availability.reset_key("key-1")

        assert {m.model_id for m in reset} == {"gpt-4o", "gpt-4o-mini"}
        assert all(m.state == ModelState.Untested for m in reset)
        other = await availability.get_metadata("key-2", "gpt-4o")
        assert other.state == ModelState.Available

    @pytest.mark.asyncio
    async def test_due_for_retry(self, availability) -> None:
        """Test that due_for_retry lists cooling-down pairs past their retry time."""
        now = datetime.now(timezone.utc)
        await availability.record_traffic_failure(
            "key-1",
            "gpt-4o",
            "openai",
            ClassifiedError(kind=ErrorKind.RateLimit, retry_after_ms=60_000),
            now=now,
        )

        assert await availability.due_for_retry(now) == []
        due = await availability.due_for_retry(now + timedelta(minutes=2))
        assert [m.model_id for m in due] == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_is_usable_delegates_to_machine(self, availability) -> None:
        """Test that is_usable reflects the state machine's decision."""
        metadata = await availability.record_traffic_failure(
            "key-1", "gpt-4o", "openai", ClassifiedError(kind=ErrorKind.Server)
        )

        assert not availability.is_usable(metadata)
        assert not availability.is_usable(metadata, metadata.next_retry_at)
        assert availability.is_usable(
            await availability.record_traffic_success("key-1", "gpt-4o", "openai")
        )
