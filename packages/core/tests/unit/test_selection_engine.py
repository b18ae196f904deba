"""Tests for SelectionEngine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from llmkeymanager.domain.components.health_prober import HealthProber
from llmkeymanager.domain.components.safety_guard import CircuitState, SafetyGuard
from llmkeymanager.domain.components.selection_engine import (
    ExhaustedError,
    NoCandidatesError,
    ResolutionKind,
    SelectionEngine,
)
from llmkeymanager.domain.components.vault import LockedVaultError
from llmkeymanager.domain.interfaces.state_store import StateQuery
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.key_record import (
    KeyVerificationStatus,
    RateLimitData,
    RateLimitWindow,
)
from llmkeymanager.domain.models.model_catalog import DEFAULT_CONFIG
from llmkeymanager.domain.models.request import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    EmbeddingRequest,
    TokenUsage,
)
from llmkeymanager.domain.models.verified_model import ModelState

SECRET_A = "sk-test-key-a-000001"
SECRET_B = "sk-test-key-b-000002"
SECRET_C = "sk-test-key-c-000003"


def _chat(model: str = "gpt-4o", **kwargs) -> ChatRequest:
    return ChatRequest(
        model=model, messages=[ChatMessage(role="user", content="hello")], **kwargs
    )


@pytest.fixture
def openai_adapter(make_adapter):
    return make_adapter(provider_id="openai", model_prefixes=("gpt-", "text-embedding-"))


@pytest.fixture
def guard(observability) -> SafetyGuard:
    return SafetyGuard(observability)


@pytest.fixture
def make_engine(vault, availability, ledger, usage_log, observability, guard):
    """Build an engine over the shared components."""

    def _make(adapters, config=None) -> SelectionEngine:
        effective = DEFAULT_CONFIG.merge(config) if config else DEFAULT_CONFIG
        return SelectionEngine(
            vault=vault,
            availability_manager=availability,
            quota_ledger=ledger,
            usage_log=usage_log,
            observability_manager=observability,
            adapters={a.provider_id: a for a in adapters},
            config_provider=lambda: effective,
            default_timeout_seconds=5.0,
            safety_guard=guard,
        )

    return _make


class TestResolution:
    """Tests for model identifier resolution."""

    def test_capability_alias_and_explicit(self, make_engine, openai_adapter) -> None:
        """Test that chains, aliases and explicit ids resolve in that order."""
        engine = make_engine(
            [openai_adapter],
            {"special_models": {"smart": "gpt-4o", "text-chat": "gpt-4o-mini"}},
        )

        capability = engine.resolve_models("text-chat")
        alias = engine.resolve_models("smart")
        explicit = engine.resolve_models("gpt-4-turbo")

        assert capability.kind == ResolutionKind.Capability
        assert capability.model_ids == DEFAULT_CONFIG.fallback_chains["text-chat"]
        assert alias.kind == ResolutionKind.Alias
        assert alias.model_ids == ["gpt-4o"]
        assert explicit.kind == ResolutionKind.Explicit
        assert explicit.model_ids == ["gpt-4-turbo"]

    def test_chain_duplicates_removed(self, make_engine, openai_adapter) -> None:
        """Test that a model listed twice in a chain is tried once."""
        engine = make_engine(
            [openai_adapter], {"fallback_chains": {"chat": ["gpt-4o", "gpt-4o-mini", "gpt-4o"]}}
        )

        assert engine.resolve_models("chat").model_ids == ["gpt-4o", "gpt-4o-mini"]


class TestScenarios:
    """End-to-end selection scenarios."""

    @pytest.mark.asyncio
    async def test_cooling_down_high_priority_is_skipped(
        self, vault, availability, make_engine, openai_adapter
    ) -> None:
        """Test that a cooling-down high key is filtered and the low key serves."""
        high = await vault.add_key("openai", SECRET_A, priority="high")
        low = await vault.add_key("openai", SECRET_B, priority="low")
        await availability.record_traffic_failure(
            high.id,
            "gpt-4o",
            "openai",
            ClassifiedError(kind=ErrorKind.RateLimit, retry_after_ms=60_000),
        )
        await availability.record_traffic_success(low.id, "gpt-4o", "openai")
        engine = make_engine([openai_adapter])

        response = await engine.execute(_chat())

        assert response.key_id == low.id
        assert response.attempts == 1
        assert openai_adapter.calls == [(SECRET_B, "gpt-4o")]

    @pytest.mark.asyncio
    async def test_all_rate_limited_exhausts(
        self, vault, availability, make_engine, openai_adapter, provider_error
    ) -> None:
        """Test that three rate-limited keys are tried in order and all cool down."""
        keys = [
            await vault.add_key("openai", SECRET_C, priority="low"),
            await vault.add_key("openai", SECRET_A, priority="high"),
            await vault.add_key("openai", SECRET_B, priority="medium"),
        ]
        for secret in (SECRET_A, SECRET_B, SECRET_C):
            openai_adapter.script(secret, provider_error("Rate limit exceeded", status_code=429))
        engine = make_engine([openai_adapter])

        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(_chat())

        failures = exc_info.value.failures
        assert [f.key_id for f in failures] == [keys[1].id, keys[2].id, keys[0].id]
        assert all(f.error.kind == ErrorKind.RateLimit for f in failures)
        assert [f.attempt for f in failures] == [1, 2, 3]
        for key in keys:
            metadata = await availability.get_metadata(key.id, "gpt-4o")
            assert metadata.state == ModelState.CoolingDown

    @pytest.mark.asyncio
    async def test_unprobed_capability_has_no_candidates(
        self, vault, make_engine, openai_adapter
    ) -> None:
        """Test that a capability with no probed pairs fails without a network call."""
        await vault.add_key("openai", SECRET_A)
        engine = make_engine([openai_adapter])

        with pytest.raises(NoCandidatesError) as exc_info:
            await engine.execute(_chat("text-chat"))

        assert exc_info.value.requested == "text-chat"
        assert openai_adapter.calls == []


class TestFailover:
    """Tests for the sequential attempt loop."""

    @pytest.mark.asyncio
    async def test_server_error_fails_over(
        self, vault, availability, usage_log, observability, make_engine, openai_adapter,
        provider_error,
    ) -> None:
        """Test that a Server failure moves on to the next candidate."""
        first = await vault.add_key("openai", SECRET_A, priority="high")
        second = await vault.add_key("openai", SECRET_B, priority="low")
        openai_adapter.script(SECRET_A, provider_error("Internal server error", status_code=500))
        engine = make_engine([openai_adapter])

        response = await engine.execute(_chat())

        assert response.key_id == second.id
        assert response.model_id == "gpt-4o"
        assert response.attempts == 2
        assert response.latency_ms >= 0
        errors = await usage_log.query_errors()
        assert [(e.key_id, e.error_kind, e.attempt) for e in errors] == [
            (first.id, ErrorKind.Server, 1)
        ]
        usage = await usage_log.query_usage()
        assert [(u.key_id, u.attempt) for u in usage] == [(second.id, 2)]
        assert (await availability.get_metadata(first.id, "gpt-4o")).state == (
            ModelState.CoolingDown
        )
        assert (await availability.get_metadata(second.id, "gpt-4o")).state == (
            ModelState.Available
        )
        assert (await vault.get_key(second.id)).usage_count == 1
        assert observability.events_of("request_succeeded")[0]["payload"]["attempts"] == 2

    @pytest.mark.asyncio
    async def test_auth_failure_disables_pair(
        self, vault, availability, make_engine, openai_adapter, provider_error
    ) -> None:
        """Test that an Auth failure disables the pair for later requests."""
        bad = await vault.add_key("openai", SECRET_A, priority="high")
        await vault.add_key("openai", SECRET_B, priority="low")
        openai_adapter.script(SECRET_A, provider_error("Invalid API key", status_code=401))
        engine = make_engine([openai_adapter])

        await engine.execute(_chat())
        await engine.execute(_chat())

        metadata = await availability.get_metadata(bad.id, "gpt-4o")
        assert metadata.state == ModelState.PermanentlyDisabled
        assert [secret for secret, _ in openai_adapter.calls] == [SECRET_A, SECRET_B, SECRET_B]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_network(
        self, vault, usage_log, make_engine, openai_adapter
    ) -> None:
        """Test that an attempt exceeding its timeout is a Network failure."""
        slow = await vault.add_key("openai", SECRET_A, priority="high")
        fast = await vault.add_key("openai", SECRET_B, priority="low")
        openai_adapter.delays[SECRET_A] = 5.0
        engine = make_engine([openai_adapter])

        response = await engine.execute(_chat(), timeout=0.05)

        assert response.key_id == fast.id
        errors = await usage_log.query_errors(StateQuery(key_id=slow.id))
        assert errors[0].error_kind == ErrorKind.Network

    @pytest.mark.asyncio
    async def test_request_timeout_used_when_no_override(
        self, vault, usage_log, make_engine, openai_adapter
    ) -> None:
        """Test that the request's own timeout applies per attempt."""
        await vault.add_key("openai", SECRET_A)
        openai_adapter.delays[SECRET_A] = 5.0
        engine = make_engine([openai_adapter])

        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(_chat(timeout_seconds=0.05))

        assert exc_info.value.failures[0].error.kind == ErrorKind.Network

    @pytest.mark.asyncio
    async def test_all_unusable_is_exhausted_without_attempts(
        self, vault, availability, make_engine, openai_adapter, observability
    ) -> None:
        """Test that candidates that all cool down yield ExhaustedError with no failures."""
        key = await vault.add_key("openai", SECRET_A)
        await availability.record_traffic_failure(
            key.id,
            "gpt-4o",
            "openai",
            ClassifiedError(kind=ErrorKind.RateLimit, retry_after_ms=60_000),
        )
        engine = make_engine([openai_adapter])

        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(_chat())

        assert exc_info.value.failures == []
        assert openai_adapter.calls == []
        assert observability.events_of("request_exhausted")[0]["payload"]["attempts"] == 0

    @pytest.mark.asyncio
    async def test_cooling_down_past_retry_time_waits_for_health_check(
        self, vault, availability, make_engine, openai_adapter
    ) -> None:
        """Test that a cooling-down pair stays out of routing after its retry time passes."""
        key = await vault.add_key("openai", SECRET_A)
        await availability.record_traffic_failure(
            key.id,
            "gpt-4o",
            "openai",
            ClassifiedError(kind=ErrorKind.RateLimit, retry_after_ms=1000),
            now=datetime.now(timezone.utc) - timedelta(seconds=11),
        )
        engine = make_engine([openai_adapter])

        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(_chat())

        assert exc_info.value.failures == []
        assert openai_adapter.calls == []
        metadata = await availability.get_metadata(key.id, "gpt-4o")
        assert metadata.state == ModelState.CoolingDown

    @pytest.mark.asyncio
    async def test_invalid_key_gets_no_traffic(
        self, vault, availability, ledger, observability, guard, make_engine, openai_adapter,
        provider_error,
    ) -> None:
        """Test that a key whose verification failed is skipped for every model."""
        invalid = await vault.add_key("openai", SECRET_A, priority="high")
        prober = HealthProber(
            vault=vault,
            availability_manager=availability,
            quota_ledger=ledger,
            observability_manager=observability,
            adapters={"openai": openai_adapter},
            safety_guard=guard,
        )
        openai_adapter.script_probe(SECRET_A, provider_error("Invalid API key", status_code=401))
        await prober.probe_key(invalid.id)
        assert (await vault.get_key(invalid.id)).verification_status == (
            KeyVerificationStatus.Invalid
        )
        engine = make_engine([openai_adapter])

        with pytest.raises(ExhaustedError) as exc_info:
            await engine.execute(_chat())

        assert exc_info.value.failures == []
        assert openai_adapter.calls == []

        backup = await vault.add_key("openai", SECRET_B, priority="low")
        response = await engine.execute(_chat("gpt-4o-mini"))

        assert response.key_id == backup.id
        assert openai_adapter.calls == [(SECRET_B, "gpt-4o-mini")]

    @pytest.mark.asyncio
    async def test_unknown_model_has_no_candidates(
        self, vault, make_engine, openai_adapter
    ) -> None:
        """Test that a model no adapter serves raises NoCandidatesError."""
        await vault.add_key("openai", SECRET_A)
        engine = make_engine([openai_adapter])

        with pytest.raises(NoCandidatesError):
            await engine.execute(_chat("mistral-large-latest"))

    @pytest.mark.asyncio
    async def test_disabled_and_adapterless_keys_excluded(
        self, vault, make_engine, openai_adapter
    ) -> None:
        """Test that disabled keys and keys without an adapter are never candidates."""
        disabled = await vault.add_key("openai", SECRET_A)
        await vault.update_metadata(disabled.id, {"is_enabled": False})
        await vault.add_key("anthropic", SECRET_B)
        engine = make_engine([openai_adapter])

        with pytest.raises(NoCandidatesError):
            await engine.execute(_chat())

    @pytest.mark.asyncio
    async def test_provider_restriction(self, vault, make_engine, make_adapter) -> None:
        """Test that provider_id restricts candidates to one provider."""
        openai = make_adapter(provider_id="openai", model_prefixes=("gpt-",))
        proxy = make_adapter(provider_id="openrouter", model_prefixes=("gpt-",))
        await vault.add_key("openai", SECRET_A, priority="high")
        routed = await vault.add_key("openrouter", SECRET_B, priority="low")
        engine = make_engine([openai, proxy])

        response = await engine.execute(_chat(provider_id="openrouter"))

        assert response.key_id == routed.id
        assert openai.calls == []

    @pytest.mark.asyncio
    async def test_quota_exhausted_key_is_skipped(
        self, vault, ledger, make_engine, openai_adapter
    ) -> None:
        """Test that a key at its ceiling is filtered before any attempt."""
        capped = await vault.add_key("openai", SECRET_A, priority="high")
        spare = await vault.add_key("openai", SECRET_B, priority="low")
        await ledger.set_limit(capped.id, 0)
        engine = make_engine([openai_adapter])

        response = await engine.execute(_chat())

        assert response.key_id == spare.id
        assert openai_adapter.calls == [(SECRET_B, "gpt-4o")]

    @pytest.mark.asyncio
    async def test_rate_limit_snapshot_applied(
        self, vault, ledger, make_engine, openai_adapter
    ) -> None:
        """Test that rate limits reported on a response update the ledger."""
        key = await vault.add_key("openai", SECRET_A)
        openai_adapter.script(
            SECRET_A,
            ChatResponse(
                content="ok",
                usage=TokenUsage(input_tokens=5, output_tokens=5),
                rate_limits=RateLimitData(tokens=RateLimitWindow(limit=1000, remaining=900)),
            ),
        )
        engine = make_engine([openai_adapter])

        await engine.execute(_chat())

        quota = await ledger.get_quota(key.id)
        assert quota.limit == 1000
        # Snapshot first, then the attempt's own tokens
        assert quota.used == 110

    @pytest.mark.asyncio
    async def test_locked_vault_propagates(
        self, vault, usage_log, make_engine, openai_adapter
    ) -> None:
        """Test that a locked vault surfaces directly and records nothing."""
        await vault.add_key("openai", SECRET_A)
        await vault.lock()
        engine = make_engine([openai_adapter])

        with pytest.raises(LockedVaultError):
            await engine.execute(_chat())

        assert await usage_log.query_errors() == []

    @pytest.mark.asyncio
    async def test_cancellation_leaves_state_untouched(
        self, vault, availability, usage_log, make_engine, openai_adapter
    ) -> None:
        """Test that cancelling a request records no outcome."""
        key = await vault.add_key("openai", SECRET_A)
        openai_adapter.delays[SECRET_A] = 10.0
        engine = make_engine([openai_adapter])

        task = asyncio.create_task(engine.execute(_chat()))
        while not openai_adapter.calls:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await usage_log.query_errors() == []
        assert await usage_log.query_usage() == []
        assert await availability.get_metadata(key.id, "gpt-4o") is None

    @pytest.mark.asyncio
    async def test_embedding_request(self, vault, make_engine, openai_adapter) -> None:
        """Test that embedding requests route like chat requests."""
        await vault.add_key("openai", SECRET_A)
        engine = make_engine([openai_adapter])

        response = await engine.execute(
            EmbeddingRequest(model="text-embedding-3-small", input=["a", "b"])
        )

        assert len(response.embeddings) == 2
        assert response.model_id == "text-embedding-3-small"


class TestOrdering:
    """Tests for candidate filtering and ordering."""

    @pytest.mark.asyncio
    async def test_latency_orders_equal_priority(
        self, vault, make_engine, openai_adapter
    ) -> None:
        """Test that lower average latency wins and unknown latency sorts last."""
        unknown = await vault.add_key("openai", SECRET_A)
        slow = await vault.add_key("openai", SECRET_B)
        fast = await vault.add_key("openai", SECRET_C)
        await vault.record_usage(slow.id, 900.0)
        await vault.record_usage(fast.id, 100.0)
        engine = make_engine([openai_adapter])

        candidates = await engine.enumerate_candidates(_chat())
        ordered = await engine.filter_and_order(candidates)

        assert [c.key.id for c in ordered] == [fast.id, slow.id, unknown.id]

    @pytest.mark.asyncio
    async def test_model_priority_within_key(
        self, vault, availability, make_engine, openai_adapter
    ) -> None:
        """Test that higher model priority is preferred on the same key priority."""
        key = await vault.add_key("openai", SECRET_A)
        await availability.record_traffic_success(key.id, "gpt-4o-mini", "openai")
        await availability.record_traffic_success(key.id, "gpt-4o", "openai")
        engine = make_engine(
            [openai_adapter], {"fallback_chains": {"chat": ["gpt-4o-mini", "gpt-4o"]}}
        )

        candidates = await engine.enumerate_candidates(_chat("chat"))
        ordered = await engine.filter_and_order(candidates)

        assert [c.model_id for c in ordered] == ["gpt-4o", "gpt-4o-mini"]

    @pytest.mark.asyncio
    async def test_priority_beats_latency(self, vault, make_engine, openai_adapter) -> None:
        """Test that key priority outranks latency."""
        slow_high = await vault.add_key("openai", SECRET_A, priority="high")
        fast_medium = await vault.add_key("openai", SECRET_B, priority="medium")
        await vault.record_usage(slow_high.id, 5000.0)
        await vault.record_usage(fast_medium.id, 10.0)
        engine = make_engine([openai_adapter])

        ordered = await engine.filter_and_order(await engine.enumerate_candidates(_chat()))

        assert [c.key.id for c in ordered] == [slow_high.id, fast_medium.id]

    @pytest.mark.asyncio
    async def test_remaining_quota_breaks_ties(
        self, vault, ledger, make_engine, openai_adapter
    ) -> None:
        """Test that more remaining quota wins when everything else is equal."""
        tight = await vault.add_key("openai", SECRET_A)
        roomy = await vault.add_key("openai", SECRET_B)
        await ledger.set_limit(tight.id, 1000)
        await ledger.set_limit(roomy.id, 50_000)
        engine = make_engine([openai_adapter])

        ordered = await engine.filter_and_order(await engine.enumerate_candidates(_chat()))

        assert [c.key.id for c in ordered] == [roomy.id, tight.id]
        assert ordered[0].remaining_quota == 50_000

    @pytest.mark.asyncio
    async def test_order_is_deterministic(self, vault, make_engine, openai_adapter) -> None:
        """Test that identical inputs give identical order, ties kept in insertion order."""
        ids = [
            (await vault.add_key("openai", secret)).id
            for secret in (SECRET_A, SECRET_B, SECRET_C)
        ]
        engine = make_engine([openai_adapter])

        first = await engine.filter_and_order(await engine.enumerate_candidates(_chat()))
        second = await engine.filter_and_order(await engine.enumerate_candidates(_chat()))

        assert [c.key.id for c in first] == ids
        assert [c.key.id for c in second] == ids


class TestSafetySwitches:
    """Tests for kill switches and circuit breakers during selection."""

    @pytest.mark.asyncio
    async def test_disabled_provider_is_skipped(
        self, vault, guard, make_engine, make_adapter
    ) -> None:
        """Test that keys of a disabled provider take no traffic."""
        openai = make_adapter(provider_id="openai", model_prefixes=("gpt-",))
        proxy = make_adapter(provider_id="openrouter", model_prefixes=("gpt-",))
        await vault.add_key("openai", SECRET_A, priority="high")
        routed = await vault.add_key("openrouter", SECRET_B, priority="low")
        await guard.disable_provider("openai", "outage")
        engine = make_engine([openai, proxy])

        response = await engine.execute(_chat())

        assert response.key_id == routed.id
        assert openai.calls == []

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(
        self, vault, guard, make_engine, openai_adapter
    ) -> None:
        """Test that a key whose circuit is open is passed over until it half-opens."""
        tripped = await vault.add_key("openai", SECRET_A, priority="high")
        backup = await vault.add_key("openai", SECRET_B, priority="low")
        for _ in range(3):
            await guard.record_failure(tripped.id, "openai")
        engine = make_engine([openai_adapter])

        response = await engine.execute(_chat())

        assert response.key_id == backup.id
        assert openai_adapter.calls == [(SECRET_B, "gpt-4o")]
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        ordered = await engine.filter_and_order(
            await engine.enumerate_candidates(_chat()), now=later
        )
        assert ordered[0].key.id == tripped.id

    @pytest.mark.asyncio
    async def test_traffic_success_closes_half_open_circuit(
        self, vault, guard, make_engine, openai_adapter
    ) -> None:
        """Test that successful requests are counted by the key's breaker."""
        key = await vault.add_key("openai", SECRET_A)
        opened = datetime.now(timezone.utc) - timedelta(minutes=11)
        for i in range(3):
            await guard.record_failure(key.id, "openai", now=opened + timedelta(seconds=i))
        engine = make_engine([openai_adapter])

        await engine.execute(_chat())
        await engine.execute(_chat())

        assert guard.circuit_state(key.id) == CircuitState.Closed

    @pytest.mark.asyncio
    async def test_forced_fallback_replaces_model(
        self, vault, guard, make_engine, openai_adapter, observability
    ) -> None:
        """Test that a forced fallback reroutes chat requests only."""
        await vault.add_key("openai", SECRET_A)
        await guard.force_fallback("gpt-4o-mini")
        engine = make_engine([openai_adapter])

        chat = await engine.execute(_chat("smart"))
        embedding = await engine.execute(
            EmbeddingRequest(model="text-embedding-3-small", input=["a"])
        )

        assert chat.model_id == "gpt-4o-mini"
        assert embedding.model_id == "text-embedding-3-small"
        assert openai_adapter.calls[0] == (SECRET_A, "gpt-4o-mini")
        assert any(
            log["message"] == "Forced fallback replaces requested model"
            for log in observability.logs
        )

    @pytest.mark.asyncio
    async def test_emergency_mode_only_uses_available_pairs(
        self, vault, availability, guard, make_engine, openai_adapter
    ) -> None:
        """Test that emergency mode skips pairs nobody has confirmed."""
        await vault.add_key("openai", SECRET_A, priority="high")
        confirmed = await vault.add_key("openai", SECRET_B, priority="low")
        await availability.record_traffic_success(confirmed.id, "gpt-4o", "openai")
        await guard.set_emergency_mode(True, "incident")
        engine = make_engine([openai_adapter])

        response = await engine.execute(_chat())

        assert response.key_id == confirmed.id
        assert openai_adapter.calls == [(SECRET_B, "gpt-4o")]
