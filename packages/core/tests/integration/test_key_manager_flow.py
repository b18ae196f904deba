"""End-to-end tests for LLMKeyManager over a SQLite store."""

from base64 import b64encode
from pathlib import Path

import pytest
import yaml

from llmkeymanager.domain.components.selection_engine import ExhaustedError, NoCandidatesError
from llmkeymanager.domain.components.vault import LockedVaultError, UnlockError
from llmkeymanager.domain.models.classified_error import ErrorKind
from llmkeymanager.domain.models.key_record import KeyVerificationStatus
from llmkeymanager.domain.models.verified_model import ModelState
from llmkeymanager.infrastructure.utils.encryption import generate_master_key
from llmkeymanager.manager import LLMKeyManager

PRIMARY = "sk-test-primary-000001"
BACKUP = "sk-test-backup-0000002"
HELLO = [{"role": "user", "content": "hello"}]


@pytest.fixture
def settings(tmp_path: Path, master_key_b64: str) -> dict:
    return {
        "master_key": master_key_b64,
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'keys.db'}",
        "kdf_iterations": 1000,
        "backoff_jitter": 0,
        "base_backoff_ms": 60_000,
    }


@pytest.fixture
def openai_adapter(make_adapter):
    return make_adapter(
        provider_id="openai",
        model_prefixes=("gpt-", "text-embedding-"),
        models=["gpt-4o", "gpt-4o-mini", "text-embedding-3-small"],
    )


class TestKeyManagerFlow:
    """Add keys, probe, route with failover and read the dashboards."""

    @pytest.mark.asyncio
    async def test_probe_then_failover(
        self, settings, observability, openai_adapter, provider_error
    ) -> None:
        """Test the full path from adding keys to a failed-over request."""
        async with LLMKeyManager(
            settings=settings, observability_manager=observability, adapters=[openai_adapter]
        ) as manager:
            await manager.unlock()
            primary = await manager.add_key("openai", PRIMARY, label="primary", priority="high")
            backup = await manager.add_key("openai", BACKUP, label="backup", priority="low")

            outcomes = await manager.probe_due()
            assert sorted(o.key_id for o in outcomes) == sorted([primary.id, backup.id])
            assert all(o.success for o in outcomes)
            states = await manager.get_model_states()
            assert len(states) == 6
            assert {m.state for m in states} == {ModelState.Available}

            openai_adapter.script(PRIMARY, provider_error("Bad gateway", status_code=502))
            response = await manager.chat("smart", HELLO)

            assert response.key_id == backup.id
            assert response.model_id == "gpt-4o"
            assert response.attempts == 2
            errors = await manager.get_errors()
            assert [(e.key_id, e.error_kind) for e in errors] == [(primary.id, ErrorKind.Server)]
            summary = await manager.usage_summary()
            assert summary.successful_requests == 1
            assert summary.failed_requests == 1
            transitions = await manager.get_transitions(key_id=primary.id)
            assert transitions[0].to_state == ModelState.CoolingDown.value

            # Capability tags only expand to probed pairs
            capability = await manager.chat("text-chat", HELLO)
            assert capability.model_id == "gpt-4o"
            assert capability.key_id == backup.id

            embedding = await manager.embed("embedding", ["a", "b", "c"])
            assert len(embedding.embeddings) == 3

    @pytest.mark.asyncio
    async def test_state_survives_restart(
        self, settings, observability, openai_adapter, make_adapter, provider_error
    ) -> None:
        """Test that keys, model states and logs persist and the vault starts locked."""
        async with LLMKeyManager(
            settings=settings, observability_manager=observability, adapters=[openai_adapter]
        ) as manager:
            await manager.unlock()
            key = await manager.add_key("openai", PRIMARY)
            openai_adapter.script(PRIMARY, provider_error("Rate limit exceeded", status_code=429))
            with pytest.raises(ExhaustedError):
                await manager.chat("gpt-4o", HELLO)

        restarted = LLMKeyManager(
            settings=settings,
            observability_manager=observability,
            adapters=[make_adapter(provider_id="openai")],
        )
        async with restarted:
            assert not restarted.is_unlocked
            assert [k.id for k in await restarted.list_keys()] == [key.id]
            with pytest.raises(LockedVaultError):
                await restarted.chat("gpt-4o-mini", HELLO)

            await restarted.unlock()
            metadata = (await restarted.get_model_states(key_id=key.id))[0]
            assert metadata.state == ModelState.CoolingDown
            assert len(await restarted.get_errors(key_id=key.id)) == 1
            assert await restarted.vault.get_decrypted_secret(key.id) == PRIMARY

    @pytest.mark.asyncio
    async def test_wrong_master_key_rejected(self, settings, observability) -> None:
        """Test that a different master key cannot unlock an existing vault."""
        async with LLMKeyManager(settings=settings, observability_manager=observability) as m:
            await m.unlock()
            await m.add_key("openai", PRIMARY)

        other = {**settings, "master_key": b64encode(generate_master_key()).decode("ascii")}
        async with LLMKeyManager(settings=other, observability_manager=observability) as m:
            with pytest.raises(UnlockError):
                await m.unlock()

    @pytest.mark.asyncio
    async def test_rotate_and_reenable_reset_models(
        self, settings, observability, openai_adapter, provider_error
    ) -> None:
        """Test that rotation and re-enabling put models back to Untested."""
        async with LLMKeyManager(
            settings=settings, observability_manager=observability, adapters=[openai_adapter]
        ) as manager:
            await manager.unlock()
            key = await manager.add_key("openai", PRIMARY)
            openai_adapter.script_probe(PRIMARY, provider_error("Invalid key", status_code=401))
            await manager.availability_manager.ensure_metadata(key.id, "gpt-4o", "openai")
            await manager.probe_key(key.id)
            assert (await manager.vault.get_key(key.id)).verification_status == (
                KeyVerificationStatus.Invalid
            )

            await manager.rotate_key(key.id, BACKUP)
            states = await manager.get_model_states(key_id=key.id)
            assert [m.state for m in states] == [ModelState.Untested]

            await manager.set_key_enabled(key.id, False)
            with pytest.raises(NoCandidatesError):
                await manager.chat("gpt-4o", HELLO)

            await manager.set_key_enabled(key.id, True)
            response = await manager.chat("gpt-4o", HELLO)
            assert response.key_id == key.id
            assert openai_adapter.calls[-1] == (BACKUP, "gpt-4o")

    @pytest.mark.asyncio
    async def test_update_key_reenable_resets_models(
        self, settings, observability, openai_adapter, provider_error
    ) -> None:
        """Test that re-enabling through update_key starts the key over."""
        async with LLMKeyManager(
            settings=settings, observability_manager=observability, adapters=[openai_adapter]
        ) as manager:
            await manager.unlock()
            key = await manager.add_key("openai", PRIMARY)
            openai_adapter.script(PRIMARY, provider_error("Invalid API key", status_code=401))
            with pytest.raises(ExhaustedError):
                await manager.chat("gpt-4o", HELLO)
            states = await manager.get_model_states(key_id=key.id)
            assert [m.state for m in states] == [ModelState.PermanentlyDisabled]
            assert key.id in manager.safety_status().key_circuits

            await manager.update_key(key.id, {"is_enabled": False, "label": "paused"})
            record = await manager.update_key(key.id, {"is_enabled": True})

            assert record.is_enabled
            assert record.label == "paused"
            assert record.verification_status == KeyVerificationStatus.Untested
            states = await manager.get_model_states(key_id=key.id)
            assert [m.state for m in states] == [ModelState.Untested]
            assert manager.safety_status().key_circuits == {}
            response = await manager.chat("gpt-4o", HELLO)
            assert response.key_id == key.id


class TestKeyManagerConfiguration:
    """Routing configuration through the manager."""

    @pytest.mark.asyncio
    async def test_config_file_and_rollback(
        self, tmp_path: Path, settings, observability, openai_adapter
    ) -> None:
        """Test that a config file is loaded on start and overrides can be rolled back."""
        config_file = tmp_path / "routing.yaml"
        config_file.write_text(yaml.dump({"special_models": {"house": "gpt-4o-mini"}}))
        async with LLMKeyManager(
            settings={**settings, "config_file": str(config_file)},
            observability_manager=observability,
            adapters=[openai_adapter],
        ) as manager:
            await manager.unlock()
            await manager.add_key("openai", PRIMARY)

            assert (await manager.chat("house", HELLO)).model_id == "gpt-4o-mini"

            await manager.configure({"special_models": {"house": "gpt-4o"}})
            assert (await manager.chat("house", HELLO)).model_id == "gpt-4o"

            await manager.config_manager.rollback()
            assert manager.get_config().special_models["house"] == "gpt-4o-mini"

            config_file.write_text(yaml.dump({"special_models": {"house": "gpt-4o"}}))
            await manager.reload_config()
            assert manager.get_config().special_models["house"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_register_adapter_validation(self, observability, make_adapter) -> None:
        """Test duplicate and invalid adapter registration."""
        manager = LLMKeyManager(settings={}, observability_manager=observability)
        manager.register_adapter(make_adapter(provider_id="openai"))

        with pytest.raises(ValueError, match="already registered"):
            manager.register_adapter(make_adapter(provider_id="openai"))
        with pytest.raises(ValueError, match="must be an instance of ProviderAdapter"):
            manager.register_adapter(object())

        manager.register_adapter(make_adapter(provider_id="openai"), overwrite=True)
        assert manager.providers == ["openai"]

    def test_invalid_settings_type(self) -> None:
        """Test that unsupported settings types are rejected."""
        with pytest.raises(ValueError, match="Invalid settings type"):
            LLMKeyManager(settings=["not", "settings"])
