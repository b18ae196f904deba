"""LLMKeyManager - Main entry point for multi-key LLM access with failover."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any

from llmkeymanager.domain.components.availability_manager import AvailabilityManager
from llmkeymanager.domain.components.availability_state_machine import (
    AvailabilityStateMachine,
    BackoffPolicy,
)
from llmkeymanager.domain.components.health_prober import HealthProber, ProbeOutcome
from llmkeymanager.domain.components.key_locks import KeyLockRegistry
from llmkeymanager.domain.components.quota_ledger import QuotaLedger
from llmkeymanager.domain.components.safety_guard import SafetyGuard, SafetyStatus
from llmkeymanager.domain.components.selection_engine import SelectionEngine
from llmkeymanager.domain.components.usage_log import UsageLog, UsageSummary
from llmkeymanager.domain.components.vault import Vault
from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.interfaces.provider_adapter import ProviderAdapter
from llmkeymanager.domain.interfaces.state_store import StateQuery, StateStore
from llmkeymanager.domain.models.classified_error import ErrorKind
from llmkeymanager.domain.models.config import LLMManagerConfig
from llmkeymanager.domain.models.key_quota import KeyQuota
from llmkeymanager.domain.models.key_record import KeyPriority, KeyRecord, KeyVerificationStatus
from llmkeymanager.domain.models.model_catalog import DEFAULT_CONFIG
from llmkeymanager.domain.models.request import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    EmbeddingRequest,
    EmbeddingResponse,
)
from llmkeymanager.domain.models.state_transition import StateTransition
from llmkeymanager.domain.models.usage import ErrorLogEntry, UsageDataPoint
from llmkeymanager.domain.models.verified_model import VerifiedModelMetadata
from llmkeymanager.infrastructure.config.manager import ConfigurationManager
from llmkeymanager.infrastructure.config.settings import ManagerSettings
from llmkeymanager.infrastructure.observability.logger import DefaultObservabilityManager
from llmkeymanager.infrastructure.state_store.memory_store import InMemoryStateStore
from llmkeymanager.infrastructure.state_store.sqlite_store import SQLStateStore
from llmkeymanager.infrastructure.utils.validation import validate_provider_id


class LLMKeyManager:
    """Main entry point for library.

    LLMKeyManager wires the vault, availability tracking, quota ledger,
    usage log, selection engine and health prober together and exposes a
    small API for applications.

    Example:
        ```python
        # In-memory state, platform key from LLMKEYMANAGER_MASTER_KEY
        async with LLMKeyManager() as manager:
            manager.register_adapter(OpenAIAdapter())
            await manager.unlock()
            await manager.add_key("openai", "sk-...", label="personal")

            response = await manager.chat("fast", [{"role": "user", "content": "hi"}])

        # Persistent state
        settings = ManagerSettings(database_url="sqlite+aiosqlite:///./keys.db")
        async with LLMKeyManager(settings=settings) as manager:
            await manager.unlock("my passphrase")
        ```
    """

    def __init__(
        self,
        state_store: StateStore | None = None,
        observability_manager: ObservabilityManager | None = None,
        settings: ManagerSettings | dict[str, Any] | None = None,
        config: LLMManagerConfig | dict[str, Any] | None = None,
        adapters: list[ProviderAdapter] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize LLMKeyManager with dependencies.

        Args:
            state_store: Optional StateStore implementation. If not provided,
                       a SQLStateStore is used when settings.database_url is
                       set, otherwise an InMemoryStateStore.
            observability_manager: Optional ObservabilityManager implementation.
                                 If not provided, defaults to DefaultObservabilityManager.
            settings: Optional settings. Can be:
                   - ManagerSettings instance
                   - Dictionary with settings values
                   - None (loads from environment variables)
            config: Routing configuration merged over the built-in aliases
                   and fallback chains.
            adapters: Provider adapters to register right away.
            rng: Random source for backoff jitter.

        Raises:
            ValueError: If settings are invalid.
        """
        # Load settings
        if settings is None:
            self._settings = ManagerSettings()
        elif isinstance(settings, dict):
            self._settings = ManagerSettings.from_dict(settings)
        elif isinstance(settings, ManagerSettings):
            self._settings = settings
        else:
            raise ValueError(
                f"Invalid settings type: {type(settings)}. "
                "Expected ManagerSettings, dict, or None"
            )
        s = self._settings

        # Initialize StateStore (dependency injection support)
        if state_store is not None:
            self._state_store = state_store
        elif s.database_url:
            self._state_store = SQLStateStore(
                database_url=s.database_url,
                max_usage_entries=s.max_usage_entries,
                max_error_entries=s.max_error_entries,
            )
        else:
            self._state_store = InMemoryStateStore(
                max_usage_entries=s.max_usage_entries,
                max_error_entries=s.max_error_entries,
            )

        # Initialize ObservabilityManager (dependency injection support)
        if observability_manager is None:
            self._observability_manager = DefaultObservabilityManager(
                log_level=s.log_level, json_format=s.log_format == "json"
            )
        else:
            self._observability_manager = observability_manager

        if isinstance(config, dict):
            config = LLMManagerConfig(**config)
        self._config_manager = ConfigurationManager(
            base_config=DEFAULT_CONFIG.merge(config) if config is not None else DEFAULT_CONFIG,
            config_file_path=s.config_file,
            observability_manager=self._observability_manager,
        )

        self._key_locks = KeyLockRegistry()
        self._state_machine = AvailabilityStateMachine(
            policy=BackoffPolicy(
                base_delay_ms=s.base_backoff_ms,
                max_delay_ms=s.max_backoff_ms,
                jitter=s.backoff_jitter,
                quota_unknown_reset_ms=int(s.quota_unknown_reset_hours * 3_600_000),
                max_transient_retries=s.max_transient_retries,
                max_unknown_retries=s.max_unknown_retries,
            ),
            rng=rng,
        )

        self._vault = Vault(
            state_store=self._state_store,
            observability_manager=self._observability_manager,
            key_locks=self._key_locks,
            kdf_iterations=s.kdf_iterations,
            master_key=s.master_key,
            master_key_file=s.master_key_file,
        )
        self._availability = AvailabilityManager(
            state_store=self._state_store,
            observability_manager=self._observability_manager,
            key_locks=self._key_locks,
            state_machine=self._state_machine,
        )
        self._usage_log = UsageLog(state_store=self._state_store)
        self._quota_ledger = QuotaLedger(
            state_store=self._state_store,
            observability_manager=self._observability_manager,
            key_locks=self._key_locks,
            usage_log=self._usage_log,
        )

        self._safety_guard = SafetyGuard(self._observability_manager)

        # Provider-adapter mapping (shared with the engine and prober)
        self._adapters: dict[str, ProviderAdapter] = {}

        self._selection_engine = SelectionEngine(
            vault=self._vault,
            availability_manager=self._availability,
            quota_ledger=self._quota_ledger,
            usage_log=self._usage_log,
            observability_manager=self._observability_manager,
            adapters=self._adapters,
            config_provider=self._config_manager.get_config,
            default_timeout_seconds=s.default_timeout_seconds,
            safety_guard=self._safety_guard,
        )
        self._health_prober = HealthProber(
            vault=self._vault,
            availability_manager=self._availability,
            quota_ledger=self._quota_ledger,
            observability_manager=self._observability_manager,
            adapters=self._adapters,
            config_provider=self._config_manager.get_config,
            probe_timeout_seconds=s.default_timeout_seconds,
            revalidation_interval=timedelta(hours=s.revalidation_interval_hours),
            safety_guard=self._safety_guard,
        )

        self._initialized = False
        self._init_lock = asyncio.Lock()

        for adapter in adapters or []:
            self.register_adapter(adapter)

    async def __aenter__(self) -> "LLMKeyManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Create storage tables and load the configuration file, once."""
        async with self._init_lock:
            if self._initialized:
                return
            if isinstance(self._state_store, SQLStateStore):
                await self._state_store.initialize()
            if self._settings.config_file:
                await self._config_manager.load_configuration()
            self._initialized = True

    async def close(self) -> None:
        """Lock the vault and release storage resources."""
        await self._vault.lock()
        await self._state_store.close()

    @property
    def settings(self) -> ManagerSettings:
        return self._settings

    @property
    def state_store(self) -> StateStore:
        return self._state_store

    @property
    def observability_manager(self) -> ObservabilityManager:
        return self._observability_manager

    @property
    def vault(self) -> Vault:
        return self._vault

    @property
    def availability_manager(self) -> AvailabilityManager:
        return self._availability

    @property
    def quota_ledger(self) -> QuotaLedger:
        return self._quota_ledger

    @property
    def usage_log(self) -> UsageLog:
        return self._usage_log

    @property
    def selection_engine(self) -> SelectionEngine:
        return self._selection_engine

    @property
    def health_prober(self) -> HealthProber:
        return self._health_prober

    @property
    def safety_guard(self) -> SafetyGuard:
        return self._safety_guard

    @property
    def config_manager(self) -> ConfigurationManager:
        return self._config_manager

    # Providers

    def register_adapter(self, adapter: ProviderAdapter, overwrite: bool = False) -> None:
        """Register a provider adapter under its provider_id.

        Raises:
            ValueError: If adapter is not a ProviderAdapter, its provider_id is
                invalid, or the provider is already registered and overwrite
                is False.
        """
        if not isinstance(adapter, ProviderAdapter):
            raise ValueError(
                f"adapter must be an instance of ProviderAdapter, got: {type(adapter)}"
            )
        provider_id = validate_provider_id(adapter.provider_id)
        if provider_id in self._adapters and not overwrite:
            raise ValueError(
                f"Provider '{provider_id}' is already registered. "
                "Use overwrite=True to replace it."
            )
        self._adapters[provider_id] = adapter

    @property
    def providers(self) -> list[str]:
        return list(self._adapters)

    # Vault

    @property
    def is_unlocked(self) -> bool:
        return self._vault.is_unlocked

    async def unlock(self, passphrase: str | None = None) -> None:
        await self.initialize()
        await self._vault.unlock(passphrase)

    async def lock(self) -> None:
        await self._vault.lock()

    async def add_key(
        self,
        provider_id: str,
        secret: str,
        label: str = "",
        priority: KeyPriority | str = KeyPriority.Medium,
    ) -> KeyRecord:
        """Store a new provider key. See Vault.add_key()."""
        await self.initialize()
        return await self._vault.add_key(provider_id, secret, label=label, priority=priority)

    async def revoke_key(self, key_id: str) -> KeyRecord:
        return await self._vault.revoke(key_id)

    async def rotate_key(self, key_id: str, new_secret: str) -> KeyRecord:
        """Replace a key's secret and put its models back to Untested."""
        record = await self._vault.rotate_key(key_id, new_secret)
        await self._availability.reset_key(key_id)
        await self._safety_guard.reset_circuit(key_id)
        return record

    async def delete_key(self, key_id: str) -> None:
        await self._vault.delete_key(key_id)

    async def set_key_enabled(self, key_id: str, enabled: bool) -> KeyRecord:
        """Enable or disable a key.

        Re-enabling starts the key over: its models go back to Untested, its
        verification status to Untested and its circuit breaker is closed.
        """
        record = await self._vault.update_metadata(key_id, {"is_enabled": enabled})
        if record.is_enabled:
            record = await self._vault.update_metadata(
                key_id,
                {
                    "verification_status": KeyVerificationStatus.Untested,
                    "next_retry_at": None,
                    "retry_after": None,
                },
            )
            await self._availability.reset_key(key_id)
            await self._safety_guard.reset_circuit(key_id)
        return record

    async def update_key(self, key_id: str, patch: dict[str, Any]) -> KeyRecord:
        """Patch key metadata. An ``is_enabled`` entry goes through set_key_enabled()."""
        if not isinstance(patch, dict) or "is_enabled" not in patch:
            return await self._vault.update_metadata(key_id, patch)
        rest = {k: v for k, v in patch.items() if k != "is_enabled"}
        if rest:
            await self._vault.update_metadata(key_id, rest)
        return await self.set_key_enabled(key_id, patch["is_enabled"])

    async def list_keys(
        self,
        provider_id: str | None = None,
        include_revoked: bool = False,
    ) -> list[KeyRecord]:
        await self.initialize()
        return await self._vault.list_keys(provider_id, include_revoked=include_revoked)

    async def export_vault(self) -> str:
        await self.initialize()
        return await self._vault.export_vault()

    async def import_vault(self, payload: str) -> int:
        await self.initialize()
        return await self._vault.import_vault(payload)

    # Configuration

    async def configure(self, config: LLMManagerConfig | dict[str, Any]) -> LLMManagerConfig:
        """Merge aliases, capability overrides and fallback chains into the active config."""
        return await self._config_manager.configure(config)

    async def reload_config(self) -> LLMManagerConfig:
        return await self._config_manager.reload()

    def get_config(self) -> LLMManagerConfig:
        return self._config_manager.get_config()

    # Requests

    async def execute(
        self,
        request: ChatRequest | EmbeddingRequest,
        timeout: float | None = None,
    ) -> ChatResponse | EmbeddingResponse:
        """Route a request with failover. See SelectionEngine.execute()."""
        await self.initialize()
        return await self._selection_engine.execute(request, timeout=timeout)

    async def chat(
        self,
        model: str,
        messages: list[ChatMessage | dict[str, str]],
        provider_id: str | None = None,
        timeout: float | None = None,
        **parameters: Any,
    ) -> ChatResponse:
        """Send a chat request to a model id, alias or capability tag.

        ``temperature`` and ``max_tokens`` are passed as request fields; other
        keyword arguments go to the adapter as extra parameters.
        """
        request = ChatRequest(
            model=model,
            messages=messages,
            provider_id=provider_id,
            temperature=parameters.pop("temperature", None),
            max_tokens=parameters.pop("max_tokens", None),
            parameters=parameters,
        )
        return await self.execute(request, timeout=timeout)

    async def embed(
        self,
        model: str,
        texts: list[str],
        provider_id: str | None = None,
        timeout: float | None = None,
    ) -> EmbeddingResponse:
        request = EmbeddingRequest(model=model, input=texts, provider_id=provider_id)
        return await self.execute(request, timeout=timeout)

    # Probing

    async def probe_key(self, key_id: str) -> ProbeOutcome:
        await self.initialize()
        return await self._health_prober.probe_key(key_id)

    async def probe_due(self, now: datetime | None = None) -> list[ProbeOutcome]:
        await self.initialize()
        return await self._health_prober.probe_due(now)

    async def run_probes(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Probe due keys every ``interval_seconds`` until ``stop_event`` is set."""
        await self.initialize()
        await self._health_prober.run_periodically(interval_seconds, stop_event)

    # Dashboard reads

    async def get_usage(
        self,
        key_id: str | None = None,
        provider_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[UsageDataPoint]:
        """Usage records, newest first."""
        await self.initialize()
        return await self._usage_log.query_usage(
            StateQuery(
                key_id=key_id,
                provider_id=provider_id,
                timestamp_from=since,
                limit=limit,
                newest_first=True,
            )
        )

    async def get_errors(
        self,
        key_id: str | None = None,
        provider_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ErrorLogEntry]:
        """Error records, newest first."""
        await self.initialize()
        return await self._usage_log.query_errors(
            StateQuery(
                key_id=key_id,
                provider_id=provider_id,
                timestamp_from=since,
                limit=limit,
                newest_first=True,
            )
        )

    async def get_transitions(
        self, key_id: str | None = None, limit: int | None = None
    ) -> list[StateTransition]:
        await self.initialize()
        return await self._state_store.query_transitions(
            StateQuery(key_id=key_id, limit=limit, newest_first=True)
        )

    async def get_quota(self, key_id: str) -> KeyQuota:
        await self.initialize()
        return await self._quota_ledger.get_quota(key_id)

    async def set_quota_limit(
        self, key_id: str, limit: int | None, reset_time: datetime | None = None
    ) -> KeyQuota:
        """Set a manual token ceiling for a key; None removes it."""
        await self.initialize()
        return await self._quota_ledger.set_limit(key_id, limit, reset_time)

    async def get_model_states(
        self, key_id: str | None = None, model_id: str | None = None
    ) -> list[VerifiedModelMetadata]:
        await self.initialize()
        return await self._availability.list_metadata(key_id=key_id, model_id=model_id)

    async def reset_model_states(self, key_id: str) -> list[VerifiedModelMetadata]:
        """Manually reset every model of a key to Untested."""
        return await self._availability.reset_key(key_id)

    def safety_status(self) -> SafetyStatus:
        """Kill switches and key circuits currently in force."""
        return self._safety_guard.status()

    async def usage_summary(
        self,
        provider_id: str | None = None,
        since: datetime | None = None,
    ) -> UsageSummary:
        await self.initialize()
        return await self._usage_log.usage_summary(provider_id=provider_id, since=since)

    async def error_summary(self, since: datetime | None = None) -> dict[ErrorKind, int]:
        await self.initialize()
        return await self._usage_log.error_summary(since)

    async def usage_last_hours(self, hours: float = 24) -> UsageSummary:
        """Summary of the trailing ``hours`` hours."""
        return await self.usage_summary(
            since=datetime.now(timezone.utc) - timedelta(hours=hours)
        )
