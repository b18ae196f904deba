"""Pytest configuration and shared fixtures."""
import asyncio
import os
from base64 import b64encode
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from dotenv import load_dotenv

from llmkeymanager.domain.components.availability_manager import AvailabilityManager
from llmkeymanager.domain.components.availability_state_machine import (
    AvailabilityStateMachine,
    BackoffPolicy,
)
from llmkeymanager.domain.components.key_locks import KeyLockRegistry
from llmkeymanager.domain.components.quota_ledger import QuotaLedger
from llmkeymanager.domain.components.usage_log import UsageLog
from llmkeymanager.domain.components.vault import Vault
from llmkeymanager.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)
from llmkeymanager.domain.interfaces.provider_adapter import ProviderAdapter
from llmkeymanager.domain.models.key_record import RateLimitData
from llmkeymanager.domain.models.request import (
    ChatResponse,
    EmbeddingRequest,
    EmbeddingResponse,
    TokenUsage,
)
from llmkeymanager.infrastructure.state_store.memory_store import InMemoryStateStore
from llmkeymanager.infrastructure.utils.encryption import generate_master_key

# Load .env file from project root before running tests
project_root = Path(__file__).parent.parent.parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    # Fallback: try loading from packages/core
    core_env_path = project_root / "packages" / "core" / ".env"
    if core_env_path.exists():
        load_dotenv(core_env_path)

# Ensure a platform master key is set for all tests
# If not set in .env, generate a test key
if not os.getenv("LLMKEYMANAGER_MASTER_KEY"):
    os.environ["LLMKEYMANAGER_MASTER_KEY"] = b64encode(generate_master_key()).decode("ascii")


class MockObservabilityManager(ObservabilityManager):
    """Records events and logs instead of writing them."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.logs: list[dict[str, Any]] = []
        self.emit_error: Exception | None = None

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.emit_error:
            raise self.emit_error
        self.events.append({"event_type": event_type, "payload": payload, "metadata": metadata})

    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.logs.append({"level": level, "message": message, "context": context})

    def events_of(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event_type"] == event_type]


class ProviderError(Exception):
    """Provider-native error shaped like the ones SDK clients raise."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers or {}


class ScriptedAdapter(ProviderAdapter):
    """Adapter whose outcomes are scripted per secret.

    Each call to complete() or probe_health() takes the next scripted outcome
    for the secret. An exception is raised, a response is returned, and an
    empty script falls back to a default success.
    """

    def __init__(
        self,
        provider_id: str = "openai",
        model_prefixes: tuple[str, ...] = ("gpt-",),
        models: list[str] | None = None,
        rate_limits: RateLimitData | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.base_url = f"https://api.{provider_id}.test/v1"
        self.model_prefixes = model_prefixes
        self.models = models if models is not None else ["gpt-4o", "gpt-4o-mini"]
        self.rate_limits = rate_limits
        self.calls: list[tuple[str, str]] = []
        self.probe_calls: list[str] = []
        self.delays: dict[str, float] = {}
        self.tier: str | None = None
        self._complete_script: dict[str, list[Any]] = {}
        self._probe_script: dict[str, list[Any]] = {}

    def script(self, secret: str, *outcomes: Any) -> None:
        self._complete_script.setdefault(secret, []).extend(outcomes)

    def script_probe(self, secret: str, *outcomes: Any) -> None:
        self._probe_script.setdefault(secret, []).extend(outcomes)

    @staticmethod
    def _next(script: dict[str, list[Any]], secret: str) -> Any:
        queue = script.get(secret)
        return queue.pop(0) if queue else None

    async def complete(self, secret, request):
        self.calls.append((secret, request.model))
        delay = self.delays.get(secret)
        if delay:
            await asyncio.sleep(delay)
        outcome = self._next(self._complete_script, secret)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        if isinstance(request, EmbeddingRequest):
            return EmbeddingResponse(
                embeddings=[[0.1, 0.2, 0.3] for _ in request.input],
                usage=TokenUsage(input_tokens=len(request.input)),
            )
        return ChatResponse(
            content=f"reply from {request.model}",
            usage=TokenUsage(input_tokens=10, output_tokens=5),
        )

    async def probe_health(self, secret, base_url=None):
        self.probe_calls.append(secret)
        delay = self.delays.get(secret)
        if delay:
            await asyncio.sleep(delay)
        outcome = self._next(self._probe_script, secret)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome or self.rate_limits or RateLimitData()

    async def list_models(self, secret):
        return list(self.models)

    def detect_tier(self, rate_limits):
        return self.tier


@pytest.fixture
def observability() -> MockObservabilityManager:
    return MockObservabilityManager()


@pytest.fixture
def failing_observability() -> MockObservabilityManager:
    manager = MockObservabilityManager()
    manager.emit_error = ObservabilityError("sink unavailable")
    return manager


@pytest.fixture
def provider_error() -> type[ProviderError]:
    return ProviderError


@pytest.fixture
def make_adapter():
    """Factory for scripted adapters."""

    def _make(**kwargs: Any) -> ScriptedAdapter:
        return ScriptedAdapter(**kwargs)

    return _make


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def key_locks() -> KeyLockRegistry:
    return KeyLockRegistry()


@pytest.fixture
def state_machine() -> AvailabilityStateMachine:
    """State machine without jitter so retry times are exact."""
    return AvailabilityStateMachine(policy=BackoffPolicy(jitter=0))


@pytest.fixture
def master_key_b64() -> str:
    return b64encode(generate_master_key()).decode("ascii")


@pytest_asyncio.fixture
async def vault(store, observability, key_locks, master_key_b64) -> Vault:
    """Vault unlocked with a platform key."""
    vault = Vault(
        state_store=store,
        observability_manager=observability,
        key_locks=key_locks,
        kdf_iterations=1000,
        master_key=master_key_b64,
    )
    await vault.unlock()
    return vault


@pytest.fixture
def availability(store, observability, key_locks, state_machine) -> AvailabilityManager:
    return AvailabilityManager(
        state_store=store,
        observability_manager=observability,
        key_locks=key_locks,
        state_machine=state_machine,
    )


@pytest.fixture
def usage_log(store) -> UsageLog:
    return UsageLog(state_store=store)


@pytest.fixture
def ledger(store, observability, key_locks, usage_log) -> QuotaLedger:
    return QuotaLedger(
        state_store=store,
        observability_manager=observability,
        key_locks=key_locks,
        usage_log=usage_log,
    )
