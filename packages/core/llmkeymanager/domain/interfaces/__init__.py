"""Domain interfaces for dependency injection."""

from llmkeymanager.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)
from llmkeymanager.domain.interfaces.provider_adapter import (
    ProviderAdapter,
    ProviderAdapterProtocol,
)
from llmkeymanager.domain.interfaces.state_store import (
    StateQuery,
    StateStore,
    StateStoreError,
)

__all__ = [
    "ObservabilityError",
    "ObservabilityManager",
    "ProviderAdapter",
    "ProviderAdapterProtocol",
    "StateQuery",
    "StateStore",
    "StateStoreError",
]
