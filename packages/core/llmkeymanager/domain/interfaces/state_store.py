"""StateStore interface for state persistence and retrieval.

This module defines the abstract StateStore interface that provides a consistent
API for persisting keys, per-(key, model) metadata, quotas and the append-only
usage, error and transition logs across storage backends (in-memory, SQLite).

Example:
    ```python
    from llmkeymanager.domain.interfaces.state_store import StateQuery, StateStore
    from llmkeymanager.infrastructure.state_store.memory_store import InMemoryStateStore

    store: StateStore = InMemoryStateStore()

    await store.save_key(record)
    retrieved = await store.get_key(record.id)

    errors = await store.query_errors(StateQuery(key_id=record.id, limit=50))
    ```
"""

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from llmkeymanager.domain.models.key_quota import KeyQuota
from llmkeymanager.domain.models.key_record import KeyRecord
from llmkeymanager.domain.models.state_transition import StateTransition
from llmkeymanager.domain.models.usage import ErrorLogEntry, UsageDataPoint
from llmkeymanager.domain.models.verified_model import VerifiedModelMetadata


class StateQuery(BaseModel):
    """Filter for append-only log queries.

    Attributes:
        key_id: Filter by key ID. If None, matches all keys.
        provider_id: Filter by provider ID. If None, matches all providers.
        model_id: Filter by model ID. If None, matches all models.
        timestamp_from: Start of timestamp range filter (inclusive).
        timestamp_to: End of timestamp range filter (inclusive).
        limit: Maximum number of results to return.
        offset: Number of results to skip.
        newest_first: Return most recent entries first.

    Example:
        ```python
        query = StateQuery(provider_id="openai", limit=100, newest_first=True)
        recent = await store.query_usage(query)
        ```
    """

    key_id: str | None = Field(default=None, description="Filter by specific key ID")
    provider_id: str | None = Field(default=None, description="Filter by provider ID")
    model_id: str | None = Field(default=None, description="Filter by model ID")
    timestamp_from: datetime | None = Field(default=None, description="Start of range")
    timestamp_to: datetime | None = Field(default=None, description="End of range")
    limit: int | None = Field(default=None, ge=1)
    offset: int | None = Field(default=None, ge=0)
    newest_first: bool = Field(default=False)

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        protected_namespaces=(),
    )


class StateStore(ABC):
    """Abstract interface for state persistence and retrieval.

    All methods are async to support non-blocking I/O. Implementations raise
    StateStoreError for operation failures. Usage, error and transition
    records are append-only: implementations never update them in place and
    may only drop the oldest entries when a retention cap is configured.

    Writers are expected to serialize per key (see KeyLockRegistry); stores
    only need to make individual operations atomic.
    """

    # Keys

    @abstractmethod
    async def save_key(self, key: KeyRecord) -> None:
        """Save a key record (upsert by id).

        Raises:
            StateStoreError: If save operation fails.
        """

    @abstractmethod
    async def get_key(self, key_id: str) -> KeyRecord | None:
        """Retrieve a key record by ID, or None if it does not exist."""

    @abstractmethod
    async def list_keys(self, provider_id: str | None = None) -> list[KeyRecord]:
        """List key records in insertion order, optionally filtered by provider."""

    @abstractmethod
    async def find_keys_by_fingerprint(self, fingerprint: str) -> list[KeyRecord]:
        """Return every key record (revoked or not) with the given fingerprint."""

    @abstractmethod
    async def delete_key(self, key_id: str) -> bool:
        """Physically delete a key record.

        Returns:
            True if a record was deleted.
        """

    # Per-(key, model) metadata

    @abstractmethod
    async def save_model_metadata(self, metadata: VerifiedModelMetadata) -> None:
        """Save metadata for a (key, model) pair (upsert)."""

    @abstractmethod
    async def get_model_metadata(
        self, key_id: str, model_id: str
    ) -> VerifiedModelMetadata | None:
        """Retrieve metadata for a (key, model) pair."""

    @abstractmethod
    async def list_model_metadata(
        self,
        key_id: str | None = None,
        model_id: str | None = None,
    ) -> list[VerifiedModelMetadata]:
        """List metadata in insertion order, optionally filtered by key and/or model."""

    @abstractmethod
    async def delete_model_metadata(self, key_id: str) -> int:
        """Delete all metadata owned by a key.

        Returns:
            Number of deleted entries.
        """

    # Quotas

    @abstractmethod
    async def save_quota(self, quota: KeyQuota) -> None:
        """Save a key's quota ledger entry (upsert by key_id)."""

    @abstractmethod
    async def get_quota(self, key_id: str) -> KeyQuota | None:
        """Retrieve a key's quota ledger entry."""

    @abstractmethod
    async def delete_quota(self, key_id: str) -> bool:
        """Delete a key's quota ledger entry."""

    # Append-only logs

    @abstractmethod
    async def append_usage(self, point: UsageDataPoint) -> None:
        """Append a usage record."""

    @abstractmethod
    async def append_error(self, entry: ErrorLogEntry) -> None:
        """Append an error log record."""

    @abstractmethod
    async def save_state_transition(self, transition: StateTransition) -> None:
        """Append a state transition to the audit trail."""

    @abstractmethod
    async def query_usage(self, query: StateQuery) -> list[UsageDataPoint]:
        """Query usage records."""

    @abstractmethod
    async def query_errors(self, query: StateQuery) -> list[ErrorLogEntry]:
        """Query error log records."""

    @abstractmethod
    async def query_transitions(self, query: StateQuery) -> list[StateTransition]:
        """Query state transitions."""

    # Vault metadata (salt, verifier)

    @abstractmethod
    async def get_vault_meta(self, name: str) -> str | None:
        """Read a vault metadata value."""

    @abstractmethod
    async def set_vault_meta(self, name: str, value: str) -> None:
        """Write a vault metadata value."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""
        return None


class StateStoreError(Exception):
    """Raised when StateStore operations fail.

    Example:
        ```python
        try:
            await store.save_key(record)
        except StateStoreError as e:
            await observability.log("ERROR", f"Failed to save key: {e}")
        ```
    """

    pass
