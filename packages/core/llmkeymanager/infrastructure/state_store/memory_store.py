"""In-memory state store implementation.

This module provides an in-memory implementation of the StateStore interface
using Python dictionaries. It needs no external dependencies and is the
default store for tests and short-lived processes.

Example:
    ```python
    from llmkeymanager.infrastructure.state_store.memory_store import InMemoryStateStore

    # Create store instance
    store = InMemoryStateStore(max_usage_entries=500)

    # Save a key
    await store.save_key(record)

    # Retrieve a key
    retrieved = await store.get_key(record.id)
    ```
"""

import asyncio
from collections.abc import Iterable
from typing import TypeVar

from llmkeymanager.domain.interfaces.state_store import (
    StateQuery,
    StateStore,
    StateStoreError,
)
from llmkeymanager.domain.models.key_quota import KeyQuota
from llmkeymanager.domain.models.key_record import KeyRecord
from llmkeymanager.domain.models.state_transition import StateTransition
from llmkeymanager.domain.models.usage import ErrorLogEntry, UsageDataPoint
from llmkeymanager.domain.models.verified_model import VerifiedModelMetadata

_Entry = TypeVar("_Entry", UsageDataPoint, ErrorLogEntry, StateTransition)


class InMemoryStateStore(StateStore):
    """In-memory implementation of StateStore interface.

    Thread Safety:
        - Write operations use an asyncio.Lock
        - Read operations are safe without locks (dict reads are atomic in Python)

    Records are copied on the way in and on the way out, so callers can
    mutate what they get back without touching stored state.

    Attributes:
        _keys: KeyRecord objects keyed by id, in insertion order
        _metadata: VerifiedModelMetadata keyed by (key_id, model_id)
        _quotas: KeyQuota objects keyed by key_id
        _usage: Append-only UsageDataPoint log
        _errors: Append-only ErrorLogEntry log
        _state_transitions: Append-only StateTransition log
        _vault_meta: Vault salt and verifier
        _write_lock: asyncio.Lock for write operations
    """

    def __init__(
        self,
        max_usage_entries: int = 1000,
        max_error_entries: int = 500,
        max_transitions: int = 1000,
    ) -> None:
        """Initialize InMemoryStateStore with empty storage.

        Args:
            max_usage_entries: Maximum number of usage records to keep.
                When the limit is reached the oldest records are removed (FIFO).
                Set to 0 or negative for unlimited storage.
            max_error_entries: Maximum number of error records to keep (FIFO).
            max_transitions: Maximum number of state transitions to keep (FIFO).
        """
        self._keys: dict[str, KeyRecord] = {}
        self._metadata: dict[tuple[str, str], VerifiedModelMetadata] = {}
        self._quotas: dict[str, KeyQuota] = {}
        self._usage: list[UsageDataPoint] = []
        self._errors: list[ErrorLogEntry] = []
        self._state_transitions: list[StateTransition] = []
        self._vault_meta: dict[str, str] = {}

        # 0 means unlimited
        self._max_usage = max(max_usage_entries, 0)
        self._max_errors = max(max_error_entries, 0)
        self._max_transitions = max(max_transitions, 0)

        self._write_lock = asyncio.Lock()

    async def save_key(self, key: KeyRecord) -> None:
        """Save a key record (upsert)."""
        try:
            async with self._write_lock:
                self._keys[key.id] = key.model_copy(deep=True)
        except Exception as e:
            raise StateStoreError(f"Failed to save key {key.id}: {e}") from e

    async def get_key(self, key_id: str) -> KeyRecord | None:
        key = self._keys.get(key_id)
        return key.model_copy(deep=True) if key is not None else None

    async def list_keys(self, provider_id: str | None = None) -> list[KeyRecord]:
        return [
            key.model_copy(deep=True)
            for key in self._keys.values()
            if provider_id is None or key.provider_id == provider_id
        ]

    async def find_keys_by_fingerprint(self, fingerprint: str) -> list[KeyRecord]:
        return [
            key.model_copy(deep=True)
            for key in self._keys.values()
            if key.fingerprint == fingerprint
        ]

    async def delete_key(self, key_id: str) -> bool:
        async with self._write_lock:
            return self._keys.pop(key_id, None) is not None

    async def save_model_metadata(self, metadata: VerifiedModelMetadata) -> None:
        try:
            async with self._write_lock:
                self._metadata[(metadata.key_id, metadata.model_id)] = metadata.model_copy(
                    deep=True
                )
        except Exception as e:
            raise StateStoreError(
                f"Failed to save metadata for {metadata.key_id}:{metadata.model_id}: {e}"
            ) from e

    async def get_model_metadata(
        self, key_id: str, model_id: str
    ) -> VerifiedModelMetadata | None:
        metadata = self._metadata.get((key_id, model_id))
        return metadata.model_copy(deep=True) if metadata is not None else None

    async def list_model_metadata(
        self,
        key_id: str | None = None,
        model_id: str | None = None,
    ) -> list[VerifiedModelMetadata]:
        return [
            m.model_copy(deep=True)
            for (k, mid), m in self._metadata.items()
            if (key_id is None or k == key_id) and (model_id is None or mid == model_id)
        ]

    async def delete_model_metadata(self, key_id: str) -> int:
        async with self._write_lock:
            pairs = [pair for pair in self._metadata if pair[0] == key_id]
            for pair in pairs:
                del self._metadata[pair]
            return len(pairs)

    async def save_quota(self, quota: KeyQuota) -> None:
        try:
            async with self._write_lock:
                self._quotas[quota.key_id] = quota.model_copy(deep=True)
        except Exception as e:
            raise StateStoreError(f"Failed to save quota for key {quota.key_id}: {e}") from e

    async def get_quota(self, key_id: str) -> KeyQuota | None:
        quota = self._quotas.get(key_id)
        return quota.model_copy(deep=True) if quota is not None else None

    async def delete_quota(self, key_id: str) -> bool:
        async with self._write_lock:
            return self._quotas.pop(key_id, None) is not None

    async def append_usage(self, point: UsageDataPoint) -> None:
        """Append a usage record, dropping the oldest beyond max_usage_entries."""
        async with self._write_lock:
            self._append_capped(self._usage, point, self._max_usage)

    async def append_error(self, entry: ErrorLogEntry) -> None:
        async with self._write_lock:
            self._append_capped(self._errors, entry, self._max_errors)

    async def save_state_transition(self, transition: StateTransition) -> None:
        try:
            async with self._write_lock:
                self._append_capped(self._state_transitions, transition, self._max_transitions)
        except Exception as e:
            raise StateStoreError(
                f"Failed to save state transition for "
                f"{transition.key_id}:{transition.model_id}: {e}"
            ) from e

    @staticmethod
    def _append_capped(log: list[_Entry], entry: _Entry, limit: int) -> None:
        log.append(entry)
        # Enforce limit (FIFO removal)
        if limit > 0 and len(log) > limit:
            del log[: len(log) - limit]

    async def query_usage(self, query: StateQuery) -> list[UsageDataPoint]:
        return self._apply_query(
            (p for p in self._usage if self._matches(p.key_id, p.provider_id, p.model_id, query)),
            query,
            timestamp=lambda p: p.timestamp,
        )

    async def query_errors(self, query: StateQuery) -> list[ErrorLogEntry]:
        return self._apply_query(
            (e for e in self._errors if self._matches(e.key_id, e.provider_id, e.model_id, query)),
            query,
            timestamp=lambda e: e.timestamp,
        )

    async def query_transitions(self, query: StateQuery) -> list[StateTransition]:
        # Transitions carry no provider id; the provider filter does not apply
        return self._apply_query(
            (
                t
                for t in self._state_transitions
                if self._matches(t.key_id, None, t.model_id, query)
            ),
            query,
            timestamp=lambda t: t.transition_timestamp,
        )

    @staticmethod
    def _matches(
        key_id: str, provider_id: str | None, model_id: str, query: StateQuery
    ) -> bool:
        if query.key_id is not None and key_id != query.key_id:
            return False
        if query.provider_id is not None and provider_id is not None:
            if provider_id != query.provider_id:
                return False
        return query.model_id is None or model_id == query.model_id

    @staticmethod
    def _apply_query(entries: Iterable[_Entry], query: StateQuery, timestamp) -> list[_Entry]:
        results = [
            entry
            for entry in entries
            if (query.timestamp_from is None or timestamp(entry) >= query.timestamp_from)
            and (query.timestamp_to is None or timestamp(entry) <= query.timestamp_to)
        ]
        if query.newest_first:
            results.reverse()

        # Apply pagination
        if query.offset is not None:
            results = results[query.offset :]
        if query.limit is not None:
            results = results[: query.limit]
        return results

    async def get_vault_meta(self, name: str) -> str | None:
        return self._vault_meta.get(name)

    async def set_vault_meta(self, name: str, value: str) -> None:
        async with self._write_lock:
            self._vault_meta[name] = value
