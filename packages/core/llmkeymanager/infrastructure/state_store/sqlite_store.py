"""SQLite state store implementation.

Persists keys, availability metadata, quotas, the append-only logs and the
vault salt/verifier in a local SQLite file through SQLAlchemy's asyncio
extension and aiosqlite. State survives process restarts.

Example:
    ```python
    from llmkeymanager.infrastructure.state_store.sqlite_store import SQLStateStore

    store = SQLStateStore("sqlite+aiosqlite:///./llmkeymanager.db")
    await store.initialize()
    await store.save_key(record)
    ...
    await store.close()
    ```
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

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
from llmkeymanager.infrastructure.state_store.sql_models import (
    Base,
    ErrorLogRow,
    KeyRow,
    ModelMetadataRow,
    QuotaRow,
    StateTransitionRow,
    UsageLogRow,
    VaultMetaRow,
)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./llmkeymanager.db"


def _to_db(value: datetime) -> datetime:
    """Normalize to naive UTC; SQLite has no timezone-aware column type."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SQLStateStore(StateStore):
    """SQLAlchemy implementation of StateStore.

    Domain objects are stored as JSON payloads next to indexed filter
    columns. Usage, error and transition logs are capped; the oldest rows
    are deleted once a cap is exceeded.

    Call initialize() once before use to create missing tables.
    """

    def __init__(
        self,
        database_url: str = DEFAULT_DATABASE_URL,
        max_usage_entries: int = 1000,
        max_error_entries: int = 500,
        max_transitions: int = 1000,
        echo: bool = False,
    ) -> None:
        """Initialize SQLStateStore.

        Args:
            database_url: SQLAlchemy async URL, e.g. ``sqlite+aiosqlite:///path.db``.
            max_usage_entries: Usage rows to keep. 0 or negative for unlimited.
            max_error_entries: Error rows to keep.
            max_transitions: State transition rows to keep.
            echo: Log emitted SQL.
        """
        self._engine = create_async_engine(database_url, echo=echo)
        self._session_factory = async_sessionmaker(
            self._engine, expire_on_commit=False, class_=AsyncSession
        )
        self._max_usage = max(max_usage_entries, 0)
        self._max_errors = max(max_error_entries, 0)
        self._max_transitions = max(max_transitions, 0)

    async def initialize(self) -> None:
        """Create missing tables."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to initialize database: {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncIterator[AsyncSession]:
        """Session that commits on success and rolls back on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StateStoreError(f"Failed to {action}: {e}") from e

    # Keys

    async def save_key(self, key: KeyRecord) -> None:
        async with self._session(f"save key {key.id}") as session:
            await session.merge(
                KeyRow(
                    id=key.id,
                    provider_id=key.provider_id,
                    fingerprint=key.fingerprint,
                    created_at=_to_db(key.created_at),
                    payload=key.model_dump(mode="json"),
                )
            )

    async def get_key(self, key_id: str) -> KeyRecord | None:
        async with self._session(f"get key {key_id}") as session:
            row = await session.get(KeyRow, key_id)
            return KeyRecord.model_validate(row.payload) if row is not None else None

    async def list_keys(self, provider_id: str | None = None) -> list[KeyRecord]:
        stmt = select(KeyRow.payload).order_by(KeyRow.created_at, KeyRow.id)
        if provider_id is not None:
            stmt = stmt.where(KeyRow.provider_id == provider_id)
        async with self._session("list keys") as session:
            return [KeyRecord.model_validate(p) for p in await session.scalars(stmt)]

    async def find_keys_by_fingerprint(self, fingerprint: str) -> list[KeyRecord]:
        stmt = select(KeyRow.payload).where(KeyRow.fingerprint == fingerprint)
        async with self._session("find keys by fingerprint") as session:
            return [KeyRecord.model_validate(p) for p in await session.scalars(stmt)]

    async def delete_key(self, key_id: str) -> bool:
        async with self._session(f"delete key {key_id}") as session:
            result = await session.execute(delete(KeyRow).where(KeyRow.id == key_id))
            return result.rowcount > 0

    # Availability metadata

    async def save_model_metadata(self, metadata: VerifiedModelMetadata) -> None:
        async with self._session(
            f"save metadata for {metadata.key_id}:{metadata.model_id}"
        ) as session:
            await session.merge(
                ModelMetadataRow(
                    key_id=metadata.key_id,
                    model_id=metadata.model_id,
                    provider_id=metadata.provider_id,
                    payload=metadata.model_dump(mode="json", exclude={"is_available"}),
                )
            )

    async def get_model_metadata(
        self, key_id: str, model_id: str
    ) -> VerifiedModelMetadata | None:
        async with self._session(f"get metadata for {key_id}:{model_id}") as session:
            row = await session.get(ModelMetadataRow, (key_id, model_id))
            return VerifiedModelMetadata.model_validate(row.payload) if row is not None else None

    async def list_model_metadata(
        self,
        key_id: str | None = None,
        model_id: str | None = None,
    ) -> list[VerifiedModelMetadata]:
        stmt = select(ModelMetadataRow.payload).order_by(
            ModelMetadataRow.key_id, ModelMetadataRow.model_id
        )
        if key_id is not None:
            stmt = stmt.where(ModelMetadataRow.key_id == key_id)
        if model_id is not None:
            stmt = stmt.where(ModelMetadataRow.model_id == model_id)
        async with self._session("list model metadata") as session:
            return [VerifiedModelMetadata.model_validate(p) for p in await session.scalars(stmt)]

    async def delete_model_metadata(self, key_id: str) -> int:
        async with self._session(f"delete metadata of key {key_id}") as session:
            result = await session.execute(
                delete(ModelMetadataRow).where(ModelMetadataRow.key_id == key_id)
            )
            return result.rowcount

    # Quotas

    async def save_quota(self, quota: KeyQuota) -> None:
        async with self._session(f"save quota for key {quota.key_id}") as session:
            await session.merge(
                QuotaRow(key_id=quota.key_id, payload=quota.model_dump(mode="json"))
            )

    async def get_quota(self, key_id: str) -> KeyQuota | None:
        async with self._session(f"get quota for key {key_id}") as session:
            row = await session.get(QuotaRow, key_id)
            return KeyQuota.model_validate(row.payload) if row is not None else None

    async def delete_quota(self, key_id: str) -> bool:
        async with self._session(f"delete quota for key {key_id}") as session:
            result = await session.execute(delete(QuotaRow).where(QuotaRow.key_id == key_id))
            return result.rowcount > 0

    # Append-only logs

    async def _append(self, row: Any, row_type: Any, limit: int, action: str) -> None:
        async with self._session(action) as session:
            session.add(row)
            await session.flush()
            if limit > 0:
                newest = await session.scalar(select(func.max(row_type.id)))
                await session.execute(delete(row_type).where(row_type.id <= newest - limit))

    async def append_usage(self, point: UsageDataPoint) -> None:
        await self._append(
            UsageLogRow(
                key_id=point.key_id,
                provider_id=point.provider_id,
                model_id=point.model_id,
                timestamp=_to_db(point.timestamp),
                payload=point.model_dump(mode="json"),
            ),
            UsageLogRow,
            self._max_usage,
            "append usage",
        )

    async def append_error(self, entry: ErrorLogEntry) -> None:
        await self._append(
            ErrorLogRow(
                key_id=entry.key_id,
                provider_id=entry.provider_id,
                model_id=entry.model_id,
                timestamp=_to_db(entry.timestamp),
                payload=entry.model_dump(mode="json"),
            ),
            ErrorLogRow,
            self._max_errors,
            "append error",
        )

    async def save_state_transition(self, transition: StateTransition) -> None:
        await self._append(
            StateTransitionRow(
                key_id=transition.key_id,
                model_id=transition.model_id,
                timestamp=_to_db(transition.transition_timestamp),
                payload=transition.model_dump(mode="json"),
            ),
            StateTransitionRow,
            self._max_transitions,
            f"save state transition for {transition.key_id}:{transition.model_id}",
        )

    def _log_statement(self, row_type: Any, query: StateQuery):
        stmt = select(row_type.payload)
        if query.key_id is not None:
            stmt = stmt.where(row_type.key_id == query.key_id)
        if query.provider_id is not None and hasattr(row_type, "provider_id"):
            stmt = stmt.where(row_type.provider_id == query.provider_id)
        if query.model_id is not None:
            stmt = stmt.where(row_type.model_id == query.model_id)
        if query.timestamp_from is not None:
            stmt = stmt.where(row_type.timestamp >= _to_db(query.timestamp_from))
        if query.timestamp_to is not None:
            stmt = stmt.where(row_type.timestamp <= _to_db(query.timestamp_to))
        stmt = stmt.order_by(row_type.id.desc() if query.newest_first else row_type.id.asc())
        if query.offset is not None:
            stmt = stmt.offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        return stmt

    async def query_usage(self, query: StateQuery) -> list[UsageDataPoint]:
        async with self._session("query usage") as session:
            rows = await session.scalars(self._log_statement(UsageLogRow, query))
            return [UsageDataPoint.model_validate(p) for p in rows]

    async def query_errors(self, query: StateQuery) -> list[ErrorLogEntry]:
        async with self._session("query errors") as session:
            rows = await session.scalars(self._log_statement(ErrorLogRow, query))
            return [ErrorLogEntry.model_validate(p) for p in rows]

    async def query_transitions(self, query: StateQuery) -> list[StateTransition]:
        async with self._session("query state transitions") as session:
            rows = await session.scalars(self._log_statement(StateTransitionRow, query))
            return [StateTransition.model_validate(p) for p in rows]

    # Vault metadata

    async def get_vault_meta(self, name: str) -> str | None:
        async with self._session(f"get vault meta {name}") as session:
            row = await session.get(VaultMetaRow, name)
            return row.value if row is not None else None

    async def set_vault_meta(self, name: str, value: str) -> None:
        async with self._session(f"set vault meta {name}") as session:
            await session.merge(VaultMetaRow(name=name, value=value))
