"""UsageLog: append-only usage and error history with dashboard queries."""

from datetime import datetime

from pydantic import BaseModel, Field

from llmkeymanager.domain.interfaces.state_store import StateQuery, StateStore
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.usage import ErrorLogEntry, UsageDataPoint
from llmkeymanager.infrastructure.observability.logger import redact_secrets


class UsageSummary(BaseModel):
    """Aggregate of usage records for dashboards."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    average_latency_ms: float = 0.0
    requests_by_model: dict[str, int] = Field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests


class UsageLog:
    """Append-only record of every attempt.

    Successful attempts become UsageDataPoints, failed attempts become
    ErrorLogEntries. Records are never modified once written.
    """

    def __init__(self, state_store: StateStore) -> None:
        self._state_store = state_store

    async def append_usage(self, point: UsageDataPoint) -> None:
        await self._state_store.append_usage(point)

    async def append_error(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        """Append an error entry with its message redacted."""
        redacted = redact_secrets(entry.message)
        if redacted != entry.message:
            entry = entry.model_copy(update={"message": redacted})
        await self._state_store.append_error(entry)
        return entry

    async def record_failure(
        self,
        key_id: str,
        provider_id: str,
        model_id: str,
        error: ClassifiedError,
        attempt: int = 1,
    ) -> ErrorLogEntry:
        """Append the ErrorLogEntry of a classified failure."""
        return await self.append_error(
            ErrorLogEntry(
                key_id=key_id,
                provider_id=provider_id,
                model_id=model_id,
                error_kind=error.kind,
                status_code=error.status_code,
                message=error.message,
                retry_after_ms=error.retry_after_ms,
                attempt=attempt,
            )
        )

    async def query_usage(self, query: StateQuery | None = None) -> list[UsageDataPoint]:
        return await self._state_store.query_usage(query or StateQuery())

    async def query_errors(self, query: StateQuery | None = None) -> list[ErrorLogEntry]:
        return await self._state_store.query_errors(query or StateQuery())

    async def usage_summary(
        self,
        provider_id: str | None = None,
        since: datetime | None = None,
    ) -> UsageSummary:
        """Summarize usage and failures, optionally per provider and time range."""
        query = StateQuery(provider_id=provider_id, timestamp_from=since)
        points = await self._state_store.query_usage(query)
        errors = await self._state_store.query_errors(query)

        summary = UsageSummary()
        latency_total = 0.0
        for point in points:
            summary.total_requests += 1
            if point.success:
                summary.successful_requests += 1
            else:
                summary.failed_requests += 1
            summary.total_input_tokens += point.input_tokens
            summary.total_output_tokens += point.output_tokens
            summary.total_cost += point.cost
            latency_total += point.latency_ms
            summary.requests_by_model[point.model_id] = (
                summary.requests_by_model.get(point.model_id, 0) + 1
            )

        summary.total_requests += len(errors)
        summary.failed_requests += len(errors)
        if points:
            summary.average_latency_ms = latency_total / len(points)
        return summary

    async def error_summary(self, since: datetime | None = None) -> dict[ErrorKind, int]:
        """Count failures per error kind."""
        counts: dict[ErrorKind, int] = {}
        for entry in await self._state_store.query_errors(StateQuery(timestamp_from=since)):
            counts[entry.error_kind] = counts.get(entry.error_kind, 0) + 1
        return counts
