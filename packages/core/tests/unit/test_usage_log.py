"""Tests for UsageLog."""

from datetime import datetime, timedelta, timezone

import pytest

from llmkeymanager.domain.interfaces.state_store import StateQuery
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.usage import ErrorLogEntry, UsageDataPoint

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestUsageLog:
    """Tests for appending and summarizing attempts."""

    @pytest.mark.asyncio
    async def test_record_failure_appends_entry(self, usage_log) -> None:
        """Test that a classified failure becomes an ErrorLogEntry."""
        entry = await usage_log.record_failure(
            "key-1",
            "openai",
            "gpt-4o",
            ClassifiedError(kind=ErrorKind.RateLimit, status_code=429, retry_after_ms=1000),
            attempt=2,
        )

        assert entry.error_kind == ErrorKind.RateLimit
        assert entry.attempt == 2
        errors = await usage_log.query_errors()
        assert errors == [entry]

    @pytest.mark.asyncio
    async def test_error_messages_are_redacted(self, usage_log) -> None:
        """Test that secrets in error messages are never stored."""
        entry = await usage_log.append_error(
            ErrorLogEntry(
                key_id="key-1",
                provider_id="openai",
                model_id="gpt-4o",
                error_kind=ErrorKind.Auth,
                message="Incorrect API key provided: sk-proj-abcdefghijkl",
            )
        )

        assert "sk-proj-abcdefghijkl" not in entry.message
        stored = await usage_log.query_errors()
        assert "sk-proj-abcdefghijkl" not in stored[0].message

    @pytest.mark.asyncio
    async def test_usage_summary(self, usage_log) -> None:
        """Test that the summary aggregates usage and failures."""
        for latency in (100.0, 300.0):
            await usage_log.append_usage(
                UsageDataPoint(
                    key_id="key-1",
                    provider_id="openai",
                    model_id="gpt-4o",
                    input_tokens=10,
                    output_tokens=20,
                    latency_ms=latency,
                    cost=0.5,
                )
            )
        await usage_log.record_failure(
            "key-2", "anthropic", "claude-3-5-sonnet-latest", ClassifiedError(kind=ErrorKind.Server)
        )

        summary = await usage_log.usage_summary()

        assert summary.total_requests == 3
        assert summary.successful_requests == 2
        assert summary.failed_requests == 1
        assert summary.total_input_tokens == 20
        assert summary.total_output_tokens == 40
        assert summary.total_cost == pytest.approx(1.0)
        assert summary.average_latency_ms == pytest.approx(200.0)
        assert summary.requests_by_model == {"gpt-4o": 2}
        assert summary.success_rate == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_usage_summary_by_provider_and_time(self, usage_log) -> None:
        """Test that the summary honors provider and time filters."""
        await usage_log.append_usage(
            UsageDataPoint(
                key_id="key-1",
                provider_id="openai",
                model_id="gpt-4o",
                timestamp=NOW - timedelta(days=2),
            )
        )
        await usage_log.append_usage(
            UsageDataPoint(key_id="key-1", provider_id="openai", model_id="gpt-4o", timestamp=NOW)
        )
        await usage_log.append_usage(
            UsageDataPoint(
                key_id="key-2", provider_id="gemini", model_id="gemini-1.5-pro", timestamp=NOW
            )
        )

        summary = await usage_log.usage_summary(
            provider_id="openai", since=NOW - timedelta(days=1)
        )

        assert summary.total_requests == 1

    @pytest.mark.asyncio
    async def test_empty_summary(self, usage_log) -> None:
        """Test that an empty log summarizes to zeros."""
        summary = await usage_log.usage_summary()

        assert summary.total_requests == 0
        assert summary.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_error_summary(self, usage_log) -> None:
        """Test that failures are counted per kind."""
        for kind in (ErrorKind.RateLimit, ErrorKind.RateLimit, ErrorKind.Network):
            await usage_log.record_failure("key-1", "openai", "gpt-4o", ClassifiedError(kind=kind))

        assert await usage_log.error_summary() == {
            ErrorKind.RateLimit: 2,
            ErrorKind.Network: 1,
        }

    @pytest.mark.asyncio
    async def test_query_usage_filters(self, usage_log) -> None:
        """Test that usage queries filter by key."""
        await usage_log.append_usage(
            UsageDataPoint(key_id="key-1", provider_id="openai", model_id="gpt-4o")
        )
        await usage_log.append_usage(
            UsageDataPoint(key_id="key-2", provider_id="openai", model_id="gpt-4o")
        )

        points = await usage_log.query_usage(StateQuery(key_id="key-2"))

        assert [p.key_id for p in points] == ["key-2"]
