"""QuotaLedger: per-key token, request and cost accounting."""

import re
from datetime import datetime, timedelta, timezone

from llmkeymanager.domain.components.key_locks import KeyLockRegistry
from llmkeymanager.domain.components.usage_log import UsageLog
from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.interfaces.state_store import StateStore
from llmkeymanager.domain.models.key_quota import KeyQuota
from llmkeymanager.domain.models.key_record import RateLimitData
from llmkeymanager.domain.models.model_catalog import pricing_for
from llmkeymanager.domain.models.usage import UsageDataPoint

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_FULL = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")
_DURATION_UNITS_MS = {"h": 3_600_000, "m": 60_000, "s": 1000, "ms": 1}


def parse_reset(value: str | None, now: datetime) -> datetime | None:
    """Parse a provider rate-limit reset hint into an absolute time.

    Accepts durations (``"6m0s"``, ``"20ms"``, ``"1h2m3.5s"``), plain
    seconds (``"30"``) and RFC 3339 timestamps.
    """
    if not value:
        return None
    value = value.strip()

    if _DURATION_FULL.match(value):
        total_ms = sum(
            float(amount) * _DURATION_UNITS_MS[unit]
            for amount, unit in _DURATION_PART.findall(value)
        )
        return now + timedelta(milliseconds=total_ms)

    try:
        return now + timedelta(seconds=float(value))
    except ValueError:
        pass

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class QuotaLedger:
    """Running usage/quota ledger per key.

    Locally observed usage is added on every successful attempt. Rate-limit
    snapshots reported by the provider overwrite the local estimate because
    the provider is authoritative. When ``reset_time`` passes, reads see a
    zeroed window and the next write persists it; there is no timer.

    Example:
        ```python
        ledger = QuotaLedger(state_store=store, observability_manager=obs,
                             key_locks=locks, usage_log=usage_log)
        await ledger.apply_rate_limit_snapshot(key.id, snapshot)
        if await ledger.has_headroom(key.id):
            ...
        await ledger.record(key.id, usage_point)
        ```
    """

    def __init__(
        self,
        state_store: StateStore,
        observability_manager: ObservabilityManager,
        key_locks: KeyLockRegistry,
        usage_log: UsageLog,
    ) -> None:
        self._state_store = state_store
        self._observability = observability_manager
        self._key_locks = key_locks
        self._usage_log = usage_log

    @staticmethod
    def _effective(quota: KeyQuota, now: datetime) -> KeyQuota:
        """Apply the lazy window reset without persisting it."""
        if quota.reset_time is not None and now >= quota.reset_time:
            return quota.model_copy(
                update={"used": 0, "requests_used": 0, "reset_time": None}
            )
        return quota

    async def _load(self, key_id: str, now: datetime) -> KeyQuota:
        quota = await self._state_store.get_quota(key_id)
        if quota is None:
            return KeyQuota(key_id=key_id)
        return self._effective(quota, now)

    async def get_quota(self, key_id: str, now: datetime | None = None) -> KeyQuota:
        """Return the key's quota as of ``now``. Unknown keys get an unbounded entry."""
        return await self._load(key_id, now or datetime.now(timezone.utc))

    async def has_headroom(self, key_id: str, now: datetime | None = None) -> bool:
        """Return False once a known ceiling has been reached. Never writes."""
        quota = await self._load(key_id, now or datetime.now(timezone.utc))
        return not quota.is_exhausted()

    async def remaining(self, key_id: str, now: datetime | None = None) -> float:
        """Estimated tokens left; infinity when no ceiling is known."""
        quota = await self._load(key_id, now or datetime.now(timezone.utc))
        return quota.remaining()

    def estimate_cost(
        self,
        provider_id: str,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
    ) -> float:
        """Estimate the USD cost of an attempt from the model catalog."""
        input_price, output_price = pricing_for(model_id, provider_id)
        return input_tokens * input_price + output_tokens * output_price

    async def record(self, key_id: str, usage: UsageDataPoint) -> KeyQuota:
        """Record locally observed usage of a successful attempt.

        Appends the usage point to the usage log and adds its tokens, one
        request and its cost to the key's ledger entry. ``used`` is clamped
        to a known ceiling.

        Args:
            key_id: Key the usage belongs to.
            usage: Usage point; its cost is estimated if zero.

        Returns:
            The updated KeyQuota.
        """
        if usage.cost == 0 and usage.total_tokens:
            usage = usage.model_copy(
                update={
                    "cost": self.estimate_cost(
                        usage.provider_id, usage.model_id, usage.input_tokens, usage.output_tokens
                    )
                }
            )

        async with self._key_locks.hold(key_id):
            quota = await self._load(key_id, usage.timestamp)
            used = quota.used + usage.total_tokens
            if quota.limit is not None:
                used = min(used, quota.limit)
            quota = quota.model_copy(
                update={
                    "used": used,
                    "requests_used": quota.requests_used + 1,
                    "estimated_cost": quota.estimated_cost + usage.cost,
                    "updated_at": usage.timestamp,
                }
            )
            await self._state_store.save_quota(quota)

        await self._usage_log.append_usage(usage)
        if quota.is_critical:
            await self._observability.log(
                level="WARNING",
                message="Key quota nearly exhausted",
                context={
                    "key_id": key_id,
                    "used": quota.used,
                    "limit": quota.limit,
                    "usage_percentage": round(quota.usage_percentage(), 4),
                },
            )
        return quota

    async def apply_rate_limit_snapshot(
        self,
        key_id: str,
        snapshot: RateLimitData,
        now: datetime | None = None,
    ) -> KeyQuota:
        """Overwrite the key's window with provider-reported numbers.

        Only windows with a positive limit are applied; absent headers leave
        the local estimate untouched.
        """
        now = now or datetime.now(timezone.utc)
        async with self._key_locks.hold(key_id):
            quota = await self._load(key_id, now)
            updates: dict = {}

            tokens = snapshot.tokens
            if tokens.limit:
                updates["limit"] = tokens.limit
                if tokens.remaining is not None:
                    updates["used"] = max(tokens.limit - tokens.remaining, 0)

            requests = snapshot.requests
            if requests.limit:
                updates["request_limit"] = requests.limit
                if requests.remaining is not None:
                    updates["requests_used"] = max(requests.limit - requests.remaining, 0)

            reset_time = parse_reset(tokens.reset, now) or parse_reset(requests.reset, now)
            if reset_time is not None:
                updates["reset_time"] = reset_time

            if not updates:
                return quota
            updates["updated_at"] = now
            quota = quota.model_copy(update=updates)
            await self._state_store.save_quota(quota)
        return quota

    async def set_limit(
        self,
        key_id: str,
        limit: int | None,
        reset_time: datetime | None = None,
    ) -> KeyQuota:
        """Set a token ceiling manually; None removes it."""
        now = datetime.now(timezone.utc)
        async with self._key_locks.hold(key_id):
            quota = await self._load(key_id, now)
            quota = quota.model_copy(
                update={"limit": limit, "reset_time": reset_time, "updated_at": now}
            )
            await self._state_store.save_quota(quota)
        return quota

    async def reset_usage(self, key_id: str) -> KeyQuota:
        """Zero the current window of a key."""
        now = datetime.now(timezone.utc)
        async with self._key_locks.hold(key_id):
            quota = await self._load(key_id, now)
            quota = quota.model_copy(
                update={"used": 0, "requests_used": 0, "reset_time": None, "updated_at": now}
            )
            await self._state_store.save_quota(quota)
        return quota
