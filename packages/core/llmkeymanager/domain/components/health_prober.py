"""HealthProber: caller-driven background verification of keys."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from llmkeymanager.domain.components.availability_manager import AvailabilityManager
from llmkeymanager.domain.components.availability_state_machine import TransitionEvent
from llmkeymanager.domain.components.error_classifier import classify
from llmkeymanager.domain.components.quota_ledger import QuotaLedger
from llmkeymanager.domain.components.safety_guard import CircuitState, SafetyGuard
from llmkeymanager.domain.components.vault import LockedVaultError, Vault, VaultError
from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.interfaces.provider_adapter import ProviderAdapter
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.config import LLMManagerConfig
from llmkeymanager.domain.models.key_record import KeyRecord, KeyVerificationStatus
from llmkeymanager.domain.models.model_catalog import DEFAULT_CONFIG, capabilities_for
from llmkeymanager.domain.models.verified_model import ModelState, VerifiedModelMetadata

DEFAULT_REVALIDATION_INTERVAL = timedelta(hours=12)


class ProbeOutcome(BaseModel):
    """Result of one probe_key() call."""

    key_id: str
    success: bool = False
    skipped: bool = False
    models: list[str] = Field(default_factory=list)
    error: ClassifiedError | None = None


class HealthProber:
    """Verifies keys against their provider outside of request traffic.

    A probe lists the key's models and runs the adapter's health check. The
    outcome drives the same availability state machine as traffic does.
    Probes for different keys run concurrently; a second probe for a key
    that is already being probed is skipped.

    Nothing runs on its own. Callers invoke probe_key() or probe_due(), or
    hand a stop event to run_periodically().

    Example:
        ```python
        prober = HealthProber(vault, availability, ledger, obs, adapters)
        outcome = await prober.probe_key(key.id)

        stop = asyncio.Event()
        task = asyncio.create_task(prober.run_periodically(300, stop))
        ...
        stop.set()
        await task
        ```
    """

    def __init__(
        self,
        vault: Vault,
        availability_manager: AvailabilityManager,
        quota_ledger: QuotaLedger,
        observability_manager: ObservabilityManager,
        adapters: dict[str, ProviderAdapter],
        config_provider: Callable[[], LLMManagerConfig] | None = None,
        probe_timeout_seconds: float = 60.0,
        revalidation_interval: timedelta = DEFAULT_REVALIDATION_INTERVAL,
        safety_guard: SafetyGuard | None = None,
    ) -> None:
        self._vault = vault
        self._availability = availability_manager
        self._ledger = quota_ledger
        self._observability = observability_manager
        self._adapters = adapters
        self._config_provider = config_provider or (lambda: DEFAULT_CONFIG)
        self._timeout = probe_timeout_seconds
        self._revalidation_interval = revalidation_interval
        self._safety = safety_guard or SafetyGuard(observability_manager)
        self._in_flight: set[str] = set()

    def is_probing(self, key_id: str) -> bool:
        return key_id in self._in_flight

    async def probe_key(self, key_id: str) -> ProbeOutcome:
        """Probe one key and record the outcome.

        Returns a skipped outcome if the key is already being probed, has no
        registered adapter, belongs to a disabled provider, or is disabled,
        revoked or corrupt. The outcome counts towards the key's circuit
        breaker like a request would.

        Raises:
            LockedVaultError: If the vault is locked.
            NotFoundError: If the key does not exist.
        """
        if key_id in self._in_flight:
            return ProbeOutcome(key_id=key_id, skipped=True)
        self._in_flight.add(key_id)
        try:
            outcome = await self._probe(key_id)
        finally:
            self._in_flight.discard(key_id)
        if not outcome.skipped:
            await self._emit_completed(outcome)
        return outcome

    async def _emit_completed(self, outcome: ProbeOutcome) -> None:
        try:
            await self._observability.emit_event(
                event_type="probe_completed",
                payload={
                    "key_id": outcome.key_id,
                    "success": outcome.success,
                    "models": outcome.models,
                    "error_kind": outcome.error.kind.value if outcome.error else None,
                },
                metadata={"timestamp": datetime.now(timezone.utc).isoformat()},
            )
        except Exception as e:
            # Log error but don't fail the probe if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit probe_completed event: {e}",
                context={"key_id": outcome.key_id},
            )

    async def _probe(self, key_id: str) -> ProbeOutcome:
        if not self._vault.is_unlocked:
            raise LockedVaultError("Vault is locked; call unlock() first")

        key = await self._vault.get_key(key_id)
        adapter = self._adapters.get(key.provider_id)
        skip = not key.is_usable or self._safety.is_provider_disabled(key.provider_id)
        if adapter is None or skip:
            if adapter is None:
                await self._observability.log(
                    level="WARNING",
                    message="No adapter registered for key provider; probe skipped",
                    context={"key_id": key_id, "provider_id": key.provider_id},
                )
            return ProbeOutcome(key_id=key_id, skipped=True)

        tracked = await self._availability.list_metadata(key_id=key_id)
        for metadata in tracked:
            await self._availability.record_event(
                key_id, metadata.model_id, key.provider_id, TransitionEvent.ProbeStarted
            )
        await self._vault.update_metadata(
            key_id, {"verification_status": KeyVerificationStatus.Testing}
        )

        try:
            async with self._vault.decrypted(key_id) as secret:
                listed = await asyncio.wait_for(adapter.list_models(secret), self._timeout)
                snapshot = await asyncio.wait_for(
                    adapter.probe_health(secret, adapter.base_url or None), self._timeout
                )
        except VaultError:
            raise
        except Exception as raw_error:
            error = classify(raw_error, provider_id=key.provider_id)
            await self._safety.record_failure(key_id, key.provider_id)
            return await self._record_failure(key, tracked, error)

        now = datetime.now(timezone.utc)
        discovered = [
            m for m in listed if not adapter.model_prefixes or adapter.serves_model(m)
        ]
        overrides = self._config_provider().supported_model_types
        for model_id in discovered:
            await self._availability.ensure_metadata(
                key_id, model_id, key.provider_id, capabilities_for(model_id, overrides)
            )

        models = list(dict.fromkeys([m.model_id for m in tracked] + discovered))
        for model_id in models:
            await self._availability.record_event(
                key_id, model_id, key.provider_id, TransitionEvent.ProbeSucceeded, now=now
            )

        await self._ledger.apply_rate_limit_snapshot(key_id, snapshot, now)
        await self._safety.record_success(key_id, now)
        await self._vault.update_metadata(
            key_id,
            {
                "verification_status": KeyVerificationStatus.Valid,
                "rate_limits": snapshot,
                "tier": adapter.detect_tier(snapshot) or key.tier,
                "last_verified_at": now,
                "next_retry_at": None,
                "retry_after": None,
            },
        )
        await self._observability.log(
            level="INFO",
            message="Key probe succeeded",
            context={"key_id": key_id, "provider_id": key.provider_id, "models": len(models)},
        )
        return ProbeOutcome(key_id=key_id, success=True, models=models)

    async def _record_failure(
        self,
        key: KeyRecord,
        tracked: list[VerifiedModelMetadata],
        error: ClassifiedError,
    ) -> ProbeOutcome:
        now = datetime.now(timezone.utc)
        updated = [
            await self._availability.record_event(
                key.id,
                metadata.model_id,
                key.provider_id,
                TransitionEvent.ProbeFailed,
                error=error,
                now=now,
            )
            for metadata in tracked
        ]

        if error.kind == ErrorKind.Auth:
            patch = {
                "verification_status": KeyVerificationStatus.Invalid,
                "next_retry_at": None,
                "retry_after": None,
            }
        else:
            retry_count = max((m.retry_count for m in updated), default=0)
            delay_ms = error.retry_after_ms or self._availability.state_machine.backoff_delay_ms(
                retry_count
            )
            patch = {
                "verification_status": KeyVerificationStatus.RetryScheduled,
                "next_retry_at": now + timedelta(milliseconds=delay_ms),
                "retry_after": delay_ms,
            }
        patch["last_verified_at"] = now
        await self._vault.update_metadata(key.id, patch)

        await self._observability.log(
            level="ERROR" if error.kind == ErrorKind.Auth else "WARNING",
            message="Key probe failed",
            context={
                "key_id": key.id,
                "provider_id": key.provider_id,
                "error_kind": error.kind.value,
                "status_code": error.status_code,
            },
        )
        return ProbeOutcome(
            key_id=key.id,
            models=[m.model_id for m in tracked],
            error=error,
        )

    async def due_keys(self, now: datetime | None = None) -> list[KeyRecord]:
        """Keys that should be probed at ``now``.

        Due are untested keys, keys whose scheduled retry has passed, keys
        with a cooling-down pair past its retry time or a pair left in
        Probing by an interrupted probe, and keys not verified within the
        revalidation interval. Keys marked invalid are never due, nor are
        keys of a disabled provider or keys whose circuit is open. Nothing is
        due while scanning is frozen.
        """
        if self._safety.scanning_frozen:
            return []
        now = now or datetime.now(timezone.utc)
        machine = self._availability.state_machine
        pairs_by_key: dict[str, list[VerifiedModelMetadata]] = {}
        for metadata in await self._availability.list_metadata():
            pairs_by_key.setdefault(metadata.key_id, []).append(metadata)

        due: list[KeyRecord] = []
        for key in await self._vault.list_keys():
            if not key.is_usable or key.provider_id not in self._adapters:
                continue
            if key.id in self._in_flight or self._safety.is_provider_disabled(key.provider_id):
                continue
            if self._safety.circuit_state(key.id, now) == CircuitState.Open:
                continue
            status = key.verification_status
            if status == KeyVerificationStatus.Invalid:
                continue
            pairs = pairs_by_key.get(key.id, [])
            if (
                status == KeyVerificationStatus.Untested
                or (
                    status == KeyVerificationStatus.RetryScheduled
                    and (key.next_retry_at is None or key.next_retry_at <= now)
                )
                or any(machine.is_retry_due(m, now) for m in pairs)
                or any(m.state == ModelState.Probing for m in pairs)
                or key.last_verified_at is None
                or now - key.last_verified_at >= self._revalidation_interval
            ):
                due.append(key)
        return due

    async def probe_due(self, now: datetime | None = None) -> list[ProbeOutcome]:
        """Probe every due key concurrently.

        A probe that raises is logged and left out of the result; the other
        probes still complete.

        Raises:
            LockedVaultError: If the vault is locked.
        """
        if not self._vault.is_unlocked:
            raise LockedVaultError("Vault is locked; call unlock() first")

        keys = await self.due_keys(now)
        results = await asyncio.gather(
            *(self.probe_key(key.id) for key in keys), return_exceptions=True
        )
        outcomes: list[ProbeOutcome] = []
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                await self._observability.log(
                    level="ERROR",
                    message=f"Probe raised: {result}",
                    context={"key_id": key.id, "error_type": type(result).__name__},
                )
                continue
            outcomes.append(result)
        return outcomes

    async def run_periodically(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Call probe_due() every ``interval_seconds`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await self.probe_due()
            except LockedVaultError:
                await self._observability.log(
                    level="WARNING",
                    message="Vault locked; skipping scheduled probes",
                    context={},
                )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
