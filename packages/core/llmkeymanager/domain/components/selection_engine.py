"""SelectionEngine: candidate selection and the sequential attempt loop.

Given a logical request the engine resolves the model identifier, enumerates
every (key, model) pair that claims it, filters out pairs that are unusable
or out of quota, orders the rest deterministically, and tries them one at a
time until one succeeds.

Example:
    ```python
    engine = SelectionEngine(
        vault=vault,
        availability_manager=availability,
        quota_ledger=ledger,
        usage_log=usage_log,
        observability_manager=obs,
        adapters={"openai": OpenAIAdapter()},
        config_provider=config_manager.get_config,
    )
    response = await engine.execute(ChatRequest(model="fast", messages=[...]))
    print(response.attempts, response.key_id)
    ```
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from llmkeymanager.domain.components.availability_manager import AvailabilityManager
from llmkeymanager.domain.components.error_classifier import classify
from llmkeymanager.domain.components.quota_ledger import QuotaLedger
from llmkeymanager.domain.components.safety_guard import SafetyGuard
from llmkeymanager.domain.components.usage_log import UsageLog
from llmkeymanager.domain.components.vault import NotFoundError, Vault, VaultError
from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager
from llmkeymanager.domain.interfaces.provider_adapter import ProviderAdapter
from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.config import LLMManagerConfig
from llmkeymanager.domain.models.key_record import KeyRecord, KeyVerificationStatus
from llmkeymanager.domain.models.model_catalog import model_priority_for
from llmkeymanager.domain.models.request import (
    ChatRequest,
    ChatResponse,
    EmbeddingRequest,
    EmbeddingResponse,
    LogicalRequest,
)
from llmkeymanager.domain.models.usage import UsageDataPoint
from llmkeymanager.domain.models.verified_model import ModelState, VerifiedModelMetadata

DEFAULT_TIMEOUT_SECONDS = 60.0


class ResolutionKind(str, Enum):
    """How a requested model identifier was resolved."""

    Capability = "capability"
    Alias = "alias"
    Explicit = "explicit"


class ResolvedModels(BaseModel):
    requested: str
    kind: ResolutionKind
    model_ids: list[str]


class Candidate(BaseModel):
    """A (key, model) pair eligible for an attempt."""

    key: KeyRecord
    model_id: str
    metadata: VerifiedModelMetadata | None = None
    remaining_quota: float = float("inf")

    model_config = ConfigDict(protected_namespaces=())

    @property
    def model_priority(self) -> int:
        if self.metadata is not None:
            return self.metadata.model_priority
        return model_priority_for(self.model_id)

    def sort_key(self) -> tuple[int, int, float, float]:
        """Priority, model priority, latency, remaining quota; unknown latency sorts last."""
        latency = self.key.average_latency or float("inf")
        return (self.key.priority.rank, -self.model_priority, latency, -self.remaining_quota)


class AttemptFailure(BaseModel):
    """One failed attempt, kept for diagnostics."""

    attempt: int = Field(..., ge=1)
    key_id: str
    provider_id: str
    model_id: str
    error: ClassifiedError

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class NoCandidatesError(Exception):
    """Raised when no key claims the requested model at all."""

    def __init__(self, requested: str, model_ids: list[str]) -> None:
        self.requested = requested
        self.model_ids = model_ids
        super().__init__(
            f"No keys configured for '{requested}' (resolved to: {', '.join(model_ids)})"
        )


class ExhaustedError(Exception):
    """Raised when every candidate was unusable or failed."""

    def __init__(self, requested: str, failures: list[AttemptFailure]) -> None:
        self.requested = requested
        self.failures = failures
        if failures:
            kinds = ", ".join(f.error.kind.value for f in failures)
            message = f"All {len(failures)} attempts for '{requested}' failed ({kinds})"
        else:
            message = f"All candidates for '{requested}' are currently unavailable"
        super().__init__(message)


class SelectionEngine:
    """Routes a logical request to a healthy key/model pair with failover.

    Attempts run strictly one after another in a deterministic order. The
    availability state machine decides whether a pair is usable; the engine
    never looks at retry timestamps itself. Cancellation of the calling task
    aborts the in-flight call and leaves every ledger and state untouched.
    """

    def __init__(
        self,
        vault: Vault,
        availability_manager: AvailabilityManager,
        quota_ledger: QuotaLedger,
        usage_log: UsageLog,
        observability_manager: ObservabilityManager,
        adapters: dict[str, ProviderAdapter],
        config_provider: Callable[[], LLMManagerConfig],
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        safety_guard: SafetyGuard | None = None,
    ) -> None:
        """Initialize SelectionEngine.

        Args:
            vault: Vault to decrypt candidate secrets.
            availability_manager: Availability state of (key, model) pairs.
            quota_ledger: Per-key quota ledger.
            usage_log: Append-only attempt log.
            observability_manager: ObservabilityManager for events and logs.
            adapters: Provider adapters keyed by provider id. Shared with the
                caller, so adapters registered later are seen.
            config_provider: Returns the current routing configuration.
            default_timeout_seconds: Per-attempt timeout when neither the call
                nor the request sets one.
            safety_guard: Kill switches and circuit breakers; a fresh guard is
                used if None.
        """
        self._vault = vault
        self._availability = availability_manager
        self._ledger = quota_ledger
        self._usage_log = usage_log
        self._observability = observability_manager
        self._adapters = adapters
        self._config_provider = config_provider
        self._default_timeout = default_timeout_seconds
        self._safety = safety_guard or SafetyGuard(observability_manager)

    def resolve_models(self, requested: str) -> ResolvedModels:
        """Resolve a capability tag, alias or explicit id to concrete model ids.

        Capability tags take precedence over aliases when both tables define
        the same name.
        """
        config = self._config_provider()
        if requested in config.fallback_chains:
            chain = list(dict.fromkeys(config.fallback_chains[requested]))
            return ResolvedModels(
                requested=requested, kind=ResolutionKind.Capability, model_ids=chain
            )
        if requested in config.special_models:
            return ResolvedModels(
                requested=requested,
                kind=ResolutionKind.Alias,
                model_ids=[config.special_models[requested]],
            )
        return ResolvedModels(
            requested=requested, kind=ResolutionKind.Explicit, model_ids=[requested]
        )

    async def enumerate_candidates(
        self,
        request: LogicalRequest,
        resolved: ResolvedModels | None = None,
    ) -> list[Candidate]:
        """List every (key, model) pair that claims the requested model.

        A key claims a model when its provider's adapter serves it or when
        metadata for the pair already exists. Capability expansion only
        considers pairs with existing metadata, i.e. pairs a probe or earlier
        traffic has confirmed. Health is not considered here.
        """
        resolved = resolved or self.resolve_models(request.model)
        keys = [
            k
            for k in await self._vault.list_keys(provider_id=request.provider_id)
            if k.is_usable and k.provider_id in self._adapters
        ]
        metadata = {(m.key_id, m.model_id): m for m in await self._availability.list_metadata()}

        candidates: list[Candidate] = []
        for model_id in resolved.model_ids:
            for key in keys:
                pair_metadata = metadata.get((key.id, model_id))
                if resolved.kind == ResolutionKind.Capability and pair_metadata is None:
                    continue
                claims = pair_metadata is not None or self._adapters[key.provider_id].serves_model(
                    model_id
                )
                if claims:
                    candidates.append(
                        Candidate(key=key, model_id=model_id, metadata=pair_metadata)
                    )
        return candidates

    def _is_eligible(
        self,
        key: KeyRecord,
        metadata: VerifiedModelMetadata | None,
        now: datetime,
    ) -> bool:
        if key.verification_status == KeyVerificationStatus.Invalid:
            return False
        if not self._safety.allows(key.id, key.provider_id, now):
            return False
        if self._safety.emergency_mode and (
            metadata is None or metadata.state != ModelState.Available
        ):
            return False
        return self._availability.is_usable(metadata, now)

    async def filter_and_order(
        self,
        candidates: list[Candidate],
        now: datetime | None = None,
    ) -> list[Candidate]:
        """Drop unusable or quota-exhausted candidates and sort the rest.

        A candidate is dropped when its key failed verification, its provider
        is disabled, its key's circuit is open, its pair is not usable, or
        its key is out of quota. The sort is stable, so enumeration order
        breaks remaining ties.
        """
        now = now or datetime.now(timezone.utc)
        eligible: list[Candidate] = []
        for candidate in candidates:
            if not self._is_eligible(candidate.key, candidate.metadata, now):
                continue
            if not await self._ledger.has_headroom(candidate.key.id, now):
                continue
            remaining = await self._ledger.remaining(candidate.key.id, now)
            eligible.append(candidate.model_copy(update={"remaining_quota": remaining}))
        eligible.sort(key=Candidate.sort_key)
        return eligible

    async def _still_usable(self, candidate: Candidate) -> bool:
        """Re-check a candidate right before attempting it.

        Concurrent requests or probes may have cooled the pair down, tripped
        the key's circuit or invalidated the key since ordering.
        """
        now = datetime.now(timezone.utc)
        try:
            key = await self._vault.get_key(candidate.key.id)
        except NotFoundError:
            return False
        if not key.is_usable:
            return False
        metadata = await self._availability.get_metadata(key.id, candidate.model_id)
        if not self._is_eligible(key, metadata, now):
            return False
        return await self._ledger.has_headroom(key.id, now)

    def _apply_forced_fallback(
        self, request: ChatRequest | EmbeddingRequest
    ) -> ChatRequest | EmbeddingRequest:
        fallback = self._safety.forced_fallback
        if fallback is None or not isinstance(request, ChatRequest):
            return request
        return request.model_copy(
            update={
                "model": fallback.model_id,
                "provider_id": fallback.provider_id or request.provider_id,
            }
        )

    async def execute(
        self,
        request: ChatRequest | EmbeddingRequest,
        timeout: float | None = None,
    ) -> ChatResponse | EmbeddingResponse:
        """Execute a logical request with sequential failover.

        Args:
            request: Chat or embedding request naming a model id, alias or
                capability tag.
            timeout: Per-attempt timeout in seconds. Falls back to the
                request's timeout, then the engine default.

        Returns:
            Adapter response annotated with key_id, model_id, attempts and
            latency_ms.

        Raises:
            NoCandidatesError: If no key claims the resolved model(s).
            ExhaustedError: If every candidate was unusable or failed.
            VaultError: If the vault is locked or a secret is corrupt.
        """
        forced = self._apply_forced_fallback(request)
        if forced is not request:
            await self._observability.log(
                level="INFO",
                message="Forced fallback replaces requested model",
                context={"requested": request.model, "forced": forced.model},
            )
            request = forced

        resolved = self.resolve_models(request.model)
        candidates = await self.enumerate_candidates(request, resolved)
        if not candidates:
            await self._observability.log(
                level="WARNING",
                message="No candidates for request",
                context={"requested": request.model, "resolved": resolved.model_ids},
            )
            raise NoCandidatesError(request.model, resolved.model_ids)

        ordered = await self.filter_and_order(candidates)
        attempt_timeout = timeout or request.timeout_seconds or self._default_timeout
        failures: list[AttemptFailure] = []
        attempts = 0

        for candidate in ordered:
            if attempts and not await self._still_usable(candidate):
                continue
            attempts += 1
            key = candidate.key
            adapter = self._adapters[key.provider_id]
            concrete = request.model_copy(update={"model": candidate.model_id})

            started = time.perf_counter()
            try:
                async with self._vault.decrypted(key.id) as secret:
                    response = await asyncio.wait_for(
                        adapter.complete(secret, concrete), timeout=attempt_timeout
                    )
            except VaultError:
                raise
            except Exception as raw_error:
                failure = await self._record_failure(candidate, raw_error, attempts)
                failures.append(failure)
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            return await self._record_success(candidate, response, attempts, latency_ms)

        await self._emit(
            "request_exhausted",
            {
                "requested": request.model,
                "attempts": attempts,
                "failure_kinds": [f.error.kind.value for f in failures],
            },
        )
        raise ExhaustedError(request.model, failures)

    async def _record_success(
        self,
        candidate: Candidate,
        response: ChatResponse | EmbeddingResponse,
        attempts: int,
        latency_ms: float,
    ) -> ChatResponse | EmbeddingResponse:
        key = candidate.key
        if response.rate_limits is not None:
            await self._ledger.apply_rate_limit_snapshot(key.id, response.rate_limits)

        await self._ledger.record(
            key.id,
            UsageDataPoint(
                key_id=key.id,
                provider_id=key.provider_id,
                model_id=candidate.model_id,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                latency_ms=latency_ms,
                attempt=attempts,
            ),
        )
        await self._vault.record_usage(key.id, latency_ms)
        await self._safety.record_success(key.id)
        await self._availability.record_traffic_success(
            key.id, candidate.model_id, key.provider_id
        )
        await self._emit(
            "request_succeeded",
            {
                "key_id": key.id,
                "provider_id": key.provider_id,
                "model_id": candidate.model_id,
                "attempts": attempts,
                "latency_ms": round(latency_ms, 2),
            },
        )
        return response.model_copy(
            update={
                "key_id": key.id,
                "model_id": candidate.model_id,
                "attempts": attempts,
                "latency_ms": latency_ms,
            }
        )

    async def _record_failure(
        self,
        candidate: Candidate,
        raw_error: Exception,
        attempt: int,
    ) -> AttemptFailure:
        key = candidate.key
        error = classify(raw_error, provider_id=key.provider_id, model_id=candidate.model_id)
        await self._availability.record_traffic_failure(
            key.id, candidate.model_id, key.provider_id, error
        )
        await self._safety.record_failure(key.id, key.provider_id)
        await self._usage_log.record_failure(
            key.id, key.provider_id, candidate.model_id, error, attempt=attempt
        )
        await self._observability.log(
            level="ERROR" if error.kind == ErrorKind.Auth else "WARNING",
            message="Attempt failed",
            context={
                "key_id": key.id,
                "provider_id": key.provider_id,
                "model_id": candidate.model_id,
                "attempt": attempt,
                "error_kind": error.kind.value,
                "status_code": error.status_code,
                "retry_after_ms": error.retry_after_ms,
            },
        )
        return AttemptFailure(
            attempt=attempt,
            key_id=key.id,
            provider_id=key.provider_id,
            model_id=candidate.model_id,
            error=error,
        )

    async def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._observability.emit_event(
                event_type=event_type,
                payload=payload,
                metadata={"timestamp": datetime.now(timezone.utc).isoformat()},
            )
        except Exception as e:
            # Log error but don't fail the request if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"event_type": event_type},
            )
