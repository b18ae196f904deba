"""SafetyGuard: operator kill switches and per-key circuit breakers.

Circuit breaker of a key:

    Closed    --failure_threshold failures within failure_window-->  Open
    Open      --cooldown elapsed (evaluated on read)-->              HalfOpen
    HalfOpen  --success_threshold successes-->                       Closed
    HalfOpen  --any failure-->                                       Open

The breaker sits above the per-pair availability state: a key whose
provider keeps failing across models is taken out of rotation as a whole.

Operator switches:
    - disabled providers take no traffic and are not probed
    - frozen scanning stops scheduled probes
    - a forced fallback model replaces the model of every chat request
    - emergency mode only routes to pairs a probe or traffic confirmed

State is held in memory for the life of the process.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from llmkeymanager.domain.interfaces.observability_manager import ObservabilityManager


class CircuitState(str, Enum):
    """Circuit breaker state of a key."""

    Closed = "closed"
    Open = "open"
    HalfOpen = "half_open"


class CircuitBreakerConfig(BaseModel):
    """Trip and recovery thresholds of a key's circuit breaker."""

    failure_threshold: int = Field(default=5, ge=1)
    failure_window_ms: int = Field(default=60_000, ge=1)
    cooldown_ms: int = Field(default=5 * 60 * 1000, ge=0)
    success_threshold: int = Field(default=2, ge=1)

    model_config = ConfigDict(frozen=True)


DEFAULT_CIRCUIT_CONFIG = CircuitBreakerConfig()

# Providers with stricter limits or faster recovery than the default
PROVIDER_CIRCUIT_CONFIGS: dict[str, CircuitBreakerConfig] = {
    "openai": CircuitBreakerConfig(failure_threshold=3, cooldown_ms=10 * 60 * 1000),
    "anthropic": CircuitBreakerConfig(failure_threshold=5, cooldown_ms=5 * 60 * 1000),
    "gemini": CircuitBreakerConfig(failure_threshold=4, cooldown_ms=3 * 60 * 1000),
}


class KeyCircuit(BaseModel):
    """Breaker record of one key."""

    key_id: str
    provider_id: str
    state: CircuitState = CircuitState.Closed
    failure_times: list[datetime] = Field(default_factory=list)
    successes: int = 0
    opened_at: datetime | None = None


class ForcedFallback(BaseModel):
    """Model (and optionally provider) every chat request is routed to."""

    model_id: str = Field(..., min_length=1)
    provider_id: str | None = None

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class SafetyStatus(BaseModel):
    """Snapshot of every switch and breaker, for dashboards."""

    disabled_providers: dict[str, str]
    scanning_frozen: bool
    emergency_mode: bool
    forced_fallback: ForcedFallback | None = None
    key_circuits: dict[str, CircuitState]


class SafetyGuard:
    """Kill switches and circuit breakers consulted on every selection.

    Example:
        ```python
        guard = SafetyGuard(obs)
        await guard.disable_provider("openai", "status page reports outage")
        assert not guard.allows(key.id, "openai")

        await guard.record_failure(key.id, "gemini")
        guard.circuit_state(key.id)  # CircuitState.Closed until the threshold
        ```
    """

    def __init__(
        self,
        observability_manager: ObservabilityManager,
        circuit_configs: dict[str, CircuitBreakerConfig] | None = None,
        default_config: CircuitBreakerConfig | None = None,
    ) -> None:
        """Initialize SafetyGuard.

        Args:
            observability_manager: ObservabilityManager for events and logs.
            circuit_configs: Breaker thresholds per provider id; defaults to
                PROVIDER_CIRCUIT_CONFIGS.
            default_config: Thresholds for providers without their own entry.
        """
        self._observability = observability_manager
        self._configs = dict(
            PROVIDER_CIRCUIT_CONFIGS if circuit_configs is None else circuit_configs
        )
        self._default_config = default_config or DEFAULT_CIRCUIT_CONFIG
        self._disabled_providers: dict[str, str] = {}
        self._scanning_frozen = False
        self._emergency_mode = False
        self._forced_fallback: ForcedFallback | None = None
        self._circuits: dict[str, KeyCircuit] = {}

    def config_for(self, provider_id: str) -> CircuitBreakerConfig:
        return self._configs.get(provider_id, self._default_config)

    # Provider switch

    async def disable_provider(self, provider_id: str, reason: str = "") -> None:
        """Take every key of a provider out of routing and probing."""
        self._disabled_providers[provider_id] = reason
        await self._emit("provider_disabled", {"provider_id": provider_id, "reason": reason})

    async def enable_provider(self, provider_id: str) -> None:
        if self._disabled_providers.pop(provider_id, None) is not None:
            await self._emit("provider_enabled", {"provider_id": provider_id})

    def is_provider_disabled(self, provider_id: str) -> bool:
        return provider_id in self._disabled_providers

    # Scheduled probing

    @property
    def scanning_frozen(self) -> bool:
        return self._scanning_frozen

    async def freeze_scanning(self, reason: str = "") -> None:
        self._scanning_frozen = True
        await self._emit("scanning_frozen", {"reason": reason})

    async def resume_scanning(self) -> None:
        self._scanning_frozen = False
        await self._emit("scanning_resumed", {})

    # Forced fallback

    @property
    def forced_fallback(self) -> ForcedFallback | None:
        return self._forced_fallback

    async def force_fallback(self, model_id: str, provider_id: str | None = None) -> ForcedFallback:
        """Route every chat request to ``model_id`` until cleared."""
        self._forced_fallback = ForcedFallback(model_id=model_id, provider_id=provider_id)
        await self._emit("fallback_forced", {"model_id": model_id, "provider_id": provider_id})
        return self._forced_fallback

    async def clear_forced_fallback(self) -> None:
        if self._forced_fallback is not None:
            self._forced_fallback = None
            await self._emit("fallback_cleared", {})

    # Emergency mode

    @property
    def emergency_mode(self) -> bool:
        return self._emergency_mode

    async def set_emergency_mode(self, enabled: bool, reason: str = "") -> None:
        """While enabled, only pairs in the Available state take traffic."""
        self._emergency_mode = enabled
        await self._emit(
            "emergency_mode_enabled" if enabled else "emergency_mode_disabled",
            {"reason": reason},
        )

    # Circuit breakers

    def _refresh(self, circuit: KeyCircuit, now: datetime) -> None:
        if circuit.state != CircuitState.Open or circuit.opened_at is None:
            return
        cooldown = timedelta(milliseconds=self.config_for(circuit.provider_id).cooldown_ms)
        if now - circuit.opened_at >= cooldown:
            circuit.state = CircuitState.HalfOpen
            circuit.successes = 0

    def circuit_state(self, key_id: str, now: datetime | None = None) -> CircuitState:
        circuit = self._circuits.get(key_id)
        if circuit is None:
            return CircuitState.Closed
        self._refresh(circuit, now or datetime.now(timezone.utc))
        return circuit.state

    def allows(self, key_id: str, provider_id: str, now: datetime | None = None) -> bool:
        """Whether the switches and the key's breaker let traffic through."""
        if provider_id in self._disabled_providers:
            return False
        return self.circuit_state(key_id, now) != CircuitState.Open

    async def record_failure(
        self,
        key_id: str,
        provider_id: str,
        now: datetime | None = None,
    ) -> CircuitState:
        """Count a failed call against the key's breaker.

        Failures older than the provider's failure window are forgotten. A
        failure while half-open re-opens the breaker at once; failures while
        open do not extend the cooldown.
        """
        now = now or datetime.now(timezone.utc)
        circuit = self._circuits.get(key_id)
        if circuit is None:
            circuit = KeyCircuit(key_id=key_id, provider_id=provider_id)
            self._circuits[key_id] = circuit
        self._refresh(circuit, now)
        if circuit.state == CircuitState.Open:
            return circuit.state

        config = self.config_for(provider_id)
        window_start = now - timedelta(milliseconds=config.failure_window_ms)
        circuit.failure_times = [t for t in circuit.failure_times if t > window_start]
        circuit.failure_times.append(now)

        if circuit.state == CircuitState.HalfOpen:
            reason = "recovery failed"
        elif len(circuit.failure_times) >= config.failure_threshold:
            reason = f"{len(circuit.failure_times)} failures within {config.failure_window_ms} ms"
        else:
            return circuit.state

        circuit.state = CircuitState.Open
        circuit.opened_at = now
        circuit.successes = 0
        await self._observability.log(
            level="WARNING",
            message="Key circuit opened",
            context={"key_id": key_id, "provider_id": provider_id, "reason": reason},
        )
        await self._emit(
            "circuit_opened",
            {
                "key_id": key_id,
                "provider_id": provider_id,
                "reason": reason,
                "cooldown_ms": config.cooldown_ms,
            },
        )
        return circuit.state

    async def record_success(self, key_id: str, now: datetime | None = None) -> CircuitState:
        """Count a successful call; enough of them close a half-open breaker."""
        circuit = self._circuits.get(key_id)
        if circuit is None:
            return CircuitState.Closed
        self._refresh(circuit, now or datetime.now(timezone.utc))

        if circuit.state == CircuitState.Closed:
            circuit.failure_times = []
        elif circuit.state == CircuitState.HalfOpen:
            circuit.successes += 1
            if circuit.successes >= self.config_for(circuit.provider_id).success_threshold:
                circuit.state = CircuitState.Closed
                circuit.failure_times = []
                circuit.successes = 0
                circuit.opened_at = None
                await self._emit(
                    "circuit_closed", {"key_id": key_id, "provider_id": circuit.provider_id}
                )
        return circuit.state

    async def reset_circuit(self, key_id: str) -> None:
        """Close a key's breaker, e.g. after its secret was rotated."""
        if self._circuits.pop(key_id, None) is not None:
            await self._emit("circuit_reset", {"key_id": key_id})

    def status(self, now: datetime | None = None) -> SafetyStatus:
        now = now or datetime.now(timezone.utc)
        return SafetyStatus(
            disabled_providers=dict(self._disabled_providers),
            scanning_frozen=self._scanning_frozen,
            emergency_mode=self._emergency_mode,
            forced_fallback=self._forced_fallback,
            key_circuits={key_id: self.circuit_state(key_id, now) for key_id in self._circuits},
        )

    async def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._observability.emit_event(
                event_type=event_type,
                payload=payload,
                metadata={"timestamp": datetime.now(timezone.utc).isoformat()},
            )
        except Exception as e:
            # Log error but don't fail the switch if event emission fails
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"event_type": event_type},
            )
