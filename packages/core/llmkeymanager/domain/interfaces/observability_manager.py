"""Sink for key manager events and structured log lines.

Events emitted by the library, with the payload keys each carries:

    key_added                                  key_id, provider_id, label
    key_revoked, key_rotated, key_deleted      key_id, provider_id
    vault_unlocked                             source
    vault_locked                               (empty)
    vault_imported                             imported, total
    state_transition                           key_id, model_id, from_state, to_state, trigger
    request_succeeded                          key_id, provider_id, model_id, attempts, latency_ms
    request_exhausted                          requested, attempts, failure_kinds
    probe_completed                            key_id, success, models, error_kind
    configuration_loaded, configuration_updated, configuration_rollback
                                               version (rollback adds restored_version)
    provider_disabled                          provider_id, reason
    provider_enabled                           provider_id
    scanning_frozen                            reason
    scanning_resumed, fallback_cleared         (empty)
    fallback_forced                            model_id, provider_id
    emergency_mode_enabled, emergency_mode_disabled
                                               reason
    circuit_opened                             key_id, provider_id, reason, cooldown_ms
    circuit_closed                             key_id, provider_id
    circuit_reset                              key_id

Payloads never carry plaintext secrets. Components treat a failing sink as
non-fatal and carry on after logging a warning.
"""

from abc import ABC, abstractmethod
from typing import Any


class ObservabilityError(Exception):
    """Raised by a sink that could not record an event or log line."""


class ObservabilityManager(ABC):
    """Receives events and log lines from every key manager component."""

    @abstractmethod
    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a named event.

        Raises:
            ObservabilityError: If the event could not be recorded.
        """

    @abstractmethod
    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Record a log line at ``level`` (DEBUG through CRITICAL).

        Raises:
            ObservabilityError: If the line could not be recorded.
        """
