"""Domain components."""

from llmkeymanager.domain.components.availability_manager import AvailabilityManager
from llmkeymanager.domain.components.availability_state_machine import (
    AvailabilityStateMachine,
    BackoffPolicy,
    InvalidTransitionError,
    TransitionEvent,
)
from llmkeymanager.domain.components.error_classifier import classify
from llmkeymanager.domain.components.health_prober import HealthProber, ProbeOutcome
from llmkeymanager.domain.components.key_locks import KeyLockRegistry
from llmkeymanager.domain.components.quota_ledger import QuotaLedger
from llmkeymanager.domain.components.safety_guard import (
    CircuitBreakerConfig,
    CircuitState,
    SafetyGuard,
    SafetyStatus,
)
from llmkeymanager.domain.components.selection_engine import (
    AttemptFailure,
    ExhaustedError,
    NoCandidatesError,
    SelectionEngine,
)
from llmkeymanager.domain.components.usage_log import UsageLog, UsageSummary
from llmkeymanager.domain.components.vault import (
    CorruptKeyError,
    DuplicateKeyError,
    LockedVaultError,
    NotFoundError,
    UnlockError,
    Vault,
    VaultError,
)

__all__ = [
    "AvailabilityManager",
    "AvailabilityStateMachine",
    "BackoffPolicy",
    "InvalidTransitionError",
    "TransitionEvent",
    "classify",
    "HealthProber",
    "ProbeOutcome",
    "KeyLockRegistry",
    "QuotaLedger",
    "SafetyGuard",
    "SafetyStatus",
    "CircuitState",
    "CircuitBreakerConfig",
    "SelectionEngine",
    "NoCandidatesError",
    "ExhaustedError",
    "AttemptFailure",
    "UsageLog",
    "UsageSummary",
    "Vault",
    "VaultError",
    "DuplicateKeyError",
    "LockedVaultError",
    "UnlockError",
    "CorruptKeyError",
    "NotFoundError",
]
