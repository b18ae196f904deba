"""Domain models for LLM Key Manager."""

from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.domain.models.config import LLMManagerConfig
from llmkeymanager.domain.models.key_quota import KeyQuota
from llmkeymanager.domain.models.key_record import (
    KeyPriority,
    KeyRecord,
    KeyVerificationStatus,
    RateLimitData,
    RateLimitWindow,
)
from llmkeymanager.domain.models.request import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    EmbeddingRequest,
    EmbeddingResponse,
    LogicalRequest,
    ProviderResponse,
    TokenUsage,
)
from llmkeymanager.domain.models.state_transition import StateTransition
from llmkeymanager.domain.models.usage import ErrorLogEntry, UsageDataPoint
from llmkeymanager.domain.models.verified_model import ModelState, VerifiedModelMetadata

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ClassifiedError",
    "EmbeddingRequest",
    "EmbeddingResponse",
    "ErrorKind",
    "ErrorLogEntry",
    "KeyPriority",
    "KeyQuota",
    "KeyRecord",
    "KeyVerificationStatus",
    "LLMManagerConfig",
    "LogicalRequest",
    "ModelState",
    "ProviderResponse",
    "RateLimitData",
    "RateLimitWindow",
    "StateTransition",
    "TokenUsage",
    "UsageDataPoint",
    "VerifiedModelMetadata",
]
