"""Built-in model catalog: default aliases, chains, priorities and pricing.

Used when the application does not configure its own values. Application
configuration is merged on top of ``DEFAULT_CONFIG``.
"""

import re

from llmkeymanager.domain.models.config import LLMManagerConfig

DEFAULT_ALIASES: dict[str, str] = {
    "smart": "gpt-4o",
    "fast": "gpt-4o-mini",
    "cheap": "gemini-1.5-flash",
    "reasoning": "o1",
}

DEFAULT_FALLBACK_CHAINS: dict[str, list[str]] = {
    "text-chat": ["gpt-4o", "claude-3-5-sonnet-latest", "gemini-1.5-pro"],
    "fast-chat": ["gpt-4o-mini", "claude-3-5-haiku-latest", "gemini-1.5-flash"],
    "reasoning": ["o1", "o3-mini", "claude-3-5-sonnet-latest"],
    "embedding": ["text-embedding-3-small", "text-embedding-004"],
}

DEFAULT_CONFIG = LLMManagerConfig(
    special_models=DEFAULT_ALIASES,
    fallback_chains=DEFAULT_FALLBACK_CHAINS,
)

# Checked top to bottom; the first matching level wins, 1 otherwise.
MODEL_PRIORITY_PATTERNS: list[tuple[int, list[re.Pattern[str]]]] = [
    (
        5,
        [
            re.compile(r"gpt-4o(?!-mini)", re.IGNORECASE),
            re.compile(r"claude-3-5-sonnet", re.IGNORECASE),
            re.compile(r"\bo1(?!-mini)", re.IGNORECASE),
        ],
    ),
    (
        4,
        [
            re.compile(r"o3-mini", re.IGNORECASE),
            re.compile(r"o1-mini", re.IGNORECASE),
            re.compile(r"gpt-4-turbo", re.IGNORECASE),
            re.compile(r"claude-3-opus", re.IGNORECASE),
            re.compile(r"gemini-2\.0-flash(?!-lite)", re.IGNORECASE),
            re.compile(r"gemini-1\.5-pro", re.IGNORECASE),
        ],
    ),
    (
        3,
        [
            re.compile(r"gpt-4o-mini", re.IGNORECASE),
            re.compile(r"gpt-3\.5-turbo", re.IGNORECASE),
            re.compile(r"claude-3-5-haiku", re.IGNORECASE),
            re.compile(r"claude-3-haiku", re.IGNORECASE),
            re.compile(r"gemini-1\.5-flash", re.IGNORECASE),
        ],
    ),
    (
        2,
        [
            re.compile(r"gemini-2\.0-flash-lite", re.IGNORECASE),
            re.compile(r"gemma", re.IGNORECASE),
        ],
    ),
]

# USD per 1M tokens.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4-turbo": (10.00, 30.00),
    "gpt-3.5-turbo": (0.50, 1.50),
    "o1-mini": (3.00, 12.00),
    "o1": (15.00, 60.00),
    "o3-mini": (1.10, 4.40),
    "claude-3-5-sonnet": (3.00, 15.00),
    "claude-3-5-haiku": (0.80, 4.00),
    "claude-3-opus": (15.00, 75.00),
    "claude-3-haiku": (0.25, 1.25),
    "gemini-1.5-pro": (1.25, 5.00),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-2.0-flash": (0.10, 0.40),
    "text-embedding-3-small": (0.02, 0.0),
}

# USD per 1K tokens, used when a model has no entry in MODEL_PRICING.
PROVIDER_DEFAULT_COSTS: dict[str, tuple[float, float]] = {
    "openai": (0.0015, 0.002),
    "anthropic": (0.003, 0.015),
    "gemini": (0.00025, 0.0005),
}

DEFAULT_CAPABILITIES: dict[str, list[str]] = {
    "text-embedding": ["embedding"],
    "embedding": ["embedding"],
    "gpt-4o": ["text-chat", "vision", "function-calling"],
    "claude-3": ["text-chat", "vision"],
    "gemini": ["text-chat", "vision"],
    "o1": ["text-chat", "reasoning"],
    "o3": ["text-chat", "reasoning"],
}


def model_priority_for(model_id: str) -> int:
    """Return the 1-5 priority level of a model id."""
    for level, patterns in MODEL_PRIORITY_PATTERNS:
        if any(p.search(model_id) for p in patterns):
            return level
    return 1


def pricing_for(model_id: str, provider_id: str) -> tuple[float, float]:
    """Return (input, output) USD cost per single token for a model.

    Longest matching catalog prefix wins so ``gpt-4o-mini`` is not priced
    as ``gpt-4o``.
    """
    matches = [name for name in MODEL_PRICING if model_id.startswith(name)]
    if matches:
        input_per_m, output_per_m = MODEL_PRICING[max(matches, key=len)]
        return input_per_m / 1_000_000, output_per_m / 1_000_000
    input_per_k, output_per_k = PROVIDER_DEFAULT_COSTS.get(provider_id, (0.0, 0.0))
    return input_per_k / 1000, output_per_k / 1000


def capabilities_for(model_id: str, overrides: dict[str, list[str]] | None = None) -> list[str]:
    """Return the capability tags of a model, honoring configured overrides."""
    if overrides and model_id in overrides:
        return list(overrides[model_id])
    for prefix, caps in DEFAULT_CAPABILITIES.items():
        if model_id.startswith(prefix):
            return list(caps)
    return ["text-chat"]
