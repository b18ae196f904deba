"""Input validation utilities for security and data integrity."""

import re
from typing import Any

from llmkeymanager.domain.models.key_record import KeyPriority


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ValidationError.

        Args:
            message: Human-readable error message.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return error message with field name if available."""
        if self.field:
            return f"Validation error in field '{self.field}': {self.message}"
        return self.message


# Patterns that never belong in a label or identifier
INJECTION_PATTERNS = [
    re.compile(r"(?i)(<script|javascript:|onerror=|onload=)"),
    re.compile(r"(\.\./|\.\.\\|%2e%2e%2f)", re.IGNORECASE),
]

# Metadata fields callers may patch; ciphertext, nonce and fingerprint are excluded.
PATCHABLE_KEY_FIELDS = frozenset(
    {
        "label",
        "priority",
        "is_enabled",
        "tier",
        "rate_limits",
        "verification_status",
        "retry_after",
        "next_retry_at",
        "last_verified_at",
    }
)


def detect_injection_attempt(value: str) -> bool:
    """Detect potential injection attacks in a string value."""
    if not isinstance(value, str):
        return False

    return any(pattern.search(value) for pattern in INJECTION_PATTERNS)


def _has_control_characters(value: str) -> bool:
    return any(ord(c) < 32 for c in value)


def validate_secret(secret: str) -> str:
    """Validate raw API key material.

    Args:
        secret: Raw API key to validate.

    Returns:
        The secret with surrounding whitespace removed.

    Raises:
        ValidationError: If validation fails.
    """
    if not isinstance(secret, str) or not secret.strip():
        raise ValidationError("Secret cannot be empty", field="secret")

    secret = secret.strip()

    if len(secret) < 8:
        raise ValidationError("Secret must be at least 8 characters long", field="secret")
    if len(secret) > 512:
        raise ValidationError("Secret must be 512 characters or less", field="secret")
    if any(c.isspace() for c in secret):
        raise ValidationError("Secret must not contain whitespace", field="secret")
    if _has_control_characters(secret):
        raise ValidationError("Secret contains invalid control characters", field="secret")
    return secret


def validate_provider_id(provider_id: str) -> str:
    """Validate provider ID format.

    Returns:
        Normalized (lowercase, stripped) provider ID.

    Raises:
        ValidationError: If validation fails.
    """
    if not isinstance(provider_id, str) or not provider_id.strip():
        raise ValidationError("Provider ID cannot be empty", field="provider_id")

    provider_id = provider_id.strip().lower()

    if len(provider_id) > 100:
        raise ValidationError(
            "Provider ID must be 100 characters or less",
            field="provider_id",
        )
    if not re.match(r"^[a-z0-9_]+$", provider_id):
        raise ValidationError(
            "Provider ID must contain only lowercase letters, numbers, and underscores",
            field="provider_id",
        )
    return provider_id


def validate_label(label: str | None) -> str:
    """Validate a human readable key label."""
    if label is None:
        return ""
    if not isinstance(label, str):
        raise ValidationError("Label must be a string", field="label")
    label = label.strip()
    if len(label) > 200:
        raise ValidationError("Label must be 200 characters or less", field="label")
    if _has_control_characters(label):
        raise ValidationError("Label contains invalid control characters", field="label")
    if detect_injection_attempt(label):
        raise ValidationError("Label contains potentially malicious content", field="label")
    return label


def validate_priority(priority: KeyPriority | str) -> KeyPriority:
    """Coerce and validate a key priority."""
    try:
        return KeyPriority(priority)
    except ValueError:
        allowed = ", ".join(p.value for p in KeyPriority)
        raise ValidationError(
            f"Priority must be one of: {allowed}",
            field="priority",
        ) from None


def validate_metadata_patch(patch: dict[str, Any]) -> dict[str, Any]:
    """Validate a KeyRecord metadata patch.

    Returns:
        The patch with label and priority normalized.

    Raises:
        ValidationError: If the patch is not a dict or touches a protected field.
    """
    if not isinstance(patch, dict):
        raise ValidationError("Patch must be a dictionary", field="patch")

    unknown = set(patch) - PATCHABLE_KEY_FIELDS
    if unknown:
        raise ValidationError(
            f"Fields cannot be patched: {', '.join(sorted(unknown))}",
            field=f"patch.{sorted(unknown)[0]}",
        )

    normalized = dict(patch)
    if "label" in normalized:
        normalized["label"] = validate_label(normalized["label"])
    if "priority" in normalized:
        normalized["priority"] = validate_priority(normalized["priority"])
    if "is_enabled" in normalized and not isinstance(normalized["is_enabled"], bool):
        raise ValidationError("is_enabled must be a boolean", field="patch.is_enabled")
    return normalized
