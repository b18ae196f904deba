"""Default observability manager implementation."""

import logging
import re
from datetime import datetime, timezone
from typing import Any

import structlog

from llmkeymanager.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)

REDACTED = "[REDACTED]"

SENSITIVE_FIELD_MARKERS = ("secret", "api_key", "apikey", "token", "password", "passphrase")

# Fields whose names contain a marker but carry counts, not credentials
_NON_SENSITIVE_FIELDS = frozenset(
    {"input_tokens", "output_tokens", "total_tokens", "tokens", "max_tokens"}
)

SECRET_PATTERNS = [
    re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"sk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"AIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]{8,}"),
    re.compile(r"(?i)(key=)[A-Za-z0-9._\-]{8,}"),
]


def redact_secrets(text: str) -> str:
    """Replace anything that looks like a provider credential in ``text``."""
    for pattern in SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


def _is_sensitive_field(name: str) -> bool:
    lowered = name.lower()
    if lowered in _NON_SENSITIVE_FIELDS:
        return False
    return any(marker in lowered for marker in SENSITIVE_FIELD_MARKERS)


def sanitize_for_logging(data: Any) -> Any:
    """Sanitize data to remove sensitive information before logging.

    Redacts values of credential-like fields and credential-looking strings in
    dictionaries, lists and nested structures.

    Args:
        data: Data structure to sanitize (dict, list, or primitive).

    Returns:
        Sanitized copy of the data.
    """
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if isinstance(key, str) and _is_sensitive_field(key) and value is not None:
                sanitized[key] = REDACTED
            else:
                sanitized[key] = sanitize_for_logging(value)
        return sanitized
    elif isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item) for item in data]
    elif isinstance(data, str):
        return redact_secrets(data)
    return data


def _configure_structlog(log_level: str, json_format: bool) -> None:
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(message)s",
    )


class DefaultObservabilityManager(ObservabilityManager):
    """structlog-backed sink used when no other manager is injected.

    Every payload, context dict and message passes through the redaction
    helpers above before it reaches a renderer. Events are written at INFO
    with their type under ``event_type``.
    """

    def __init__(self, log_level: str = "INFO", json_format: bool = True) -> None:
        self._log_level = log_level
        self._json_format = json_format
        _configure_structlog(log_level, json_format)
        self._logger = structlog.get_logger("llmkeymanager")

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        fields: dict[str, Any] = sanitize_for_logging(payload)
        if metadata is not None:
            fields["metadata"] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **sanitize_for_logging(metadata),
            }
        try:
            self._logger.info("key manager event", event_type=event_type, **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to emit event {event_type}: {e}") from e

    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        method = getattr(self._logger, level.lower(), None) or self._logger.info
        fields = sanitize_for_logging(context) if context else {}
        try:
            method(redact_secrets(message), **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to log message: {e}") from e
