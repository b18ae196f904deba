"""Error classification for provider failures.

``classify`` maps any raw failure raised by a provider adapter into the
closed ErrorKind taxonomy plus an optional retry-after hint. It is a pure
function: the same input always yields the same ClassifiedError, whichever
adapter produced the error.

Example:
    ```python
    try:
        response = await adapter.complete(secret, request)
    except Exception as raw:
        classified = classify(raw, provider_id="openai", model_id="gpt-4o")
        if classified.kind == ErrorKind.RateLimit:
            ...
    ```
"""

from __future__ import annotations

import asyncio
import re
import socket
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from llmkeymanager.domain.models.classified_error import ClassifiedError, ErrorKind
from llmkeymanager.infrastructure.observability.logger import redact_secrets

KNOWN_STATUS_CODES = frozenset(
    {400, 401, 402, 403, 404, 405, 408, 409, 410, 422, 429, 500, 502, 503, 504, 529}
)

STATUS_PATTERNS = [
    re.compile(r"status(?:\s*code)?[:\s=]*(\d{3})\b", re.IGNORECASE),
    re.compile(r"\bcode[:\s=]*(\d{3})\b", re.IGNORECASE),
    re.compile(r"\berror[:\s]*(\d{3})\b", re.IGNORECASE),
    re.compile(r"failed with (\d{3})\b", re.IGNORECASE),
    re.compile(r"\bHTTP[/\d.]*\s+(\d{3})\b", re.IGNORECASE),
]

RETRY_IN_PATTERN = re.compile(r"retry (?:in|after) ([\d.]+)\s*s", re.IGNORECASE)
RETRY_DELAY_PATTERN = re.compile(r'"?retryDelay"?\s*:\s*"(\d+(?:\.\d+)?)s"')

RATE_LIMIT_PATTERN = re.compile(
    r"rate[ _-]?limit|too many requests|requests per (?:minute|second)", re.IGNORECASE
)
QUOTA_PATTERN = re.compile(
    r"insufficient_quota|quota|billing|credit balance|limit:\s*0\b|per ?day|daily",
    re.IGNORECASE,
)
QUOTA_ON_AUTH_PATTERN = re.compile(r"quota|limit|exceeded", re.IGNORECASE)
AUTH_PATTERN = re.compile(
    r"unauthori[sz]ed|invalid[ _-]?(?:api[ _-]?)?key|incorrect api key|api key not valid"
    r"|authentication|permission[ _-]denied|forbidden|invalid x-api-key",
    re.IGNORECASE,
)
SERVER_PATTERN = re.compile(
    r"server error|internal error|internal_error|overloaded|service unavailable|bad gateway",
    re.IGNORECASE,
)
NETWORK_PATTERN = re.compile(
    r"timeout|timed out|econnrefused|econnreset|enotfound|fetch failed"
    r"|connection (?:refused|reset|error|aborted|closed)|network|name resolution",
    re.IGNORECASE,
)

MAX_MESSAGE_LENGTH = 500

TRANSPORT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
)


def extract_error_code(message: str) -> int | None:
    """Extract a known HTTP status code embedded in an error message."""
    for pattern in STATUS_PATTERNS:
        for match in pattern.finditer(message):
            code = int(match.group(1))
            if code in KNOWN_STATUS_CODES:
                return code
    return None


def _coerce_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and 100 <= value <= 599:
        return value
    if isinstance(value, str) and value.isdigit() and 100 <= int(value) <= 599:
        return int(value)
    return None


def extract_status_code(raw_error: Any, message: str) -> int | None:
    """Find the HTTP status of a raw error.

    Checks status attributes on the error, then on an attached response
    (as httpx.HTTPStatusError carries), then known codes in the message.
    """
    sources: list[Any] = [raw_error]
    response = getattr(raw_error, "response", None)
    if response is not None:
        sources.append(response)

    for source in sources:
        if isinstance(source, Mapping):
            candidates = [source.get(name) for name in ("status_code", "status", "code")]
        else:
            candidates = [
                getattr(source, name, None)
                for name in ("status_code", "status", "http_status", "code")
            ]
        for candidate in candidates:
            status = _coerce_status(candidate)
            if status is not None:
                return status

    return extract_error_code(message)


def _headers_of(raw_error: Any) -> Mapping[str, str]:
    headers = getattr(raw_error, "headers", None)
    if headers is None:
        response = getattr(raw_error, "response", None)
        headers = getattr(response, "headers", None) if response is not None else None
    if isinstance(headers, httpx.Headers):
        return headers
    if isinstance(headers, Mapping):
        return {str(k).lower(): str(v) for k, v in headers.items()}
    return {}


def _parse_retry_after_header(value: str, now: datetime) -> int | None:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(int(seconds * 1000), 0)

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(int((retry_at - now).total_seconds() * 1000), 0)


def extract_retry_after_ms(raw_error: Any, message: str, now: datetime) -> int | None:
    """Find a provider supplied retry delay in milliseconds."""
    headers = _headers_of(raw_error)
    if "retry-after-ms" in headers:
        try:
            return max(int(float(headers["retry-after-ms"])), 0)
        except ValueError:
            pass
    if "retry-after" in headers:
        parsed = _parse_retry_after_header(headers["retry-after"], now)
        if parsed is not None:
            return parsed

    retry_after_ms = getattr(raw_error, "retry_after_ms", None)
    if isinstance(retry_after_ms, (int, float)) and not isinstance(retry_after_ms, bool):
        return max(int(retry_after_ms), 0)
    retry_after = getattr(raw_error, "retry_after", None)
    if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
        return max(int(retry_after * 1000), 0)

    for pattern in (RETRY_DELAY_PATTERN, RETRY_IN_PATTERN):
        match = pattern.search(message)
        if match:
            return int(float(match.group(1)) * 1000)
    return None


def _describe(raw_error: Any) -> str:
    """Collect the textual signals of a raw error into one string."""
    parts = [str(raw_error) or type(raw_error).__name__]
    for name in ("code", "type", "body"):
        value = getattr(raw_error, name, None)
        if value is not None and not isinstance(value, int):
            parts.append(str(value))
    response = getattr(raw_error, "response", None)
    if isinstance(response, httpx.Response):
        try:
            parts.append(response.text)
        except httpx.ResponseNotRead:
            pass
    return " ".join(p for p in parts if p)


def _kind_from_status(status: int, text: str) -> ErrorKind | None:
    """Kind implied by a recognized HTTP status; None for statuses without a rule."""
    if status == 429:
        return ErrorKind.Quota if QUOTA_PATTERN.search(text) else ErrorKind.RateLimit
    if status in (401, 403):
        return ErrorKind.Quota if QUOTA_ON_AUTH_PATTERN.search(text) else ErrorKind.Auth
    if 500 <= status <= 599:
        return ErrorKind.Server
    if status == 408:
        return ErrorKind.Network
    if status == 402:
        return ErrorKind.Quota
    return None


def _determine_kind(raw_error: Any, status: int | None, text: str) -> ErrorKind:
    if status is not None:
        kind = _kind_from_status(status, text)
        if kind is not None:
            return kind

    quota_signal = bool(QUOTA_PATTERN.search(text))
    if RATE_LIMIT_PATTERN.search(text):
        return ErrorKind.Quota if quota_signal else ErrorKind.RateLimit
    if AUTH_PATTERN.search(text):
        return ErrorKind.Auth
    if SERVER_PATTERN.search(text):
        return ErrorKind.Server
    if isinstance(raw_error, TRANSPORT_EXCEPTIONS) or NETWORK_PATTERN.search(text):
        return ErrorKind.Network
    if quota_signal:
        return ErrorKind.Quota
    return ErrorKind.Unknown


def classify(
    raw_error: Any,
    provider_id: str | None = None,
    model_id: str | None = None,
    now: datetime | None = None,
) -> ClassifiedError:
    """Classify a raw provider failure.

    A recognized HTTP status (429, 401/403, 5xx, 408, 402) decides the kind
    on its own; message text only refines 429 and 401/403 into Quota when it
    carries quota or billing markers. Without such a status, message rules
    apply in priority order: rate limit, authentication, server, transport,
    quota, unknown.

    Args:
        raw_error: Exception or error object raised by an adapter.
        provider_id: Provider the attempt targeted.
        model_id: Model the attempt targeted.
        now: Reference time for HTTP-date retry hints; defaults to the current time.

    Returns:
        ClassifiedError with a redacted message.
    """
    now = now or datetime.now(timezone.utc)
    text = _describe(raw_error)
    status = extract_status_code(raw_error, text)
    kind = _determine_kind(raw_error, status, text)
    retry_after_ms = extract_retry_after_ms(raw_error, text, now)

    quota_reset_at = None
    if kind == ErrorKind.Quota and retry_after_ms is not None:
        quota_reset_at = now + timedelta(milliseconds=retry_after_ms)

    message = redact_secrets(text)
    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + "..."

    return ClassifiedError(
        kind=kind,
        message=message,
        retry_after_ms=retry_after_ms if kind in (ErrorKind.RateLimit, ErrorKind.Quota) else None,
        status_code=status,
        provider_id=provider_id,
        model_id=model_id,
        quota_reset_at=quota_reset_at,
    )
