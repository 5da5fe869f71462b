"""Error taxonomy shared by the sync engine, the state store and the CLI."""

from __future__ import annotations

import re
from typing import Any

DEFAULT_PROVIDER_ERROR = "Google Calendar request failed"
_MAX_MESSAGE_LENGTH = 200
_CREDENTIAL_KEYS = "client_secret|refresh_token|access_token|code_verifier|token"


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync engine and its collaborators."""


class AuthError(CalendarSyncError):
    """Raised when authorization is denied, times out, or is misconfigured."""


class TokenError(CalendarSyncError):
    """Raised when no usable access token can be produced."""


class SyncTokenExpiredError(CalendarSyncError):
    """Raised when the provider invalidates the sync cursor (HTTP 410 Gone)."""

    def __init__(self, message: str = "Sync token expired") -> None:
        super().__init__(message)


class FetchError(CalendarSyncError):
    """Raised when the events-list call fails for any reason other than 410."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class PersistenceError(CalendarSyncError):
    """Raised when the local key-value store cannot be read or written.

    Callers log and ignore it: losing persisted state only forces a later
    full resync.
    """


def redact_credential_values(message: str) -> str:
    """Redact credential values from an error message.

    Redaction is pattern-based: ``key=value``, quoted ``"key": "value"``,
    ``key: value`` and ``Bearer <token>`` forms are masked.
    """
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        rf"""(?i)\b({_CREDENTIAL_KEYS})\s*:\s*([^\s,;"']+)""",
        r"\1: [REDACTED]",
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact, whitespace-normalise and truncate *message* for status display."""
    sanitized = " ".join(redact_credential_values(message).split())[:_MAX_MESSAGE_LENGTH]
    return sanitized or "Unknown error"


def provider_error_message(payload: Any, *, fallback: str = DEFAULT_PROVIDER_ERROR) -> str:
    """Extract ``error.message`` (or ``error_description`` / ``error``) from a provider body."""
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:_MAX_MESSAGE_LENGTH]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:_MAX_MESSAGE_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:_MAX_MESSAGE_LENGTH]
    return fallback
