"""Error taxonomy for the calendar synchronization engine.

Provider-side failures derive from :class:`CalendarSyncError` so mirroring
code can downgrade them to a ``sync_error`` string in one ``except`` clause.
Local lookup and input errors use builtin bases (``ValueError``,
``LookupError``, ``PermissionError``) so the HTTP layer can map them without
knowing about the provider.
"""

from __future__ import annotations

import re


class CalendarSyncError(RuntimeError):
    """Base error raised by provider requests and token handling."""


class CalendarAuthError(CalendarSyncError):
    """Raised when credentials are missing or the provider rejects a refresh.

    Callers surface this as a reconnection prompt; it is never retried.
    """


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when the OAuth token endpoint rejects a refresh or code exchange."""


class CalendarRequestError(CalendarSyncError):
    """Raised when a Google Calendar API request returns a non-2xx response."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarNotFoundError(CalendarRequestError):
    """Raised when the remote object is absent at the addressed calendar (404/410)."""


class CalendarTransientError(CalendarRequestError):
    """Raised for transport failures and rate-limit/server errors after retries."""


class EventValidationError(ValueError):
    """Raised when create/update input is missing required fields or is malformed."""


class RecordNotFoundError(LookupError):
    """Raised when a local household, member or event record does not exist."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class HouseholdAccessError(PermissionError):
    """Raised when a record is addressed through a household it does not belong to."""


_SECRET_PATTERNS = (
    re.compile(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
    ),
    re.compile(r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;]+)"),
    re.compile(r"(?i)\b(Bearer)\s+([A-Za-z0-9._\-]+)"),
)


def redact_credentials(message: str) -> str:
    """Redact credential values from an error message before it is stored or returned."""
    redacted = _SECRET_PATTERNS[0].sub(r"\1=[REDACTED]", message)
    redacted = _SECRET_PATTERNS[1].sub(r"\1: [REDACTED]", redacted)
    return _SECRET_PATTERNS[2].sub(r"\1 [REDACTED]", redacted)


def describe_sync_error(exc: BaseException) -> str:
    """Render an exception as a short, credential-free ``sync_error`` string."""
    raw_message = str(exc) or type(exc).__name__
    sanitized = " ".join(redact_credentials(raw_message).split())
    return sanitized[:200]
