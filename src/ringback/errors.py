"""Error hierarchy shared by the session, calendar and presentation layers.

Every error raised by ringback derives from :class:`RingbackError`.  The
taxonomy mirrors how callers are expected to react:

- ``AuthRequired`` / ``AuthExhausted``: show the sign-in UI.
- ``AuthDenied``: the user (or policy) declined; do not retry.
- ``AuthTransient``: network or rate-limit trouble during auth.  Retried by
  the session manager only, never by its callers.
- ``CalendarUnauthorizedError``: a 401 from the calendar API that survived
  one refresh-and-retry.
- ``CalendarNetworkError`` / ``CalendarQuotaError``: the poll cycle ends and
  the next poll rechecks the window.
- ``MalformedEventError``: a single bad event record, skipped and logged.
- ``PresentationFailed``: neither the window nor the notification could be
  shown.

Messages are sanitized with :func:`sanitize_error_message` before they are
surfaced so token values never leak into logs or status payloads.
"""

from __future__ import annotations

import re
from typing import Any

import httpx


class RingbackError(Exception):
    """Base class for all ringback errors."""


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(RingbackError):
    """Base error raised by the session manager and token providers."""


class AuthRequired(AuthError):
    """No usable credential; the user has to sign in."""


class AuthDenied(AuthError):
    """The user declined consent or a policy blocked authorization."""


class AuthTransient(AuthError):
    """Retryable failure (network, rate limit) while obtaining a token."""


class RefreshCooldownActive(AuthTransient):
    """A refresh was attempted too recently and there is no token to fall back on."""


class RefreshTimeout(AuthTransient):
    """Waiting for an in-flight refresh exceeded its bound."""


class AuthExhausted(AuthError):
    """The refresh retry ceiling was hit; the session has been signed out."""


# ---------------------------------------------------------------------------
# Calendar API
# ---------------------------------------------------------------------------


class CalendarError(RingbackError):
    """Base error raised by the event fetcher."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarNetworkError(CalendarRequestError):
    """Transport failure or a non-2xx response that is not quota related."""


class CalendarQuotaError(CalendarRequestError):
    """The calendar API rejected the request for quota or rate-limit reasons."""


class CalendarUnauthorizedError(CalendarRequestError):
    """The calendar API rejected the credential (401) or no credential exists."""


class MalformedEventError(CalendarError):
    """A single event payload could not be parsed."""


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


class PresentationError(RingbackError):
    """A single presentation path (window or notification) failed."""


class PresentationFailed(PresentationError):
    """Both presentation paths failed; the user was not alerted."""


# ---------------------------------------------------------------------------
# Message sanitation
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|token"


def redact_credentials(message: str) -> str:
    """Replace credential-looking values in *message* with ``[REDACTED]``."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*:\s*([^\s,;\"'\[]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str, *, limit: int = 200) -> str:
    """Redact secrets, collapse whitespace and truncate to *limit* characters."""
    return " ".join(redact_credentials(message).split())[:limit]


def build_structured_error(exc: Exception, **context: Any) -> dict[str, Any]:
    """Build the error payload returned to the message protocol and status views."""
    return {
        "status": "error",
        "error": sanitize_error_message(str(exc)),
        "error_type": type(exc).__name__,
        **context,
    }


def safe_google_error(response: httpx.Response) -> tuple[str | None, str]:
    """Return ``(error_code, message)`` from a Google API error response.

    Handles both the OAuth shape (``{"error": "invalid_grant",
    "error_description": ...}``) and the REST API shape (``{"error":
    {"status": ..., "message": ...}}``).  The message is sanitized.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        description = payload.get("error_description")
        if isinstance(error_payload, str) and error_payload.strip():
            message = description if isinstance(description, str) else error_payload
            return error_payload.strip(), sanitize_error_message(message)
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            status = error_payload.get("status")
            code = status.lower() if isinstance(status, str) else None
            if isinstance(message, str) and message.strip():
                return code, sanitize_error_message(message)

    raw_text = response.text.strip()
    if raw_text:
        return None, sanitize_error_message(raw_text)
    return None, "Request failed without an error payload"
