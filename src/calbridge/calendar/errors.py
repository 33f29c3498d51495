"""Error taxonomy for calendar unification and update reconciliation.

Two families live here:

- ``CalendarSyncError`` and its subclasses are what the reconciler raises to
  its callers. Each carries a ``kind`` so callers switch on the kind rather
  than on message text.
- ``CalendarIntegrationError`` and its subclasses are raised by provider
  integration clients (auth, transport, provider API failures). The
  reconciler never lets these escape verbatim; they are chained as the
  ``__cause__`` of a ``CalendarSyncError``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar

from calbridge.core.redaction import redact_credential_values

# Sanitized provider error messages are capped at this many characters.
MAX_ERROR_MESSAGE_LENGTH = 200


class CalendarErrorKind(StrEnum):
    VALIDATION = "validation"
    CALENDAR_NOT_FOUND_OR_DISABLED = "calendar_not_found_or_disabled"
    PROVIDER_UPDATE_FAILED = "provider_update_failed"
    CONFIRMATION_FAILED = "confirmation_failed"
    CONFLICT = "conflict"


class CalendarSyncError(RuntimeError):
    """Base error surfaced by the update reconciler."""

    kind: ClassVar[CalendarErrorKind]
    default_message: ClassVar[str] = "Calendar operation failed"

    def __init__(self, message: str | None = None, *, context: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.context: dict[str, Any] = dict(context or {})
        super().__init__(self.message)


class CalendarValidationError(CalendarSyncError):
    """A required field is missing; raised before any I/O."""

    kind = CalendarErrorKind.VALIDATION
    default_message = "Missing required fields"


class CalendarNotFoundOrDisabledError(CalendarSyncError):
    """No connected calendar matches the event, or the match is disabled."""

    kind = CalendarErrorKind.CALENDAR_NOT_FOUND_OR_DISABLED
    default_message = "Calendar not found or not enabled"


class ProviderUpdateFailedError(CalendarSyncError):
    """The provider rejected the update, or no client could be obtained."""

    kind = CalendarErrorKind.PROVIDER_UPDATE_FAILED
    default_message = "Failed to update calendar event"


class ConfirmationFailedError(CalendarSyncError):
    """The update call returned but the event could not be re-read."""

    kind = CalendarErrorKind.CONFIRMATION_FAILED
    default_message = "Failed to retrieve updated event"


class EventConflictError(CalendarSyncError):
    """The provider copy changed since the caller last read it."""

    kind = CalendarErrorKind.CONFLICT
    default_message = "Calendar event was modified by another writer"


class CalendarIntegrationError(RuntimeError):
    """Base error raised by provider integration clients."""


class CalendarCredentialError(CalendarIntegrationError):
    """Raised when stored provider credentials are missing or malformed."""


class CalendarTokenRefreshError(CalendarIntegrationError):
    """Raised when the refresh-token exchange fails."""


class CalendarRequestError(CalendarIntegrationError):
    """Raised when a provider API request fails."""

    def __init__(self, *, status_code: int, message: str, provider: str = "calendar") -> None:
        self.status_code = status_code
        self.message = message
        self.provider = provider
        super().__init__(f"{provider} API request failed ({status_code}): {message}")


class CalendarIntegrationReadOnlyError(CalendarIntegrationError):
    """Raised when a write is attempted against a read-only calendar feed."""


class UnsupportedProviderError(CalendarIntegrationError):
    """Raised when no mapper or integration exists for a provider."""


def sanitize_error_message(message: str) -> str:
    """Redact, collapse whitespace and truncate a provider error message."""
    redacted = redact_credential_values(message)
    return " ".join(redacted.split())[:MAX_ERROR_MESSAGE_LENGTH]


def build_structured_error(
    exc: BaseException,
    *,
    provider: str,
    calendar_id: str,
) -> dict[str, Any]:
    """Build a structured, credential-free description of a provider failure."""
    payload: dict[str, Any] = {
        "status": "error",
        "error": sanitize_error_message(str(exc)),
        "error_type": type(exc).__name__,
        "provider": provider,
        "calendar_id": calendar_id,
    }
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        payload["status_code"] = status_code
    return payload
