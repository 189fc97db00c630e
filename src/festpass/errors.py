"""Error taxonomy shared by the rule engine, the queue and the HTTP layer.

Synchronous errors (validation, conflicts) carry a ``reason_code`` that the
API returns verbatim.  ``http_status`` is the status the API maps each class
to; non-HTTP callers can ignore it.
"""

from __future__ import annotations


class FestpassError(Exception):
    """Base class for all festpass errors."""

    http_status = 500
    default_reason = "error"

    def __init__(self, message: str, reason_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason_code = reason_code or self.default_reason

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "reason_code": self.reason_code}


class ValidationError(FestpassError):
    """Bad selection or participant data. Never retried."""

    http_status = 422
    default_reason = "invalid"


class UnknownEventError(ValidationError):
    default_reason = "unknown_event"

    def __init__(self, raw: str) -> None:
        super().__init__(f"Unknown event: {raw!r}")
        self.raw = raw


class ConflictError(FestpassError):
    """Selection violates caps against the contact's prior registrations."""

    http_status = 409
    default_reason = "conflict"


class InvalidTransition(FestpassError):
    http_status = 409
    default_reason = "invalid_transition"


class NotFound(FestpassError):
    http_status = 404
    default_reason = "not_found"


class TransientIOError(FestpassError):
    """Storage or network hiccup; the queue retries the job with backoff."""

    http_status = 503
    default_reason = "transient_io"


class FatalAssetError(FestpassError):
    """A mandatory asset (the base template) is missing. Deployment defect."""

    default_reason = "fatal_asset"


class AIServiceError(FestpassError):
    """External enhancement failed; the pipeline degrades to the local path."""

    http_status = 502
    default_reason = "ai_service"
