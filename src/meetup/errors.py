"""Domain error taxonomy.

Services raise these; the HTTP layer renders them as
``{"success": false, "message": ..., "error": ...}`` results.
"""

from __future__ import annotations


class MeetupError(Exception):
    """Base class for every domain failure."""

    code = "error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class NotFoundError(MeetupError, LookupError):
    """Entity not found."""

    code = "not_found"
    status_code = 404


class DuplicateError(MeetupError):
    """Value already in use."""

    code = "duplicate"
    status_code = 409


class InvalidError(MeetupError, ValueError):
    """Malformed input."""

    code = "invalid"
    status_code = 422


class ExpiredError(MeetupError):
    """Code or link has expired."""

    code = "expired"
    status_code = 410


class RateExceededError(MeetupError):
    """Too many attempts."""

    code = "rate_exceeded"
    status_code = 429


class StorageFailureError(MeetupError):
    """Storage operation failed."""

    code = "storage_failure"
    status_code = 503


class ConflictError(MeetupError):
    """Document changed since it was read."""

    code = "conflict"
    status_code = 409


class UnrecognizedCodeError(MeetupError):
    """QR code or link not recognized."""

    code = "unrecognized_code"
    status_code = 422


class WrongPasswordError(MeetupError):
    """Wrong password."""

    code = "wrong_password"
    status_code = 401


class DeactivatedError(MeetupError, PermissionError):
    """Account is deactivated."""

    code = "deactivated"
    status_code = 403


class NotAParticipantError(MeetupError, PermissionError):
    """Sender is not a participant of the chat."""

    code = "not_a_participant"
    status_code = 403


class SchemaVersionError(MeetupError):
    """Record was written by a newer schema version."""

    code = "schema_version"
    status_code = 500
