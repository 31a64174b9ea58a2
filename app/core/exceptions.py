from typing import Any

from fastapi import status


class PlatformError(Exception):
    """Base class for errors raised by services. Routers let these propagate to the
    exception handler installed in app.main, which maps them to JSON responses."""

    code: str = "platform_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details


# Not found

class NotFoundError(PlatformError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class TenantNotFoundError(NotFoundError):
    code = "tenant_not_found"


class PatientNotFoundError(NotFoundError):
    code = "patient_not_found"


class DoctorNotFoundError(NotFoundError):
    code = "doctor_not_found"


class AppointmentNotFoundError(NotFoundError):
    code = "appointment_not_found"


class DateExceptionNotFoundError(NotFoundError):
    code = "date_exception_not_found"


# Conflicts

class ConflictError(PlatformError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class SlotUnavailableError(ConflictError):
    """The requested interval cannot be booked; `reason` is meant for the caller's UI."""

    code = "slot_unavailable"

    def __init__(self, reason: str) -> None:
        super().__init__(reason, details={"reason": reason})
        self.reason = reason


class SchemaConflictError(ConflictError):
    code = "schema_conflict"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class ConcurrentModificationError(ConflictError):
    code = "concurrent_modification"


# Input / access

class ValidationError(PlatformError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class FeatureDisabledError(PlatformError):
    code = "feature_disabled"
    status_code = status.HTTP_403_FORBIDDEN


class AuthenticationError(PlatformError):
    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(PlatformError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


# Infrastructure

class TenantConnectionError(PlatformError):
    code = "tenant_database_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ConsistencyWarning(UserWarning):
    """A secondary write (audit trail) failed after the primary operation succeeded."""
