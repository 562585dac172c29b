"""Booking lifecycle service errors.

Routers map each class to a distinct HTTP status.
"""


class BookingServiceError(Exception):
    """Base exception for booking lifecycle errors."""

    pass


class NotFoundError(BookingServiceError):
    """Booking, specialist, or appointment type absent."""

    pass


class AccessDeniedError(BookingServiceError):
    """Role resolution rejected the actor."""

    pass


class InvalidTransitionError(BookingServiceError):
    """Requested progress change is not an allowed edge."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid progress transition from '{current}' to '{requested}'")


class ExternalServiceError(BookingServiceError):
    """Scheduler call failed or timed out."""

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class InconsistentStateError(BookingServiceError):
    """
    Scheduler call succeeded but the local transaction failed.

    The appointment now exists only in Acuity and needs manual reconciliation.
    """

    def __init__(self, message: str, *, acuity_appointment_id: int):
        self.acuity_appointment_id = acuity_appointment_id
        super().__init__(f"{message} (orphaned Acuity appointment {acuity_appointment_id})")


class SlotConflictError(BookingServiceError):
    """Specialist already has an active booking at that time."""

    pass


class IncompleteExamineeDataError(BookingServiceError):
    """Required examinee attributes missing under the reject policy."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"Missing required examinee fields: {', '.join(missing)}. "
            "Please check form field mappings."
        )


class InvalidDateTimeError(BookingServiceError):
    """Requested date-time is not ISO 8601."""

    pass
