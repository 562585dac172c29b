"""Service error to HTTP translation shared by routers."""

from fastapi import HTTPException

from ime_portal.services.errors import (
    AccessDeniedError,
    BookingServiceError,
    ExternalServiceError,
    IncompleteExamineeDataError,
    InconsistentStateError,
    InvalidDateTimeError,
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
)

ERROR_STATUS_CODES: dict[type[BookingServiceError], int] = {
    NotFoundError: 404,
    AccessDeniedError: 403,
    InvalidTransitionError: 400,
    ExternalServiceError: 502,
    InconsistentStateError: 500,
    SlotConflictError: 409,
    IncompleteExamineeDataError: 422,
    InvalidDateTimeError: 422,
}


def to_http_exception(exc: BookingServiceError) -> HTTPException:
    for error_type in type(exc).__mro__:
        status_code = ERROR_STATUS_CODES.get(error_type)
        if status_code:
            break
    else:
        status_code = 400

    if isinstance(exc, InconsistentStateError):
        # Operators reconcile by Acuity id; callers only learn it failed
        return HTTPException(
            status_code=status_code,
            detail="The appointment was booked but could not be saved. Support has been notified.",
        )
    if isinstance(exc, ExternalServiceError):
        return HTTPException(
            status_code=status_code,
            detail={"message": str(exc), "code": exc.code},
        )
    if isinstance(exc, IncompleteExamineeDataError):
        return HTTPException(
            status_code=status_code,
            detail={"message": str(exc), "missing": exc.missing},
        )
    return HTTPException(status_code=status_code, detail=str(exc))
