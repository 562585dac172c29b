"""Booking lifecycle enums."""

from enum import Enum


class BookingStatus(str, Enum):
    """
    Coarse booking status.

    Moves to CLOSED in lockstep with terminal progress values.
    """

    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class BookingType(str, Enum):
    """Examination modality."""

    IN_PERSON = "in-person"
    TELEHEALTH = "telehealth"


class ProgressStatus(str, Enum):
    """
    Fine-grained booking progress.

    Flow: scheduled → generating-report → report-generated → payment-received
          scheduled → rescheduled → generating-report
          scheduled | rescheduled → cancelled | no-show (terminal)
    """

    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"
    GENERATING_REPORT = "generating-report"
    REPORT_GENERATED = "report-generated"
    PAYMENT_RECEIVED = "payment-received"


class ExamineeField(str, Enum):
    """Canonical examinee attributes a form field can map onto."""

    FIRST_NAME = "firstName"
    LAST_NAME = "lastName"
    DATE_OF_BIRTH = "dateOfBirth"
    EMAIL = "email"
    PHONE_NUMBER = "phoneNumber"
    ADDRESS = "address"
    AUTHORIZED_CONTACT = "authorizedContact"
    CONDITION = "condition"
    CASE_TYPE = "caseType"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_


# Default booking values
DEFAULT_BOOKING_STATUS = BookingStatus.ACTIVE
INITIAL_PROGRESS = ProgressStatus.SCHEDULED
