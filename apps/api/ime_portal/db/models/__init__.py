"""SQLAlchemy ORM models."""

from ime_portal.db.models.audit import AuditLog, WebhookEvent
from ime_portal.db.models.auth import Membership, Organization, Team, TeamMember, User
from ime_portal.db.models.bookings import Booking, BookingProgress, Examinee, Referrer
from ime_portal.db.models.forms import (
    AcuityAppointmentTypeForm,
    AcuityForm,
    AppForm,
    AppFormField,
)
from ime_portal.db.models.specialists import (
    AcuityAppointmentType,
    Specialist,
    SpecialistAppointmentType,
)

__all__ = [
    "AcuityAppointmentType",
    "AcuityAppointmentTypeForm",
    "AcuityForm",
    "AppForm",
    "AppFormField",
    "AuditLog",
    "Booking",
    "BookingProgress",
    "Examinee",
    "Membership",
    "Organization",
    "Referrer",
    "Specialist",
    "SpecialistAppointmentType",
    "Team",
    "TeamMember",
    "User",
    "WebhookEvent",
]
