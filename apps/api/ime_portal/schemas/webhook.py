"""Acuity automation webhook payloads.

Ids arrive as strings from the automation; pydantic coerces numeric strings.
"""

from pydantic import BaseModel, ConfigDict, Field

from ime_portal.services.acuity_client import AcuityField


class _WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    acuity_appointment_id: int = Field(alias="acuityAppointmentId")


class AppointmentWebhookPayload(_WebhookPayload):
    """Appointment created or updated. Booking fields are needed only for new bookings."""

    location: str
    datetime: str | None = None
    duration: int | None = None
    acuity_calendar_id: int | None = Field(None, alias="acuityCalendarId")
    acuity_appointment_type_id: int | None = Field(None, alias="acuityAppointmentTypeId")
    type: str | None = None
    referrer_first_name: str | None = Field(None, alias="referrerFirstName")
    referrer_last_name: str | None = Field(None, alias="referrerLastName")
    referrer_email: str | None = Field(None, alias="referrerEmail")
    referrer_phone: str | None = Field(None, alias="referrerPhone")
    organization_name: str | None = Field(None, alias="organizationName")
    fields: list[AcuityField] = Field(default_factory=list)


class AppointmentCancellationPayload(_WebhookPayload):
    pass


class AppointmentReschedulePayload(_WebhookPayload):
    datetime: str


class WebhookResponse(BaseModel):
    success: bool = True
    message: str
    booking_id: str | None = Field(None, serialization_alias="bookingId")
