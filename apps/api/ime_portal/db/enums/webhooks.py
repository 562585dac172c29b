"""Inbound webhook enums."""

from enum import Enum


class WebhookSource(str, Enum):
    ACUITY = "acuity"


class WebhookEventType(str, Enum):
    """Appointment events delivered by the scheduling automation."""

    APPOINTMENT_UPSERTED = "appointment.upserted"
    APPOINTMENT_CANCELED = "appointment.canceled"
    APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
