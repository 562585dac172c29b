"""Audit and compliance enums."""

from enum import Enum


class AuditEventType(str, Enum):
    """
    Booking lifecycle audit events.

    Groups:
    - BOOKING_*: portal-initiated lifecycle changes
    - SYNC_*: changes applied from scheduler webhooks
    - RECONCILE_*: operator reconciliation of orphaned appointments
    """

    BOOKING_CREATED = "booking_created"
    BOOKING_PROGRESS_UPDATED = "booking_progress_updated"
    BOOKING_RESCHEDULED = "booking_rescheduled"
    BOOKING_CANCELLED = "booking_cancelled"

    SYNC_BOOKING_CREATED = "sync_booking_created"
    SYNC_BOOKING_UPDATED = "sync_booking_updated"
    SYNC_BOOKING_CANCELLED = "sync_booking_cancelled"
    SYNC_BOOKING_RESCHEDULED = "sync_booking_rescheduled"

    RECONCILE_ORPHAN_CANCELLED = "reconcile_orphan_cancelled"


class AuditTargetType(str, Enum):
    BOOKING = "booking"
    EXTERNAL_APPOINTMENT = "external_appointment"
