"""Enum definitions for application constants."""

from ime_portal.db.enums.audit import AuditEventType, AuditTargetType
from ime_portal.db.enums.auth import OrgRole, ROLES_ORG_WIDE_BOOKING_ACCESS
from ime_portal.db.enums.bookings import (
    BookingStatus,
    BookingType,
    DEFAULT_BOOKING_STATUS,
    ExamineeField,
    INITIAL_PROGRESS,
    ProgressStatus,
)
from ime_portal.db.enums.webhooks import WebhookEventType, WebhookSource

__all__ = [
    "AuditEventType",
    "AuditTargetType",
    "BookingStatus",
    "BookingType",
    "DEFAULT_BOOKING_STATUS",
    "ExamineeField",
    "INITIAL_PROGRESS",
    "OrgRole",
    "ProgressStatus",
    "ROLES_ORG_WIDE_BOOKING_ACCESS",
    "WebhookEventType",
    "WebhookSource",
]
