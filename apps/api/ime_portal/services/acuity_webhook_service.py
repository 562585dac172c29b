"""Apply appointment changes pushed by the Acuity automation.

Acuity is the system of record for appointment times, so these handlers
accept its changes without a portal actor: bookings created here have the
system user as creator and progress entries are tagged {"source": "webhook"}.

Every delivery is stored as a WebhookEvent before processing and stamped with
processed_at or the error afterwards.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple

from sqlalchemy.orm import Session

from ime_portal.core.config import settings
from ime_portal.core.structured_logging import build_log_context
from ime_portal.db.enums import (
    AuditEventType,
    BookingStatus,
    BookingType,
    ProgressStatus,
    WebhookEventType,
    WebhookSource,
)
from ime_portal.db.models import Booking, Organization, Referrer, Specialist, WebhookEvent
from ime_portal.schemas.webhook import (
    AppointmentCancellationPayload,
    AppointmentReschedulePayload,
    AppointmentWebhookPayload,
)
from ime_portal.services import audit_service, booking_progress_service, field_mapping_service
from ime_portal.services.booking_service import parse_provider_datetime
from ime_portal.services.errors import BookingServiceError, NotFoundError

logger = logging.getLogger(__name__)

WEBHOOK_DETAILS = {"source": "webhook"}
ANONYMOUS_REFERRER_FIRST_NAME = "Unknown"
ANONYMOUS_REFERRER_LAST_NAME = "Referrer"
EXAMINEE_EMAIL_PLACEHOLDER = "n/a"


class InvalidWebhookPayloadError(BookingServiceError):
    """Payload is well-formed JSON but cannot be applied."""

    pass


class WebhookResult(NamedTuple):
    booking_id: uuid.UUID
    created: bool = False


# =============================================================================
# Delivery bookkeeping
# =============================================================================

def record_event(
    db: Session,
    event_type: WebhookEventType,
    resource_id: int | str,
    payload: dict[str, Any],
) -> WebhookEvent:
    event = WebhookEvent(
        source=WebhookSource.ACUITY.value,
        event_type=event_type.value,
        resource_id=str(resource_id),
        payload=payload,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def _finish_event(db: Session, event_id: uuid.UUID, error: str | None) -> None:
    event = db.get(WebhookEvent, event_id)
    if not event:
        return
    event.processed_at = datetime.now(timezone.utc)
    event.error = error[:2000] if error else None
    db.commit()


def handle_delivery(
    db: Session,
    event_type: WebhookEventType,
    resource_id: int,
    payload: dict[str, Any],
    handler: Callable[[], WebhookResult],
) -> WebhookResult:
    """Record the delivery, run handler, then stamp the outcome. Errors re-raise."""
    event = record_event(db, event_type, resource_id, payload)
    try:
        result = handler()
    except Exception as exc:
        db.rollback()
        logger.warning(
            "Acuity webhook %s failed: %s",
            event_type.value,
            type(exc).__name__,
            extra=build_log_context(acuity_appointment_id=resource_id),
        )
        _finish_event(db, event.id, str(exc) or type(exc).__name__)
        raise
    _finish_event(db, event.id, None)
    return result


# =============================================================================
# Helpers
# =============================================================================

def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _optional_uuid(value: str) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.warning("Ignoring malformed UUID setting %r", value)
        return None


def system_user_id() -> uuid.UUID | None:
    return _optional_uuid(settings.SYSTEM_USER_ID)


def resolve_organization_id(db: Session, organization_name: str | None) -> uuid.UUID:
    """Organization by name slug, else DEFAULT_ORGANIZATION_ID."""
    if organization_name:
        slug = slugify(organization_name)
        org = db.query(Organization).filter(Organization.slug == slug).first()
        if org:
            return org.id
        logger.warning("No organization with slug %s, using default", slug)

    default_id = _optional_uuid(settings.DEFAULT_ORGANIZATION_ID)
    if default_id is None:
        raise InvalidWebhookPayloadError("No organization found and DEFAULT_ORGANIZATION_ID is not set")
    return default_id


def find_or_create_referrer(
    db: Session, organization_id: uuid.UUID, payload: AppointmentWebhookPayload
) -> Referrer:
    """Reuse the organization's referrer with this email, or add one. Caller commits."""
    if payload.referrer_email:
        existing = (
            db.query(Referrer)
            .filter(
                Referrer.organization_id == organization_id,
                Referrer.email == payload.referrer_email,
            )
            .order_by(Referrer.created_at.asc())
            .first()
        )
        if existing:
            return existing
        referrer = Referrer(
            organization_id=organization_id,
            first_name=payload.referrer_first_name or "",
            last_name=payload.referrer_last_name or "",
            email=payload.referrer_email,
            phone=payload.referrer_phone or "",
        )
    else:
        referrer = Referrer(
            organization_id=organization_id,
            first_name=payload.referrer_first_name or ANONYMOUS_REFERRER_FIRST_NAME,
            last_name=payload.referrer_last_name or ANONYMOUS_REFERRER_LAST_NAME,
            email=f"unknown-{int(time.time() * 1000)}@placeholder.com",
            phone="",
        )
    db.add(referrer)
    db.flush()
    return referrer


def booking_type_from_label(label: str | None) -> BookingType:
    if label and "telehealth" in label.lower():
        return BookingType.TELEHEALTH
    return BookingType.IN_PERSON


def _get_booking_by_appointment(db: Session, acuity_appointment_id: int) -> Booking:
    booking = (
        db.query(Booking)
        .filter(Booking.acuity_appointment_id == acuity_appointment_id)
        .with_for_update()
        .first()
    )
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


# =============================================================================
# Handlers
# =============================================================================

def upsert_appointment(db: Session, payload: AppointmentWebhookPayload) -> WebhookResult:
    """Update the location of a known booking, or create the booking."""
    existing = (
        db.query(Booking)
        .filter(Booking.acuity_appointment_id == payload.acuity_appointment_id)
        .first()
    )
    if existing:
        existing.location = payload.location
        db.commit()
        logger.info(
            "Updated booking location from Acuity",
            extra=build_log_context(
                booking_id=existing.id, acuity_appointment_id=payload.acuity_appointment_id
            ),
        )
        audit_service.log_event(
            db,
            org_id=existing.organization_id,
            event_type=AuditEventType.SYNC_BOOKING_UPDATED,
            target_id=existing.id,
            details={"acuity_appointment_id": payload.acuity_appointment_id, "fields": ["location"]},
        )
        return WebhookResult(existing.id, created=False)

    return _create_from_payload(db, payload)


def _create_from_payload(db: Session, payload: AppointmentWebhookPayload) -> WebhookResult:
    missing = [
        name
        for name, value in (
            ("datetime", payload.datetime),
            ("duration", payload.duration),
            ("acuityCalendarId", payload.acuity_calendar_id),
            ("acuityAppointmentTypeId", payload.acuity_appointment_type_id),
        )
        if value is None or value == ""
    ]
    if missing:
        raise InvalidWebhookPayloadError(
            f"Missing required fields for new booking: {', '.join(missing)}"
        )

    specialist = (
        db.query(Specialist)
        .filter(Specialist.acuity_calendar_id == payload.acuity_calendar_id)
        .first()
    )
    if not specialist:
        raise NotFoundError("Specialist not found")

    try:
        date_time = parse_provider_datetime(payload.datetime)
    except ValueError as exc:
        raise InvalidWebhookPayloadError("Invalid datetime format") from exc

    extraction = field_mapping_service.extract(
        db, payload.acuity_appointment_type_id, payload.fields
    )
    field_mapping_service.enforce_policy(extraction, field_mapping_service.POLICY_REJECT)

    organization_id = resolve_organization_id(db, payload.organization_name)
    creator_id = system_user_id()

    referrer = find_or_create_referrer(db, organization_id, payload)
    examinee = field_mapping_service.build_examinee(
        extraction, referrer.id, default_email=EXAMINEE_EMAIL_PLACEHOLDER
    )
    db.add(examinee)
    db.flush()

    booking = Booking(
        organization_id=organization_id,
        created_by_id=creator_id,
        referrer_id=referrer.id,
        specialist_id=specialist.id,
        examinee_id=examinee.id,
        status=BookingStatus.ACTIVE.value,
        type=booking_type_from_label(payload.type).value,
        duration=payload.duration,
        location=payload.location,
        date_time=date_time,
        acuity_appointment_id=payload.acuity_appointment_id,
        acuity_appointment_type_id=payload.acuity_appointment_type_id,
        acuity_calendar_id=payload.acuity_calendar_id,
    )
    db.add(booking)
    db.flush()
    booking_progress_service.record_initial_progress(db, booking, creator_id, dict(WEBHOOK_DETAILS))
    db.commit()

    logger.info(
        "Created booking from Acuity webhook",
        extra=build_log_context(
            org_id=organization_id,
            booking_id=booking.id,
            acuity_appointment_id=payload.acuity_appointment_id,
        ),
    )
    audit_service.log_event(
        db,
        org_id=organization_id,
        event_type=AuditEventType.SYNC_BOOKING_CREATED,
        actor_user_id=creator_id,
        target_id=booking.id,
        details={
            "acuity_appointment_id": payload.acuity_appointment_id,
            "specialist_id": str(specialist.id),
        },
    )
    return WebhookResult(booking.id, created=True)


def cancel_appointment(db: Session, payload: AppointmentCancellationPayload) -> WebhookResult:
    """
    Close the booking and stamp cancelled_at.

    A cancelled progress entry is appended when the current progress allows it.
    """
    booking = _get_booking_by_appointment(db, payload.acuity_appointment_id)
    current = booking_progress_service.get_current_progress(db, booking.id)

    if booking_progress_service.is_valid_transition(current, ProgressStatus.CANCELLED):
        booking_progress_service.apply_transition(
            db,
            booking,
            current,
            ProgressStatus.CANCELLED,
            changed_by_id=system_user_id(),
            details=dict(WEBHOOK_DETAILS),
        )
    else:
        booking.status = BookingStatus.CLOSED.value
        booking.cancelled_at = datetime.now(timezone.utc)
    db.commit()

    logger.info(
        "Booking closed by Acuity cancellation",
        extra=build_log_context(
            booking_id=booking.id, acuity_appointment_id=payload.acuity_appointment_id
        ),
    )
    audit_service.log_event(
        db,
        org_id=booking.organization_id,
        event_type=AuditEventType.SYNC_BOOKING_CANCELLED,
        target_id=booking.id,
        details={"previous_progress": current.value},
    )
    return WebhookResult(booking.id)


def reschedule_appointment(db: Session, payload: AppointmentReschedulePayload) -> WebhookResult:
    """
    Move the booking to Acuity's new time.

    The rescheduled progress entry is only appended from a reschedulable
    progress; the time itself always follows Acuity.
    """
    try:
        new_date_time = parse_provider_datetime(payload.datetime)
    except ValueError as exc:
        raise InvalidWebhookPayloadError("Invalid datetime format") from exc

    booking = _get_booking_by_appointment(db, payload.acuity_appointment_id)
    current = booking_progress_service.get_current_progress(db, booking.id)
    previous = booking.date_time

    booking.date_time = new_date_time
    if current in booking_progress_service.RESCHEDULABLE_PROGRESS:
        booking_progress_service.apply_transition(
            db,
            booking,
            current,
            ProgressStatus.RESCHEDULED,
            changed_by_id=system_user_id(),
            details=dict(WEBHOOK_DETAILS),
        )
    else:
        logger.warning(
            "Acuity rescheduled a booking in progress %s; time updated without progress entry",
            current.value,
            extra=build_log_context(booking_id=booking.id),
        )
    db.commit()

    audit_service.log_event(
        db,
        org_id=booking.organization_id,
        event_type=AuditEventType.SYNC_BOOKING_RESCHEDULED,
        target_id=booking.id,
        details={
            "previous_date_time": previous.isoformat() if previous else None,
            "new_date_time": new_date_time.isoformat(),
        },
    )
    return WebhookResult(booking.id)
