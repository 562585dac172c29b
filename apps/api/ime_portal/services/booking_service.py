"""Booking lifecycle orchestration.

Create, reschedule and cancel each pair a call to the external scheduler with
a local transaction. The scheduler call cannot be rolled back, so every check
that can fail (existence, access, progress, slot, examinee data) runs before
it. A local failure after a successful scheduler call raises
InconsistentStateError and is logged at CRITICAL with the Acuity id; it is
never compensated automatically (see reconciliation_service).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ime_portal.core.booking_access import (
    Actor,
    BookingFacts,
    can_access,
    can_mutate_progress,
)
from ime_portal.core.config import settings
from ime_portal.core.structured_logging import build_log_context
from ime_portal.db.enums import (
    AuditEventType,
    BookingStatus,
    BookingType,
    ProgressStatus,
)
from ime_portal.db.models import (
    AcuityAppointmentType,
    Booking,
    BookingProgress,
    Referrer,
    Specialist,
    SpecialistAppointmentType,
    Team,
    User,
)
from ime_portal.services import audit_service, booking_progress_service, field_mapping_service
from ime_portal.services.acuity_client import (
    AcuityAPIError,
    AcuityAppointment,
    AcuityClient,
    AcuityContact,
    AcuityField,
)
from ime_portal.services.errors import (
    AccessDeniedError,
    ExternalServiceError,
    InconsistentStateError,
    InvalidDateTimeError,
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
)
from ime_portal.utils.location import booking_location

logger = logging.getLogger(__name__)


@dataclass
class BookingDetail:
    booking: Booking
    current_progress: ProgressStatus
    progress_history: list[BookingProgress]


def parse_provider_datetime(value: str) -> datetime:
    """
    Parse an ISO 8601 date-time as Acuity sends it.

    Acuity uses a basic offset ("2026-03-02T09:00:00+1000"); naive values are
    read as UTC.
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_requested_datetime(value: str) -> datetime:
    try:
        return parse_provider_datetime(value)
    except ValueError as exc:
        raise InvalidDateTimeError(f"Invalid date-time: {value!r}") from exc


def provider_datetime_or(value: str | None, fallback: datetime) -> datetime:
    """Acuity's returned time when parseable, else the requested one."""
    if not value:
        return fallback
    try:
        return parse_provider_datetime(value)
    except ValueError:
        logger.warning("Unparseable Acuity datetime %r, keeping requested time", value)
        return fallback


def external_error(exc: AcuityAPIError) -> ExternalServiceError:
    return ExternalServiceError(str(exc), code=exc.code, status_code=exc.status_code)


# =============================================================================
# Lookups
# =============================================================================

def get_active_specialist(db: Session, specialist_id: UUID) -> Specialist:
    specialist = db.query(Specialist).filter(Specialist.id == specialist_id).first()
    if not specialist or not specialist.is_active:
        raise NotFoundError("Specialist not found")
    return specialist


def get_specialist_appointment_type(
    db: Session, specialist_id: UUID, appointment_type_id: int
) -> SpecialistAppointmentType:
    association = (
        db.query(SpecialistAppointmentType)
        .filter(
            SpecialistAppointmentType.specialist_id == specialist_id,
            SpecialistAppointmentType.appointment_type_id == appointment_type_id,
            SpecialistAppointmentType.enabled.is_(True),
        )
        .first()
    )
    if not association:
        raise NotFoundError("Specialist does not offer this appointment type")
    return association


def get_default_team_id(db: Session, org_id: UUID) -> UUID | None:
    """The organization's earliest team, if it has any."""
    row = (
        db.query(Team.id)
        .filter(Team.organization_id == org_id)
        .order_by(Team.created_at.asc())
        .first()
    )
    return row[0] if row else None


def resolve_team_id(db: Session, org_id: UUID, team_id: UUID | None) -> UUID | None:
    """The requested team when it belongs to the organization, else the default team."""
    if team_id is not None:
        team = db.get(Team, team_id)
        if team is not None and team.organization_id == org_id:
            return team.id
        logger.warning(
            "Ignoring team %s outside the organization",
            team_id,
            extra=build_log_context(org_id=org_id),
        )
    return get_default_team_id(db, org_id)


def ensure_slot_free(
    db: Session,
    specialist_id: UUID,
    date_time: datetime,
    exclude_booking_id: UUID | None = None,
) -> None:
    """Raise SlotConflictError if the specialist has an active booking at date_time."""
    query = db.query(Booking.id).filter(
        Booking.specialist_id == specialist_id,
        Booking.date_time == date_time,
        Booking.status == BookingStatus.ACTIVE.value,
    )
    if exclude_booking_id:
        query = query.filter(Booking.id != exclude_booking_id)
    if query.first():
        raise SlotConflictError("The specialist already has a booking at this time")


def _load_booking(db: Session, booking_id: UUID) -> Booking:
    booking = (
        db.query(Booking)
        .options(
            joinedload(Booking.specialist),
            joinedload(Booking.referrer),
            joinedload(Booking.examinee),
        )
        .filter(Booking.id == booking_id)
        .first()
    )
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


# =============================================================================
# Create
# =============================================================================

async def create_booking(
    db: Session,
    client: AcuityClient,
    *,
    actor: Actor,
    organization_id: UUID,
    specialist_id: UUID,
    appointment_type_id: int,
    date_time: str,
    contact: AcuityContact,
    fields: list[AcuityField],
    timezone_name: str | None = None,
    team_id: UUID | None = None,
    job_title: str | None = None,
    missing_fields_policy: str | None = None,
    request: Request | None = None,
) -> Booking:
    """
    Book with Acuity, then write referrer, examinee, booking and the initial
    progress entry in one transaction.

    Raises:
        NotFoundError: specialist missing/inactive or appointment type not offered
        SlotConflictError: specialist already booked at that time
        IncompleteExamineeDataError: required examinee data missing (reject policy)
        ExternalServiceError: Acuity call failed
        InconsistentStateError: Acuity booked but the local write failed
    """
    specialist = get_active_specialist(db, specialist_id)
    association = get_specialist_appointment_type(db, specialist.id, appointment_type_id)

    extraction = field_mapping_service.extract(db, appointment_type_id, fields)
    field_mapping_service.enforce_policy(
        extraction, missing_fields_policy or settings.EXAMINEE_MISSING_FIELDS_POLICY
    )
    if extraction.missing_required:
        logger.warning(
            "Booking created with missing examinee fields: %s",
            ", ".join(f.value for f in extraction.missing_required),
            extra=build_log_context(user_id=actor.user_id, org_id=organization_id),
        )

    requested_at = parse_requested_datetime(date_time)
    ensure_slot_free(db, specialist.id, requested_at)
    team_id = resolve_team_id(db, organization_id, team_id)

    try:
        appointment = await client.create_appointment(
            datetime=date_time,
            appointment_type_id=appointment_type_id,
            contact=contact,
            timezone=timezone_name,
            calendar_id=specialist.acuity_calendar_id,
            fields=fields,
        )
    except AcuityAPIError as exc:
        logger.error(
            "Acuity create failed (%s)",
            exc.code,
            extra=build_log_context(user_id=actor.user_id, org_id=organization_id),
        )
        raise external_error(exc) from exc

    booking_type = BookingType(association.appointment_mode)
    try:
        booking = _write_booking(
            db,
            appointment,
            actor=actor,
            organization_id=organization_id,
            team_id=team_id,
            specialist=specialist,
            appointment_type_id=appointment_type_id,
            booking_type=booking_type,
            requested_at=requested_at,
            contact=contact,
            job_title=job_title,
            extraction=extraction,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.critical(
            "Local booking write failed after Acuity appointment %s was created; "
            "manual reconciliation required",
            appointment.id,
            extra=build_log_context(
                user_id=actor.user_id,
                org_id=organization_id,
                acuity_appointment_id=appointment.id,
            ),
        )
        raise InconsistentStateError(
            "Booking could not be saved after the appointment was created",
            acuity_appointment_id=appointment.id,
        ) from exc

    logger.info(
        "Booking created",
        extra=build_log_context(
            user_id=actor.user_id,
            org_id=organization_id,
            booking_id=booking.id,
            acuity_appointment_id=appointment.id,
        ),
    )
    audit_service.log_event(
        db,
        org_id=organization_id,
        event_type=AuditEventType.BOOKING_CREATED,
        actor_user_id=actor.user_id,
        impersonated_by=actor.impersonated_by,
        target_id=booking.id,
        details={
            "acuity_appointment_id": appointment.id,
            "specialist_id": str(specialist.id),
            "type": booking_type.value,
            "missing_required": [f.value for f in extraction.missing_required],
        },
        request=request,
    )
    db.refresh(booking)
    return booking


def _write_booking(
    db: Session,
    appointment: AcuityAppointment,
    *,
    actor: Actor,
    organization_id: UUID,
    team_id: UUID | None,
    specialist: Specialist,
    appointment_type_id: int,
    booking_type: BookingType,
    requested_at: datetime,
    contact: AcuityContact,
    job_title: str | None,
    extraction: field_mapping_service.ExtractionResult,
) -> Booking:
    """Stage every row of a new booking. Caller commits or rolls back."""
    creator = db.query(User).filter(User.id == actor.user_id).first()
    linked_user_id = None
    if creator and creator.email.lower() == contact.email.strip().lower():
        linked_user_id = creator.id

    referrer = Referrer(
        organization_id=organization_id,
        user_id=linked_user_id,
        first_name=contact.first_name,
        last_name=contact.last_name,
        email=contact.email.strip(),
        phone=contact.phone or "",
        job_title=job_title,
    )
    db.add(referrer)
    db.flush()

    examinee = field_mapping_service.build_examinee(extraction, referrer.id)
    db.add(examinee)
    db.flush()

    duration = appointment.duration
    if duration is None:
        appointment_type = db.get(AcuityAppointmentType, appointment_type_id)
        duration = appointment_type.duration if appointment_type else 0

    booking = Booking(
        organization_id=organization_id,
        team_id=team_id,
        created_by_id=actor.user_id,
        referrer_id=referrer.id,
        specialist_id=specialist.id,
        examinee_id=examinee.id,
        status=BookingStatus.ACTIVE.value,
        type=booking_type.value,
        duration=duration,
        location=booking_location(booking_type, specialist.location),
        date_time=provider_datetime_or(appointment.datetime, requested_at),
        acuity_appointment_id=appointment.id,
        acuity_appointment_type_id=appointment.appointment_type_id or appointment_type_id,
        acuity_calendar_id=appointment.calendar_id or specialist.acuity_calendar_id,
    )
    db.add(booking)
    db.flush()

    booking_progress_service.record_initial_progress(
        db, booking, actor.user_id, booking_progress_service.actor_details(actor)
    )
    return booking


# =============================================================================
# Read
# =============================================================================

def get_booking_by_id(db: Session, booking_id: UUID, actor: Actor) -> BookingDetail:
    """
    Booking with its full progress history.

    Raises:
        NotFoundError: booking does not exist
        AccessDeniedError: actor may not view it
    """
    booking = _load_booking(db, booking_id)
    if not can_access(actor, BookingFacts.from_booking(booking)):
        raise AccessDeniedError("You do not have access to this booking")

    history = booking_progress_service.get_progress_history(db, booking.id)
    return BookingDetail(
        booking=booking,
        current_progress=booking_progress_service.progress_from_entries(history),
        progress_history=history,
    )


def update_progress(
    db: Session,
    booking_id: UUID,
    new_status: ProgressStatus,
    actor: Actor,
    notes: str | None = None,
    request: Request | None = None,
) -> BookingDetail:
    booking_progress_service.transition(db, booking_id, new_status, actor, notes, request)
    return get_booking_by_id(db, booking_id, actor)


# =============================================================================
# Reschedule / cancel
# =============================================================================

def _check_mutable(db: Session, booking_id: UUID, actor: Actor) -> tuple[Booking, ProgressStatus]:
    booking = _load_booking(db, booking_id)
    if not can_mutate_progress(actor, BookingFacts.from_booking(booking)):
        raise AccessDeniedError("You do not have access to this booking")
    return booking, booking_progress_service.get_current_progress(db, booking.id)


def _apply_after_acuity(
    db: Session,
    booking_id: UUID,
    target: ProgressStatus,
    *,
    actor: Actor,
    acuity_id: int,
    action: str,
    new_date_time: datetime | None = None,
) -> tuple[Booking, ProgressStatus]:
    """
    Record a change Acuity has already accepted.

    Progress is read again under the row lock, since it may have moved during
    the Acuity call. Any failure here leaves Acuity ahead of the database.
    """
    try:
        locked = booking_progress_service.load_booking_for_update(db, booking_id)
        current = booking_progress_service.get_current_progress(db, booking_id)
        if target == ProgressStatus.RESCHEDULED:
            allowed = current in booking_progress_service.RESCHEDULABLE_PROGRESS
        else:
            allowed = booking_progress_service.is_valid_transition(current, target)
        if not allowed:
            db.rollback()
            logger.critical(
                "Progress moved to %s during Acuity %s of appointment %s; "
                "manual reconciliation required",
                current.value,
                action,
                acuity_id,
                extra=build_log_context(
                    user_id=actor.user_id, booking_id=booking_id, acuity_appointment_id=acuity_id
                ),
            )
            raise InconsistentStateError(
                f"Booking progress changed to {current.value} while the {action} was in flight",
                acuity_appointment_id=acuity_id,
            )
        if new_date_time is not None:
            locked.date_time = new_date_time
        booking_progress_service.apply_transition(
            db,
            locked,
            current,
            target,
            changed_by_id=actor.user_id,
            details=booking_progress_service.actor_details(actor),
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.critical(
            "Local %s failed after Acuity appointment %s was changed; "
            "manual reconciliation required",
            action,
            acuity_id,
            extra=build_log_context(
                user_id=actor.user_id, booking_id=booking_id, acuity_appointment_id=acuity_id
            ),
        )
        raise InconsistentStateError(
            f"Booking could not be updated after the {action} at Acuity",
            acuity_appointment_id=acuity_id,
        ) from exc
    return locked, current


async def reschedule_booking(
    db: Session,
    client: AcuityClient,
    booking_id: UUID,
    *,
    date_time: str,
    actor: Actor,
    timezone_name: str | None = None,
    request: Request | None = None,
) -> BookingDetail:
    """
    Move a booking to a new time at Acuity, then locally.

    Raises:
        NotFoundError, AccessDeniedError, InvalidTransitionError,
        SlotConflictError, ExternalServiceError, InconsistentStateError
    """
    booking, current = _check_mutable(db, booking_id, actor)
    if current not in booking_progress_service.RESCHEDULABLE_PROGRESS:
        raise InvalidTransitionError(current.value, ProgressStatus.RESCHEDULED.value)

    requested_at = parse_requested_datetime(date_time)
    ensure_slot_free(db, booking.specialist_id, requested_at, exclude_booking_id=booking.id)
    acuity_id = booking.acuity_appointment_id
    previous_date_time = booking.date_time
    # Release the read snapshot before the network call
    db.rollback()

    try:
        appointment = await client.reschedule_appointment(
            acuity_id, datetime=date_time, timezone=timezone_name
        )
    except AcuityAPIError as exc:
        logger.error(
            "Acuity reschedule failed (%s)",
            exc.code,
            extra=build_log_context(
                user_id=actor.user_id, booking_id=booking_id, acuity_appointment_id=acuity_id
            ),
        )
        raise external_error(exc) from exc

    new_date_time = provider_datetime_or(appointment.datetime, requested_at)
    locked, current = _apply_after_acuity(
        db,
        booking_id,
        ProgressStatus.RESCHEDULED,
        actor=actor,
        acuity_id=acuity_id,
        action="reschedule",
        new_date_time=new_date_time,
    )

    logger.info(
        "Booking rescheduled",
        extra=build_log_context(user_id=actor.user_id, booking_id=booking_id),
    )
    audit_service.log_event(
        db,
        org_id=locked.organization_id,
        event_type=AuditEventType.BOOKING_RESCHEDULED,
        actor_user_id=actor.user_id,
        impersonated_by=actor.impersonated_by,
        target_id=booking_id,
        details={
            "previous_date_time": previous_date_time.isoformat(),
            "new_date_time": new_date_time.isoformat(),
            "previous_progress": current.value,
        },
        request=request,
    )
    return get_booking_by_id(db, booking_id, actor)


async def cancel_booking(
    db: Session,
    client: AcuityClient,
    booking_id: UUID,
    *,
    actor: Actor,
    no_show: bool = False,
    request: Request | None = None,
) -> BookingDetail:
    """
    Cancel (or mark no-show) at Acuity, then close the booking locally.

    Raises:
        NotFoundError, AccessDeniedError, InvalidTransitionError,
        ExternalServiceError, InconsistentStateError
    """
    target = ProgressStatus.NO_SHOW if no_show else ProgressStatus.CANCELLED
    booking, current = _check_mutable(db, booking_id, actor)
    booking_progress_service.validate_transition(current, target)
    acuity_id = booking.acuity_appointment_id
    db.rollback()

    try:
        await client.cancel_appointment(acuity_id, no_show=no_show)
    except AcuityAPIError as exc:
        logger.error(
            "Acuity cancel failed (%s)",
            exc.code,
            extra=build_log_context(
                user_id=actor.user_id, booking_id=booking_id, acuity_appointment_id=acuity_id
            ),
        )
        raise external_error(exc) from exc

    locked, current = _apply_after_acuity(
        db, booking_id, target, actor=actor, acuity_id=acuity_id, action="cancel"
    )

    audit_service.log_event(
        db,
        org_id=locked.organization_id,
        event_type=AuditEventType.BOOKING_CANCELLED,
        actor_user_id=actor.user_id,
        impersonated_by=actor.impersonated_by,
        target_id=booking_id,
        details={"previous_progress": current.value, "new_progress": target.value},
        request=request,
    )
    return get_booking_by_id(db, booking_id, actor)
