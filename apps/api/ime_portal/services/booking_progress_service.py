"""Booking progress state machine.

Progress is the fine-grained lifecycle of a booking, stored as an
append-only history. The current progress is the to_status of the latest
entry, or "scheduled" when a booking has no history.

A transition appends one entry and updates the booking row (status and
timestamps) in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, NamedTuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ime_portal.core.booking_access import Actor, BookingFacts, can_mutate_progress
from ime_portal.core.structured_logging import build_log_context
from ime_portal.db.enums import (
    AuditEventType,
    BookingStatus,
    INITIAL_PROGRESS,
    ProgressStatus,
)
from ime_portal.db.models import Booking, BookingProgress
from ime_portal.services import audit_service
from ime_portal.services.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Transition table
# =============================================================================

ALLOWED_TRANSITIONS: dict[ProgressStatus, frozenset[ProgressStatus]] = {
    ProgressStatus.SCHEDULED: frozenset({
        ProgressStatus.RESCHEDULED,
        ProgressStatus.CANCELLED,
        ProgressStatus.NO_SHOW,
        ProgressStatus.GENERATING_REPORT,
    }),
    ProgressStatus.RESCHEDULED: frozenset({
        ProgressStatus.CANCELLED,
        ProgressStatus.NO_SHOW,
        ProgressStatus.GENERATING_REPORT,
    }),
    ProgressStatus.GENERATING_REPORT: frozenset({ProgressStatus.REPORT_GENERATED}),
    ProgressStatus.REPORT_GENERATED: frozenset({ProgressStatus.PAYMENT_RECEIVED}),
    ProgressStatus.CANCELLED: frozenset(),
    ProgressStatus.NO_SHOW: frozenset(),
    ProgressStatus.PAYMENT_RECEIVED: frozenset(),
}

TERMINAL_PROGRESS = frozenset(
    status for status, successors in ALLOWED_TRANSITIONS.items() if not successors
)

# Reschedules may repeat, unlike the generic rescheduled -> rescheduled edge
RESCHEDULABLE_PROGRESS = frozenset({ProgressStatus.SCHEDULED, ProgressStatus.RESCHEDULED})


def allowed_successors(current: ProgressStatus) -> frozenset[ProgressStatus]:
    return ALLOWED_TRANSITIONS.get(current, frozenset())


def is_valid_transition(current: ProgressStatus, new: ProgressStatus) -> bool:
    return new in allowed_successors(current)


def validate_transition(current: ProgressStatus, new: ProgressStatus) -> None:
    """Raise InvalidTransitionError unless new is an allowed successor of current."""
    if not is_valid_transition(current, new):
        raise InvalidTransitionError(current.value, new.value)


class ProgressSideEffects(NamedTuple):
    status: BookingStatus | None  # None leaves status unchanged
    set_cancelled_at: bool
    set_completed_at: bool


def side_effects_for(new: ProgressStatus) -> ProgressSideEffects:
    """Booking row changes that accompany entering a progress value."""
    if new in (ProgressStatus.CANCELLED, ProgressStatus.NO_SHOW):
        return ProgressSideEffects(BookingStatus.CLOSED, True, False)
    if new == ProgressStatus.PAYMENT_RECEIVED:
        return ProgressSideEffects(BookingStatus.CLOSED, False, True)
    return ProgressSideEffects(None, False, False)


# =============================================================================
# Current progress
# =============================================================================

def progress_from_entries(entries: Iterable[BookingProgress]) -> ProgressStatus:
    """Latest entry's to_status by created_at, defaulting to scheduled."""
    latest = max(entries, key=lambda e: e.created_at, default=None)
    if latest is None:
        return INITIAL_PROGRESS
    return ProgressStatus(latest.to_status)


def get_current_progress(db: Session, booking_id: UUID) -> ProgressStatus:
    latest = (
        db.query(BookingProgress.to_status)
        .filter(BookingProgress.booking_id == booking_id)
        .order_by(BookingProgress.created_at.desc())
        .first()
    )
    if latest is None:
        return INITIAL_PROGRESS
    return ProgressStatus(latest[0])


def get_progress_history(db: Session, booking_id: UUID) -> list[BookingProgress]:
    return (
        db.query(BookingProgress)
        .filter(BookingProgress.booking_id == booking_id)
        .order_by(BookingProgress.created_at.asc())
        .all()
    )


# =============================================================================
# Writes
# =============================================================================

def record_initial_progress(
    db: Session,
    booking: Booking,
    changed_by_id: UUID | None,
    details: dict | None = None,
) -> BookingProgress:
    """Add the implicit first entry (None -> scheduled). Caller commits."""
    entry = BookingProgress(
        booking_id=booking.id,
        from_status=None,
        to_status=INITIAL_PROGRESS.value,
        changed_by_id=changed_by_id,
        details=details,
    )
    db.add(entry)
    return entry


def apply_transition(
    db: Session,
    booking: Booking,
    current: ProgressStatus,
    new: ProgressStatus,
    *,
    changed_by_id: UUID | None,
    notes: str | None = None,
    details: dict | None = None,
) -> BookingProgress:
    """
    Append the history entry and apply booking side effects. Caller commits.

    Does not validate; callers decide which edges they allow.
    """
    entry = BookingProgress(
        booking_id=booking.id,
        from_status=current.value,
        to_status=new.value,
        changed_by_id=changed_by_id,
        notes=notes,
        details=details,
    )
    db.add(entry)

    effects = side_effects_for(new)
    now = datetime.now(timezone.utc)
    if effects.status is not None:
        booking.status = effects.status.value
    if effects.set_cancelled_at:
        booking.cancelled_at = now
    if effects.set_completed_at:
        booking.completed_at = now
    return entry


def actor_details(actor: Actor) -> dict | None:
    if actor.impersonated_by:
        return {"impersonated_by": str(actor.impersonated_by)}
    return None


def load_booking_for_update(db: Session, booking_id: UUID) -> Booking:
    """Load and row-lock a booking so concurrent progress changes serialize."""
    booking = (
        db.query(Booking)
        .filter(Booking.id == booking_id)
        .with_for_update()
        .first()
    )
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def transition(
    db: Session,
    booking_id: UUID,
    new_status: ProgressStatus,
    actor: Actor,
    notes: str | None = None,
    request=None,
) -> Booking:
    """
    Move a booking to new_status.

    Raises:
        NotFoundError: booking does not exist
        AccessDeniedError: actor may not change this booking's progress
        InvalidTransitionError: new_status is not allowed from the current progress
    """
    booking = load_booking_for_update(db, booking_id)
    if not can_mutate_progress(actor, BookingFacts.from_booking(booking)):
        db.rollback()
        raise AccessDeniedError("You do not have access to this booking")

    current = get_current_progress(db, booking.id)
    try:
        validate_transition(current, new_status)
    except InvalidTransitionError:
        db.rollback()
        raise

    try:
        apply_transition(
            db,
            booking,
            current,
            new_status,
            changed_by_id=actor.user_id,
            notes=notes,
            details=actor_details(actor),
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Progress update failed",
            extra=build_log_context(user_id=actor.user_id, booking_id=booking_id),
        )
        raise

    logger.info(
        "Booking progress %s -> %s",
        current.value,
        new_status.value,
        extra=build_log_context(
            user_id=actor.user_id, org_id=booking.organization_id, booking_id=booking.id
        ),
    )

    audit_service.log_event(
        db,
        org_id=booking.organization_id,
        event_type=AuditEventType.BOOKING_PROGRESS_UPDATED,
        actor_user_id=actor.user_id,
        impersonated_by=actor.impersonated_by,
        target_id=booking.id,
        details={
            "previous_progress": current.value,
            "new_progress": new_status.value,
            "notes": notes,
        },
        request=request,
    )

    db.refresh(booking)
    return booking
