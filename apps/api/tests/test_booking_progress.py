"""
Tests for the booking progress state machine.

Coverage:
- Transition table and terminal states
- Booking side effects per target progress
- Current progress derivation from history
- Transition scenarios against the database (access, history, audit)
"""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from ime_portal.core.booking_access import load_actor
from ime_portal.db.enums import AuditEventType, BookingStatus, OrgRole, ProgressStatus
from ime_portal.db.models import AuditLog, BookingProgress
from ime_portal.services import booking_progress_service as bps
from ime_portal.services.errors import AccessDeniedError, InvalidTransitionError, NotFoundError


# =============================================================================
# Transition table
# =============================================================================

EXPECTED_SUCCESSORS = {
    ProgressStatus.SCHEDULED: {
        ProgressStatus.RESCHEDULED,
        ProgressStatus.CANCELLED,
        ProgressStatus.NO_SHOW,
        ProgressStatus.GENERATING_REPORT,
    },
    ProgressStatus.RESCHEDULED: {
        ProgressStatus.CANCELLED,
        ProgressStatus.NO_SHOW,
        ProgressStatus.GENERATING_REPORT,
    },
    ProgressStatus.GENERATING_REPORT: {ProgressStatus.REPORT_GENERATED},
    ProgressStatus.REPORT_GENERATED: {ProgressStatus.PAYMENT_RECEIVED},
    ProgressStatus.CANCELLED: set(),
    ProgressStatus.NO_SHOW: set(),
    ProgressStatus.PAYMENT_RECEIVED: set(),
}


@pytest.mark.parametrize("current", list(ProgressStatus))
def test_transition_valid_iff_in_successor_set(current):
    for new in ProgressStatus:
        assert bps.is_valid_transition(current, new) == (new in EXPECTED_SUCCESSORS[current])


def test_terminal_states():
    assert bps.TERMINAL_PROGRESS == {
        ProgressStatus.CANCELLED,
        ProgressStatus.NO_SHOW,
        ProgressStatus.PAYMENT_RECEIVED,
    }


@pytest.mark.parametrize("terminal", sorted(bps.TERMINAL_PROGRESS))
def test_any_transition_from_terminal_fails(terminal):
    for new in ProgressStatus:
        with pytest.raises(InvalidTransitionError) as exc_info:
            bps.validate_transition(terminal, new)
        assert exc_info.value.current == terminal.value
        assert exc_info.value.requested == new.value


def test_side_effects():
    assert bps.side_effects_for(ProgressStatus.CANCELLED) == (BookingStatus.CLOSED, True, False)
    assert bps.side_effects_for(ProgressStatus.NO_SHOW) == (BookingStatus.CLOSED, True, False)
    assert bps.side_effects_for(ProgressStatus.PAYMENT_RECEIVED) == (BookingStatus.CLOSED, False, True)
    for status in (
        ProgressStatus.RESCHEDULED,
        ProgressStatus.GENERATING_REPORT,
        ProgressStatus.REPORT_GENERATED,
    ):
        assert bps.side_effects_for(status) == (None, False, False)


def test_progress_from_entries_defaults_to_scheduled():
    assert bps.progress_from_entries([]) == ProgressStatus.SCHEDULED


def test_progress_from_entries_uses_latest_created_at():
    now = datetime.now(timezone.utc)
    entries = [
        SimpleNamespace(to_status="generating-report", created_at=now),
        SimpleNamespace(to_status="scheduled", created_at=now - timedelta(minutes=5)),
        SimpleNamespace(to_status="report-generated", created_at=now + timedelta(seconds=1)),
    ]
    assert bps.progress_from_entries(entries) == ProgressStatus.REPORT_GENERATED


# =============================================================================
# Database scenarios
# =============================================================================

def test_report_flow_closes_booking(db, booking, owner_actor):
    for status in (
        ProgressStatus.GENERATING_REPORT,
        ProgressStatus.REPORT_GENERATED,
        ProgressStatus.PAYMENT_RECEIVED,
    ):
        bps.transition(db, booking.id, status, owner_actor)

    db.refresh(booking)
    assert booking.status == BookingStatus.CLOSED.value
    assert booking.completed_at is not None
    assert booking.cancelled_at is None
    assert bps.get_current_progress(db, booking.id) == ProgressStatus.PAYMENT_RECEIVED

    for status in ProgressStatus:
        with pytest.raises(InvalidTransitionError):
            bps.transition(db, booking.id, status, owner_actor)


def test_cancel_closes_booking_with_two_history_entries(db, booking, owner_actor):
    bps.transition(db, booking.id, ProgressStatus.CANCELLED, owner_actor, notes="Examinee withdrew")

    db.refresh(booking)
    assert booking.status == BookingStatus.CLOSED.value
    assert booking.cancelled_at is not None

    history = bps.get_progress_history(db, booking.id)
    assert [(e.from_status, e.to_status) for e in history] == [
        (None, "scheduled"),
        ("scheduled", "cancelled"),
    ]
    assert history[1].notes == "Examinee withdrew"
    assert history[1].changed_by_id == owner_actor.user_id


def test_invalid_transition_leaves_history_untouched(db, booking, owner_actor):
    with pytest.raises(InvalidTransitionError):
        bps.transition(db, booking.id, ProgressStatus.PAYMENT_RECEIVED, owner_actor)

    assert len(bps.get_progress_history(db, booking.id)) == 1
    db.refresh(booking)
    assert booking.status == BookingStatus.ACTIVE.value


def test_transition_missing_booking(db, owner_actor):
    with pytest.raises(NotFoundError):
        bps.transition(db, uuid.uuid4(), ProgressStatus.CANCELLED, owner_actor)


def test_transition_denied_for_unrelated_user(db, booking, test_org, user_factory):
    outsider = user_factory(test_org, OrgRole.MEMBER)
    actor = load_actor(db, outsider.id, active_org_id=test_org.id)

    with pytest.raises(AccessDeniedError):
        bps.transition(db, booking.id, ProgressStatus.CANCELLED, actor)
    assert len(bps.get_progress_history(db, booking.id)) == 1


def test_org_specialist_barred_from_other_specialists_booking(db, test_org, user_factory, booking_factory):
    # Referrer account grants access, but the specialist role bars the change
    other = user_factory(test_org, OrgRole.SPECIALIST)
    referred = booking_factory(referrer_user=other)
    actor = load_actor(db, other.id, active_org_id=test_org.id)

    with pytest.raises(AccessDeniedError):
        bps.transition(db, referred.id, ProgressStatus.GENERATING_REPORT, actor)


def test_impersonation_marker_and_audit(db, booking, test_user, test_org, user_factory):
    admin = user_factory(is_platform_admin=True)
    actor = load_actor(db, test_user.id, active_org_id=test_org.id, impersonated_by=admin.id)

    bps.transition(db, booking.id, ProgressStatus.GENERATING_REPORT, actor, notes="Report started")

    entry = (
        db.query(BookingProgress)
        .filter(BookingProgress.booking_id == booking.id, BookingProgress.to_status == "generating-report")
        .one()
    )
    assert entry.details == {"impersonated_by": str(admin.id)}

    audit = (
        db.query(AuditLog)
        .filter(
            AuditLog.target_id == str(booking.id),
            AuditLog.event_type == AuditEventType.BOOKING_PROGRESS_UPDATED.value,
        )
        .one()
    )
    assert audit.impersonated_by_user_id == admin.id
    assert audit.details == {
        "previous_progress": "scheduled",
        "new_progress": "generating-report",
        "notes": "Report started",
    }
