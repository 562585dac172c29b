"""
Tests for booking lifecycle orchestration.

Coverage:
- Create: round trip, examinee extraction, location, referrer linking
- Fail-fast checks before the Acuity call (not found, slot, reject policy)
- Acuity failure vs. local failure after Acuity succeeded
- Reschedule and cancel ordering and state checks
- Progress moving while the Acuity call is in flight
"""

import logging
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from ime_portal.core.booking_access import load_actor
from ime_portal.db.enums import (
    AuditEventType,
    BookingStatus,
    BookingType,
    ExamineeField,
    OrgRole,
    ProgressStatus,
)
from ime_portal.db.models import (
    AuditLog,
    Booking,
    Organization,
    Referrer,
    SpecialistAppointmentType,
    Team,
)
from ime_portal.services import booking_progress_service, booking_service
from ime_portal.services.acuity_client import AcuityAPIError, AcuityContact, AcuityField
from ime_portal.services.errors import (
    AccessDeniedError,
    ExternalServiceError,
    IncompleteExamineeDataError,
    InconsistentStateError,
    InvalidDateTimeError,
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
)
from ime_portal.utils.location import TELEHEALTH_LOCATION


REQUESTED_AT = "2026-06-01T09:00:00+1000"
CONTACT = AcuityContact(first_name="Riley", last_name="Referrer", email="riley@firm.com", phone="0411 111 111")


async def _create(db, acuity, actor, org, specialist, appointment_type, fields, **kwargs):
    return await booking_service.create_booking(
        db,
        acuity,
        actor=actor,
        organization_id=org.id,
        specialist_id=specialist.id,
        appointment_type_id=appointment_type.id,
        date_time=kwargs.pop("date_time", REQUESTED_AT),
        contact=kwargs.pop("contact", CONTACT),
        fields=[AcuityField.model_validate(f) for f in fields],
        **kwargs,
    )


def _booking_count(db, specialist) -> int:
    return db.query(Booking).filter(Booking.specialist_id == specialist.id).count()


# =============================================================================
# Date-times
# =============================================================================

def test_parse_provider_datetime_offsets():
    assert booking_service.parse_provider_datetime("2026-03-02T09:00:00+1000") == datetime(
        2026, 3, 1, 23, 0, tzinfo=timezone.utc
    )
    assert booking_service.parse_provider_datetime("2026-03-02T09:00:00Z").tzinfo is not None
    assert booking_service.parse_provider_datetime("2026-03-02T09:00:00").tzinfo == timezone.utc


def test_parse_requested_datetime_rejects_garbage():
    with pytest.raises(InvalidDateTimeError):
        booking_service.parse_requested_datetime("next tuesday")


def test_provider_datetime_falls_back():
    fallback = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert booking_service.provider_datetime_or(None, fallback) == fallback
    assert booking_service.provider_datetime_or("garbled", fallback) == fallback


# =============================================================================
# Create
# =============================================================================

async def test_create_round_trip(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    booking = await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)

    detail = booking_service.get_booking_by_id(db, booking.id, owner_actor)
    assert detail.booking.status == BookingStatus.ACTIVE.value
    assert detail.booking.scheduled_at is not None
    assert detail.booking.type == BookingType.IN_PERSON.value
    assert detail.booking.location == "12 Main St, Fortitude Valley, Brisbane, QLD, 4006"
    assert detail.booking.acuity_appointment_id == acuity.next_id
    assert detail.booking.duration == 60
    assert detail.booking.team_id is not None
    assert detail.booking.date_time == datetime(2026, 5, 31, 23, 0, tzinfo=timezone.utc)

    examinee = detail.booking.examinee
    assert examinee.first_name == "Sam"
    assert examinee.last_name == "Smith"
    assert examinee.case_type == "Workers compensation"
    assert examinee.authorized_contact is True

    assert detail.current_progress == ProgressStatus.SCHEDULED
    assert [(e.from_status, e.to_status) for e in detail.progress_history] == [(None, "scheduled")]

    name, call = acuity.calls[0]
    assert name == "create"
    assert call["datetime"] == REQUESTED_AT
    assert call["calendar_id"] == specialist.acuity_calendar_id
    assert call["appointment_type_id"] == appointment_type.id

    audit = db.query(AuditLog).filter(AuditLog.target_id == str(booking.id)).one()
    assert audit.event_type == AuditEventType.BOOKING_CREATED.value
    assert audit.details["missing_required"] == []


async def test_create_twice_is_idempotent_to_read(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    booking = await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)
    first = booking_service.get_booking_by_id(db, booking.id, owner_actor)
    second = booking_service.get_booking_by_id(db, booking.id, owner_actor)
    assert [e.id for e in first.progress_history] == [e.id for e in second.progress_history]
    assert first.booking.status == second.booking.status


async def test_referrer_linked_when_contact_is_creator(
    db, acuity, owner_actor, test_user, test_org, specialist, appointment_type, intake_form, complete_fields
):
    contact = AcuityContact(first_name="Owner", last_name="User", email=test_user.email.upper())
    booking = await _create(
        db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields, contact=contact
    )
    referrer = db.get(Referrer, booking.referrer_id)
    assert referrer.user_id == test_user.id


async def test_referrer_created_per_booking(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    first = await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)
    acuity.next_id += 1
    second = await _create(
        db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields,
        date_time="2026-06-01T10:00:00+1000",
    )
    assert first.referrer_id != second.referrer_id
    assert db.get(Referrer, first.referrer_id).user_id is None


async def test_telehealth_location(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    association = db.query(SpecialistAppointmentType).filter_by(specialist_id=specialist.id).one()
    association.appointment_mode = BookingType.TELEHEALTH.value
    db.commit()

    booking = await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)
    assert booking.type == BookingType.TELEHEALTH.value
    assert booking.location == TELEHEALTH_LOCATION


async def test_placeholder_policy_creates_with_empty_values(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, intake_field_ids
):
    fields = [{"id": intake_field_ids[ExamineeField.FIRST_NAME], "value": "Sam"}]
    booking = await _create(
        db, acuity, owner_actor, test_org, specialist, appointment_type, fields,
        missing_fields_policy="placeholder",
    )
    assert booking.examinee.first_name == "Sam"
    assert booking.examinee.last_name == ""
    assert booking.examinee.condition == ""


async def test_reject_policy_fails_before_acuity(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, intake_field_ids
):
    fields = [{"id": intake_field_ids[ExamineeField.FIRST_NAME], "value": "Sam"}]
    with pytest.raises(IncompleteExamineeDataError) as exc_info:
        await _create(
            db, acuity, owner_actor, test_org, specialist, appointment_type, fields,
            missing_fields_policy="reject",
        )
    assert "lastName" in exc_info.value.missing
    assert acuity.calls == []
    assert _booking_count(db, specialist) == 0


async def test_inactive_specialist_not_found(
    db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields
):
    specialist.is_active = False
    db.commit()
    with pytest.raises(NotFoundError):
        await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)
    assert acuity.calls == []


async def test_appointment_type_not_offered(
    db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields
):
    association = db.query(SpecialistAppointmentType).filter_by(specialist_id=specialist.id).one()
    association.enabled = False
    db.commit()
    with pytest.raises(NotFoundError):
        await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)
    assert acuity.calls == []


async def test_invalid_datetime_fails_before_acuity(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    with pytest.raises(InvalidDateTimeError):
        await _create(
            db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields,
            date_time="2026-13-45 nonsense",
        )
    assert acuity.calls == []


async def test_slot_conflict_fails_before_acuity(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields,
    booking_factory,
):
    booking_factory(date_time=booking_service.parse_provider_datetime(REQUESTED_AT))
    with pytest.raises(SlotConflictError):
        await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)
    assert acuity.calls == []


async def test_acuity_failure_writes_nothing(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    acuity.error = AcuityAPIError("The time is not available.", 400, "BAD_REQUEST")

    with pytest.raises(ExternalServiceError) as exc_info:
        await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)

    assert exc_info.value.code == "BAD_REQUEST"
    assert str(exc_info.value) == "The time is not available."
    assert _booking_count(db, specialist) == 0


async def test_local_failure_after_acuity_is_inconsistent_state(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields,
    monkeypatch, caplog,
):
    def failing_write(*args, **kwargs):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(booking_service, "_write_booking", failing_write)

    with caplog.at_level(logging.CRITICAL, logger="ime_portal.services.booking_service"):
        with pytest.raises(InconsistentStateError) as exc_info:
            await _create(db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields)

    assert exc_info.value.acuity_appointment_id == acuity.next_id
    assert isinstance(exc_info.value.__cause__, SQLAlchemyError)
    assert acuity.call_names() == ["create"]  # never compensated
    assert _booking_count(db, specialist) == 0
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert critical and critical[0].acuity_appointment_id == acuity.next_id


async def test_create_keeps_team_of_same_org(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    team = Team(organization_id=test_org.id, name="Claims")
    db.add(team)
    db.commit()

    booking = await _create(
        db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields, team_id=team.id
    )
    assert booking.team_id == team.id


async def test_create_ignores_team_of_other_org(
    db, acuity, owner_actor, test_org, specialist, appointment_type, intake_form, complete_fields
):
    other_org = Organization(name="Other Firm", slug=f"other-{uuid.uuid4().hex[:8]}")
    db.add(other_org)
    db.flush()
    foreign_team = Team(organization_id=other_org.id, name="Default")
    db.add(foreign_team)
    db.commit()

    booking = await _create(
        db, acuity, owner_actor, test_org, specialist, appointment_type, complete_fields,
        team_id=foreign_team.id,
    )

    assert booking.team_id == booking_service.get_default_team_id(db, test_org.id)
    assert booking.team_id != foreign_team.id


async def test_member_creator_can_read_booking_for_other_referrer(
    db, acuity, test_org, specialist, appointment_type, intake_form, complete_fields, user_factory
):
    member = user_factory(test_org, OrgRole.MEMBER)
    actor = load_actor(db, member.id, active_org_id=test_org.id)

    booking = await _create(db, acuity, actor, test_org, specialist, appointment_type, complete_fields)

    assert booking.referrer.user_id is None
    detail = booking_service.get_booking_by_id(db, booking.id, actor)
    assert detail.booking.created_by_id == member.id

    detail = await booking_service.cancel_booking(db, acuity, booking.id, actor=actor)
    assert detail.current_progress == ProgressStatus.CANCELLED


# =============================================================================
# Read
# =============================================================================

def test_get_booking_denied_for_outsider(db, booking, test_org, user_factory):
    outsider = user_factory(test_org, OrgRole.MEMBER)
    with pytest.raises(AccessDeniedError):
        booking_service.get_booking_by_id(db, booking.id, load_actor(db, outsider.id, active_org_id=test_org.id))


def test_get_booking_not_found(db, owner_actor):
    with pytest.raises(NotFoundError):
        booking_service.get_booking_by_id(db, uuid.uuid4(), owner_actor)


# =============================================================================
# Reschedule / cancel
# =============================================================================

async def test_reschedule_updates_time_and_progress(db, acuity, booking, owner_actor):
    detail = await booking_service.reschedule_booking(
        db, acuity, booking.id, date_time="2027-02-01T10:00:00+00:00", actor=owner_actor
    )

    assert acuity.calls == [
        ("reschedule", {
            "appointment_id": booking.acuity_appointment_id,
            "datetime": "2027-02-01T10:00:00+00:00",
            "timezone": None,
        })
    ]
    assert detail.booking.date_time == datetime(2027, 2, 1, 10, 0, tzinfo=timezone.utc)
    assert detail.current_progress == ProgressStatus.RESCHEDULED
    assert detail.booking.status == BookingStatus.ACTIVE.value

    # A rescheduled booking may be moved again
    detail = await booking_service.reschedule_booking(
        db, acuity, booking.id, date_time="2027-02-02T10:00:00+00:00", actor=owner_actor
    )
    assert [e.to_status for e in detail.progress_history] == ["scheduled", "rescheduled", "rescheduled"]


async def test_reschedule_from_terminal_fails_before_acuity(db, acuity, booking, owner_actor):
    booking_progress_service.transition(db, booking.id, ProgressStatus.CANCELLED, owner_actor)

    with pytest.raises(InvalidTransitionError):
        await booking_service.reschedule_booking(
            db, acuity, booking.id, date_time="2027-02-01T10:00:00+00:00", actor=owner_actor
        )
    assert acuity.calls == []


async def test_reschedule_denied_before_acuity(db, acuity, booking, test_org, user_factory):
    outsider = user_factory(test_org, OrgRole.MEMBER)
    actor = load_actor(db, outsider.id, active_org_id=test_org.id)
    with pytest.raises(AccessDeniedError):
        await booking_service.reschedule_booking(
            db, acuity, booking.id, date_time="2027-02-01T10:00:00+00:00", actor=actor
        )
    assert acuity.calls == []


async def test_reschedule_acuity_failure_leaves_booking(db, acuity, booking, owner_actor):
    original = booking.date_time
    acuity.error = AcuityAPIError("Request to scheduling service timed out.", None, "TIMEOUT")

    with pytest.raises(ExternalServiceError) as exc_info:
        await booking_service.reschedule_booking(
            db, acuity, booking.id, date_time="2027-02-01T10:00:00+00:00", actor=owner_actor
        )

    assert exc_info.value.code == "TIMEOUT"
    db.refresh(booking)
    assert booking.date_time == original
    assert booking_progress_service.get_current_progress(db, booking.id) == ProgressStatus.SCHEDULED


async def test_cancel_no_show(db, acuity, booking, owner_actor):
    detail = await booking_service.cancel_booking(db, acuity, booking.id, actor=owner_actor, no_show=True)

    assert acuity.calls == [("cancel", {"appointment_id": booking.acuity_appointment_id, "no_show": True})]
    assert detail.current_progress == ProgressStatus.NO_SHOW
    assert detail.booking.status == BookingStatus.CLOSED.value
    assert detail.booking.cancelled_at is not None

    audit = (
        db.query(AuditLog)
        .filter(
            AuditLog.target_id == str(booking.id),
            AuditLog.event_type == AuditEventType.BOOKING_CANCELLED.value,
        )
        .one()
    )
    assert audit.details == {"previous_progress": "scheduled", "new_progress": "no-show"}


async def test_cancel_twice_fails_before_acuity(db, acuity, booking, owner_actor):
    await booking_service.cancel_booking(db, acuity, booking.id, actor=owner_actor)
    acuity.calls.clear()

    with pytest.raises(InvalidTransitionError):
        await booking_service.cancel_booking(db, acuity, booking.id, actor=owner_actor)
    assert acuity.calls == []


async def test_cancel_local_failure_is_inconsistent_state(db, acuity, booking, owner_actor, monkeypatch):
    def failing_lock(*args, **kwargs):
        raise SQLAlchemyError("lock timeout")

    monkeypatch.setattr(booking_progress_service, "load_booking_for_update", failing_lock)

    with pytest.raises(InconsistentStateError) as exc_info:
        await booking_service.cancel_booking(db, acuity, booking.id, actor=owner_actor)

    assert exc_info.value.acuity_appointment_id == booking.acuity_appointment_id
    assert acuity.call_names() == ["cancel"]


def _assert_history_allowed(db, booking_id):
    for entry in booking_progress_service.get_progress_history(db, booking_id):
        if entry.from_status is not None:
            assert booking_progress_service.is_valid_transition(
                ProgressStatus(entry.from_status), ProgressStatus(entry.to_status)
            ), (entry.from_status, entry.to_status)


async def test_cancel_after_progress_moved_in_flight(db, acuity, booking, owner_actor, monkeypatch, caplog):
    cancel = acuity.cancel_appointment

    async def cancel_while_reporting(appointment_id, *, no_show=False):
        booking_progress_service.transition(db, booking.id, ProgressStatus.GENERATING_REPORT, owner_actor)
        return await cancel(appointment_id, no_show=no_show)

    monkeypatch.setattr(acuity, "cancel_appointment", cancel_while_reporting)

    with caplog.at_level(logging.CRITICAL, logger="ime_portal.services.booking_service"):
        with pytest.raises(InconsistentStateError) as exc_info:
            await booking_service.cancel_booking(db, acuity, booking.id, actor=owner_actor)

    assert exc_info.value.acuity_appointment_id == booking.acuity_appointment_id
    assert booking_progress_service.get_current_progress(db, booking.id) == ProgressStatus.GENERATING_REPORT
    _assert_history_allowed(db, booking.id)
    db.refresh(booking)
    assert booking.status == BookingStatus.ACTIVE.value
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert critical and critical[0].acuity_appointment_id == booking.acuity_appointment_id


async def test_reschedule_after_progress_moved_in_flight(db, acuity, booking, owner_actor, monkeypatch):
    original = booking.date_time
    reschedule = acuity.reschedule_appointment

    async def reschedule_while_reporting(appointment_id, **kwargs):
        booking_progress_service.transition(db, booking.id, ProgressStatus.GENERATING_REPORT, owner_actor)
        return await reschedule(appointment_id, **kwargs)

    monkeypatch.setattr(acuity, "reschedule_appointment", reschedule_while_reporting)

    with pytest.raises(InconsistentStateError) as exc_info:
        await booking_service.reschedule_booking(
            db, acuity, booking.id, date_time="2027-02-01T10:00:00+00:00", actor=owner_actor
        )

    assert exc_info.value.acuity_appointment_id == booking.acuity_appointment_id
    assert [e.to_status for e in booking_progress_service.get_progress_history(db, booking.id)] == [
        "scheduled",
        "generating-report",
    ]
    _assert_history_allowed(db, booking.id)
    db.refresh(booking)
    assert booking.date_time == original
