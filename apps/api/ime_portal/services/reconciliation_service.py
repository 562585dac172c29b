"""Orphaned appointment reconciliation.

An orphan is an Acuity appointment with no local booking, left behind when
the local write fails after the scheduler call succeeded. Operators list them
for a date window and may cancel them at Acuity.
"""

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.orm import Session

from ime_portal.core.structured_logging import build_log_context
from ime_portal.db.enums import AuditEventType, AuditTargetType
from ime_portal.db.models import Booking
from ime_portal.services import audit_service
from ime_portal.services.acuity_client import AcuityAPIError, AcuityAppointment, AcuityClient

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    min_date: date
    max_date: date
    checked: int = 0
    orphans: list[AcuityAppointment] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    # Acuity appointment id -> error message
    failed: dict[int, str] = field(default_factory=dict)


def known_appointment_ids(db: Session, appointment_ids: list[int]) -> set[int]:
    if not appointment_ids:
        return set()
    rows = (
        db.query(Booking.acuity_appointment_id)
        .filter(Booking.acuity_appointment_id.in_(appointment_ids))
        .all()
    )
    return {row[0] for row in rows}


async def find_orphans(
    db: Session,
    client: AcuityClient,
    min_date: date,
    max_date: date,
) -> ReconciliationReport:
    """Acuity appointments in the window that have no local booking."""
    if min_date > max_date:
        raise ValueError("min_date must not be after max_date")

    appointments = await client.list_appointments(min_date=min_date, max_date=max_date)
    known = known_appointment_ids(db, [a.id for a in appointments])
    report = ReconciliationReport(min_date=min_date, max_date=max_date, checked=len(appointments))
    report.orphans = [a for a in appointments if a.id not in known]
    if report.orphans:
        logger.warning(
            "Found %d orphaned Acuity appointments between %s and %s",
            len(report.orphans),
            min_date,
            max_date,
        )
    return report


async def reconcile(
    db: Session,
    client: AcuityClient,
    min_date: date,
    max_date: date,
    *,
    cancel: bool = False,
) -> ReconciliationReport:
    """Find orphans and, when cancel is set, cancel each one at Acuity."""
    report = await find_orphans(db, client, min_date, max_date)
    if not cancel:
        return report

    for appointment in report.orphans:
        try:
            await client.cancel_appointment(appointment.id)
        except AcuityAPIError as exc:
            logger.error(
                "Failed to cancel orphaned appointment (%s)",
                exc.code,
                extra=build_log_context(acuity_appointment_id=appointment.id),
            )
            report.failed[appointment.id] = str(exc)
            continue

        report.cancelled.append(appointment.id)
        logger.info(
            "Cancelled orphaned appointment",
            extra=build_log_context(acuity_appointment_id=appointment.id),
        )
        audit_service.log_event(
            db,
            org_id=None,
            event_type=AuditEventType.RECONCILE_ORPHAN_CANCELLED,
            target_type=AuditTargetType.EXTERNAL_APPOINTMENT,
            target_id=appointment.id,
            details={"calendar_id": appointment.calendar_id, "datetime": appointment.datetime},
        )
    return report
