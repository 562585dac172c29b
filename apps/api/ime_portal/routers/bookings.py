"""Bookings API - create, list, view and progress examination bookings."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ime_portal.core.booking_access import Actor, can_access, load_booking_facts
from ime_portal.core.deps import (
    get_acuity_client,
    get_actor,
    get_db,
    require_csrf_header,
)
from ime_portal.core.rate_limit import BOOKING_CREATE_LIMIT, limiter
from ime_portal.db.enums import AuditTargetType
from ime_portal.db.models import Booking
from ime_portal.schemas.booking import (
    AuditEntryRead,
    BookingCreate,
    BookingListItem,
    BookingListResponse,
    BookingRead,
    CancelRequest,
    ExamineeRead,
    ExamineeSummary,
    PageInfoRead,
    ProgressEntryRead,
    ProgressUpdate,
    ReferrerRead,
    RescheduleRequest,
    SpecialistSummary,
)
from ime_portal.services import audit_service, booking_query_service, booking_service
from ime_portal.services.acuity_client import AcuityClient, AcuityContact
from ime_portal.services.booking_query_service import BookingFilters
from ime_portal.services.booking_service import BookingDetail
from ime_portal.services.errors import BookingServiceError
from ime_portal.routers.errors import to_http_exception
from ime_portal.utils.pagination import PaginationParams, get_pagination

router = APIRouter()


def _parse_specialist_ids(raw: str | None) -> list[UUID]:
    if not raw:
        return []
    try:
        return [UUID(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=422, detail="specialist_ids must be comma-separated UUIDs")


def _detail_to_read(detail: BookingDetail) -> BookingRead:
    booking = detail.booking
    return BookingRead(
        **_booking_columns(booking),
        specialist=SpecialistSummary.model_validate(booking.specialist),
        referrer=ReferrerRead.model_validate(booking.referrer),
        examinee=ExamineeRead.model_validate(booking.examinee),
        current_progress=detail.current_progress,
        progress_history=[ProgressEntryRead.model_validate(e) for e in detail.progress_history],
    )


def _booking_columns(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "organization_id": booking.organization_id,
        "team_id": booking.team_id,
        "created_by_id": booking.created_by_id,
        "referrer_id": booking.referrer_id,
        "specialist_id": booking.specialist_id,
        "examinee_id": booking.examinee_id,
        "status": booking.status,
        "type": booking.type,
        "duration": booking.duration,
        "location": booking.location,
        "date_time": booking.date_time,
        "acuity_appointment_id": booking.acuity_appointment_id,
        "acuity_appointment_type_id": booking.acuity_appointment_type_id,
        "acuity_calendar_id": booking.acuity_calendar_id,
        "scheduled_at": booking.scheduled_at,
        "completed_at": booking.completed_at,
        "cancelled_at": booking.cancelled_at,
        "created_at": booking.created_at,
        "updated_at": booking.updated_at,
    }


def _booking_to_list_item(booking: Booking, calendar_mode: bool) -> BookingListItem:
    """Calendar rows carry only the specialist; list rows add referrer and organization."""
    item = BookingListItem(
        **_booking_columns(booking),
        specialist=SpecialistSummary.model_validate(booking.specialist),
        examinee=ExamineeSummary.model_validate(booking.examinee),
    )
    if not calendar_mode:
        item.referrer = ReferrerRead.model_validate(booking.referrer)
        item.organization_name = booking.referrer.organization.name
    return item


# =============================================================================
# Create / list / read
# =============================================================================

@router.post(
    "",
    response_model=BookingRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
@limiter.limit(BOOKING_CREATE_LIMIT)
async def create_booking(
    data: BookingCreate,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    client: AcuityClient = Depends(get_acuity_client),
):
    """
    Book an examination.

    Books the slot with Acuity first, then saves the booking. Responds 502
    when Acuity rejects or times out, 500 when Acuity booked but the local
    save failed.
    """
    if not actor.active_org_id:
        raise HTTPException(status_code=400, detail="No active organization")

    try:
        booking = await booking_service.create_booking(
            db,
            client,
            actor=actor,
            organization_id=actor.active_org_id,
            specialist_id=data.specialist_id,
            appointment_type_id=data.appointment_type_id,
            date_time=data.date_time,
            contact=AcuityContact(
                first_name=data.contact.first_name,
                last_name=data.contact.last_name,
                email=data.contact.email,
                phone=data.contact.phone,
            ),
            fields=data.fields,
            timezone_name=data.timezone,
            team_id=data.team_id,
            job_title=data.job_title,
            request=request,
        )
        detail = booking_service.get_booking_by_id(db, booking.id, actor)
    except BookingServiceError as e:
        raise to_http_exception(e)
    return _detail_to_read(detail)


@router.get("", response_model=BookingListResponse)
def list_bookings(
    status: str | None = Query(None, max_length=20),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    specialist_id: UUID | None = None,
    specialist_ids: str | None = Query(None, description="Comma-separated; overrides specialist_id"),
    search: str | None = Query(None, max_length=255),
    pagination: PaginationParams = Depends(get_pagination),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    List bookings visible to the caller.

    With both start_date and end_date the response is a calendar window
    ordered by appointment time and has no pagination block.
    """
    filters = BookingFilters(
        status=status,
        start_date=start_date,
        end_date=end_date,
        specialist_id=specialist_id,
        specialist_ids=_parse_specialist_ids(specialist_ids),
        search=search,
    )
    result = booking_query_service.list_bookings(db, actor, filters, pagination)
    page = None
    if result.pagination:
        page = PageInfoRead(
            page=result.pagination.page,
            limit=result.pagination.limit,
            total=result.pagination.total,
            total_pages=result.pagination.total_pages,
        )
    return BookingListResponse(
        items=[_booking_to_list_item(b, filters.calendar_mode) for b in result.items],
        pagination=page,
    )


@router.get("/{booking_id}", response_model=BookingRead)
def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    try:
        detail = booking_service.get_booking_by_id(db, booking_id, actor)
    except BookingServiceError as e:
        raise to_http_exception(e)
    return _detail_to_read(detail)


@router.get("/{booking_id}/audit", response_model=list[AuditEntryRead])
def get_booking_audit(
    booking_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    facts = load_booking_facts(db, booking_id)
    if not facts:
        raise HTTPException(status_code=404, detail="Booking not found")
    if not can_access(actor, facts):
        raise HTTPException(status_code=403, detail="You do not have access to this booking")

    entries = audit_service.list_events_for_target(db, AuditTargetType.BOOKING, booking_id, limit)
    return [AuditEntryRead.model_validate(e) for e in entries]


# =============================================================================
# Mutations
# =============================================================================

@router.post(
    "/{booking_id}/progress",
    response_model=BookingRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_progress(
    booking_id: UUID,
    data: ProgressUpdate,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    try:
        detail = booking_service.update_progress(
            db, booking_id, data.status, actor, notes=data.notes, request=request
        )
    except BookingServiceError as e:
        raise to_http_exception(e)
    return _detail_to_read(detail)


@router.post(
    "/{booking_id}/reschedule",
    response_model=BookingRead,
    dependencies=[Depends(require_csrf_header)],
)
async def reschedule_booking(
    booking_id: UUID,
    data: RescheduleRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    client: AcuityClient = Depends(get_acuity_client),
):
    try:
        detail = await booking_service.reschedule_booking(
            db,
            client,
            booking_id,
            date_time=data.date_time,
            timezone_name=data.timezone,
            actor=actor,
            request=request,
        )
    except BookingServiceError as e:
        raise to_http_exception(e)
    return _detail_to_read(detail)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingRead,
    dependencies=[Depends(require_csrf_header)],
)
async def cancel_booking(
    booking_id: UUID,
    data: CancelRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    client: AcuityClient = Depends(get_acuity_client),
):
    try:
        detail = await booking_service.cancel_booking(
            db, client, booking_id, actor=actor, no_show=data.no_show, request=request
        )
    except BookingServiceError as e:
        raise to_http_exception(e)
    return _detail_to_read(detail)
