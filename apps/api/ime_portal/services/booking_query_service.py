"""Role-scoped booking list queries.

Two shapes:
- Paginated list (default): newest first, page/limit bounded, with the
  specialist, referrer and a reduced examinee column set eagerly loaded.
- Calendar window (start and end both given): ordered by appointment time,
  capped at the configured row limit, no page descriptor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import ColumnElement, false, func, or_, true
from sqlalchemy.orm import Query, Session, contains_eager, joinedload

from ime_portal.core.booking_access import (
    Actor,
    AdminScope,
    BookingScope,
    OrganizationScope,
    ReferrerScope,
    SpecialistScope,
    resolve_scope,
)
from ime_portal.core.config import settings
from ime_portal.db.models import Booking, Examinee, Referrer, Specialist
from ime_portal.utils.pagination import PageInfo, PaginationParams, paginate_query

logger = logging.getLogger(__name__)


@dataclass
class BookingFilters:
    status: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    specialist_id: UUID | None = None
    # Takes precedence over specialist_id
    specialist_ids: list[UUID] = field(default_factory=list)
    search: str | None = None

    @property
    def calendar_mode(self) -> bool:
        return self.start_date is not None and self.end_date is not None


@dataclass
class BookingListResult:
    items: list[Booking]
    pagination: PageInfo | None  # None in calendar mode


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_condition(search: str | None) -> ColumnElement[bool] | None:
    """Case-insensitive substring match on examinee name, full name and email."""
    if not search or not search.strip():
        return None
    pattern = f"%{_escape_like(search.strip())}%"
    full_name = func.concat(Examinee.first_name, " ", Examinee.last_name)
    return or_(
        Examinee.first_name.ilike(pattern, escape="\\"),
        Examinee.last_name.ilike(pattern, escape="\\"),
        Examinee.email.ilike(pattern, escape="\\"),
        full_name.ilike(pattern, escape="\\"),
    )


def build_filter_conditions(filters: BookingFilters) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []
    if filters.status:
        conditions.append(Booking.status == filters.status)
    if filters.start_date:
        conditions.append(Booking.date_time >= filters.start_date)
    if filters.end_date:
        conditions.append(Booking.date_time <= filters.end_date)
    if filters.specialist_ids:
        conditions.append(Booking.specialist_id.in_(filters.specialist_ids))
    elif filters.specialist_id:
        conditions.append(Booking.specialist_id == filters.specialist_id)
    search = search_condition(filters.search)
    if search is not None:
        conditions.append(search)
    return conditions


def scope_condition(scope: BookingScope) -> ColumnElement[bool]:
    """WHERE clause limiting bookings to the scope. Requires the referrer join."""
    if isinstance(scope, AdminScope):
        return true()
    if isinstance(scope, OrganizationScope):
        return Booking.organization_id == scope.organization_id
    if isinstance(scope, SpecialistScope):
        if not scope.specialist_ids:
            return false()
        return Booking.specialist_id.in_(list(scope.specialist_ids))
    if isinstance(scope, ReferrerScope):
        return or_(Booking.created_by_id == scope.user_id, Referrer.user_id == scope.user_id)
    raise TypeError(f"Unknown booking scope: {scope!r}")


def build_query(db: Session, scope: BookingScope, filters: BookingFilters) -> Query:
    """Scoped, filtered booking query without ordering or eager loads."""
    return (
        db.query(Booking)
        .join(Examinee, Examinee.id == Booking.examinee_id)
        .join(Referrer, Referrer.id == Booking.referrer_id)
        .filter(scope_condition(scope), *build_filter_conditions(filters))
    )


def _examinee_summary():
    return contains_eager(Booking.examinee).load_only(
        Examinee.id, Examinee.first_name, Examinee.last_name, Examinee.email
    )


def list_bookings(
    db: Session,
    actor: Actor,
    filters: BookingFilters,
    pagination: PaginationParams | None = None,
) -> BookingListResult:
    scope = resolve_scope(actor)
    query = build_query(db, scope, filters)

    if filters.calendar_mode:
        items = (
            query.options(_examinee_summary(), joinedload(Booking.specialist))
            .order_by(Booking.date_time.asc())
            .limit(settings.calendar_row_limit)
            .all()
        )
        logger.debug("Calendar query returned %d bookings (%s)", len(items), type(scope).__name__)
        return BookingListResult(items=items, pagination=None)

    pagination = pagination or PaginationParams()
    total = query.count()
    detailed = query.options(
        _examinee_summary(),
        joinedload(Booking.specialist).joinedload(Specialist.user),
        contains_eager(Booking.referrer).joinedload(Referrer.organization),
    ).order_by(Booking.created_at.desc())
    items, total = paginate_query(detailed, pagination, total=total)
    return BookingListResult(items=items, pagination=PageInfo.create(total, pagination))
