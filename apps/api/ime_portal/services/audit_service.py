"""Audit logging service - booking lifecycle event tracking.

Audit writes are fire-and-forget: they run after the audited change has
committed, inside a savepoint, and a failure is logged rather than raised.

Guidelines:
- Never put examinee or referrer PII in details; ids and status values only
- IP: Trust X-Forwarded-For only when TRUST_PROXY_HEADERS is set
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ime_portal.core.config import settings
from ime_portal.db.enums import AuditEventType, AuditTargetType
from ime_portal.db.models import AuditLog

logger = logging.getLogger(__name__)


def get_client_ip(request: Request | None) -> str | None:
    """Extract client IP, honouring X-Forwarded-For only behind a trusted proxy."""
    if not request:
        return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # X-Forwarded-For: client, proxy1, proxy2 - take first
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return None


def get_user_agent(request: Request | None) -> str | None:
    if not request:
        return None
    ua = request.headers.get("user-agent", "")
    return ua[:500] if ua else None


def log_event(
    db: Session,
    *,
    org_id: UUID | None,
    event_type: AuditEventType,
    actor_user_id: UUID | None = None,
    impersonated_by: UUID | None = None,
    target_type: AuditTargetType = AuditTargetType.BOOKING,
    target_id: UUID | int | str | None = None,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
) -> AuditLog | None:
    """
    Record an audit event and commit it.

    Args:
        db: Database session (the audited change must already be committed)
        org_id: Organization context, None for untenanted events
        event_type: Type of event (from AuditEventType)
        actor_user_id: User who performed the action (None for system)
        impersonated_by: Admin acting as actor_user_id, if any
        target_type: Kind of entity affected
        target_id: Booking id or Acuity appointment id
        details: Additional context (ids and statuses only)
        request: FastAPI request for IP/user-agent extraction

    Returns:
        The created entry, or None if the write failed
    """
    entry = AuditLog(
        organization_id=org_id,
        actor_user_id=actor_user_id,
        impersonated_by_user_id=impersonated_by,
        event_type=event_type.value,
        target_type=target_type.value,
        target_id=str(target_id) if target_id is not None else None,
        details=details,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    try:
        with db.begin_nested():
            db.add(entry)
        db.commit()
    except SQLAlchemyError:
        logger.warning(
            "Audit write failed for %s on %s %s",
            event_type.value,
            target_type.value,
            target_id,
            exc_info=True,
        )
        db.rollback()
        return None
    return entry


def list_events_for_target(
    db: Session,
    target_type: AuditTargetType,
    target_id: UUID | int | str,
    limit: int = 100,
) -> list[AuditLog]:
    """Most recent audit entries for one booking or external appointment."""
    return (
        db.query(AuditLog)
        .filter(
            AuditLog.target_type == target_type.value,
            AuditLog.target_id == str(target_id),
        )
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .all()
    )
