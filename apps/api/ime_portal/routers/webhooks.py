"""Webhooks router - appointment sync from the Acuity automation."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from sqlalchemy.orm import Session

from ime_portal.core.config import settings
from ime_portal.core.deps import get_db
from ime_portal.core.rate_limit import WEBHOOK_LIMIT, limiter
from ime_portal.core.security import verify_secret
from ime_portal.db.enums import WebhookEventType
from ime_portal.schemas.webhook import (
    AppointmentCancellationPayload,
    AppointmentReschedulePayload,
    AppointmentWebhookPayload,
    WebhookResponse,
)
from ime_portal.services import acuity_webhook_service
from ime_portal.services.acuity_webhook_service import InvalidWebhookPayloadError
from ime_portal.services.errors import BookingServiceError
from ime_portal.routers.errors import to_http_exception

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_webhook_secret(x_webhook_secret: str | None = Header(None)) -> None:
    """Verify the shared secret the automation sends."""
    if not settings.ACUITY_WEBHOOK_SECRET:
        raise HTTPException(status_code=501, detail="ACUITY_WEBHOOK_SECRET not configured")
    if not verify_secret(x_webhook_secret, settings.ACUITY_WEBHOOK_SECRET):
        logger.warning("Acuity webhook with invalid secret")
        raise HTTPException(status_code=403, detail="Invalid webhook secret")


def _run(db: Session, event_type: WebhookEventType, payload, handler):
    try:
        return acuity_webhook_service.handle_delivery(
            db,
            event_type,
            payload.acuity_appointment_id,
            payload.model_dump(mode="json", by_alias=True),
            lambda: handler(db, payload),
        )
    except InvalidWebhookPayloadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BookingServiceError as e:
        raise to_http_exception(e)


@router.post(
    "/acuity/appointment",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
@limiter.limit(WEBHOOK_LIMIT)
def receive_appointment(
    payload: AppointmentWebhookPayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """
    Appointment created or updated in Acuity.

    Known appointment: the booking's location is updated (200). Unknown
    appointment: a booking is created from the payload (201).
    """
    result = _run(
        db,
        WebhookEventType.APPOINTMENT_UPSERTED,
        payload,
        acuity_webhook_service.upsert_appointment,
    )
    if result.created:
        response.status_code = 201
        return WebhookResponse(message="Booking created successfully", booking_id=str(result.booking_id))
    return WebhookResponse(message="Booking updated successfully", booking_id=str(result.booking_id))


@router.delete(
    "/acuity/appointment",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
@limiter.limit(WEBHOOK_LIMIT)
def receive_cancellation(
    payload: AppointmentCancellationPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    result = _run(
        db,
        WebhookEventType.APPOINTMENT_CANCELED,
        payload,
        acuity_webhook_service.cancel_appointment,
    )
    return WebhookResponse(message="Booking cancelled successfully", booking_id=str(result.booking_id))


@router.put(
    "/acuity/appointment",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
@limiter.limit(WEBHOOK_LIMIT)
def receive_reschedule(
    payload: AppointmentReschedulePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    result = _run(
        db,
        WebhookEventType.APPOINTMENT_RESCHEDULED,
        payload,
        acuity_webhook_service.reschedule_appointment,
    )
    return WebhookResponse(message="Booking rescheduled successfully", booking_id=str(result.booking_id))
