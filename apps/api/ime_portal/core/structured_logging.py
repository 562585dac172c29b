"""Structured logging helpers (PHI-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    org_id: UUID | str | None = None,
    booking_id: UUID | str | None = None,
    acuity_appointment_id: int | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """
    Return a PHI-safe log context dict for ``logger.x(..., extra=...)``.

    Only identifiers are accepted; names, emails and dates of birth never
    belong in log records.
    """
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if org_id:
        context["org_id"] = str(org_id)
    if booking_id:
        context["booking_id"] = str(booking_id)
    if acuity_appointment_id is not None:
        context["acuity_appointment_id"] = acuity_appointment_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
