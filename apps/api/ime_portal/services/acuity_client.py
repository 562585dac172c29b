"""Acuity Scheduling API client.

The external scheduler is the system of record for calendar slots. Bookings
persist Acuity's integer appointment id and use it for every later call.

Mutating calls (create, reschedule, cancel) are sent exactly once: a timeout
does not mean the remote side effect did not happen, so callers treat it as a
hard failure. Read calls retry with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import date
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ime_portal.core.config import settings

logger = logging.getLogger(__name__)

READ_RETRY_STATUSES = {429, 500, 502, 503, 504}


# ============================================================================
# Errors
# ============================================================================

class AcuityAPIError(Exception):
    """
    Scheduler call failure.

    code is one of SERVICE_UNAVAILABLE, UNAUTHORIZED, NOT_FOUND, BAD_REQUEST,
    TIMEOUT, NETWORK_ERROR, UNKNOWN_ERROR.
    """

    def __init__(self, message: str, status_code: int | None = None, code: str = "UNKNOWN_ERROR"):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


def error_from_response(response: httpx.Response) -> AcuityAPIError:
    """Translate a non-2xx Acuity response into an AcuityAPIError."""
    status = response.status_code
    if status in (502, 503):
        return AcuityAPIError(
            "The scheduling service is temporarily unavailable. Please try again in a few moments.",
            status,
            "SERVICE_UNAVAILABLE",
        )
    if status == 401:
        return AcuityAPIError(
            "Authentication with the scheduling service failed. Please contact support.",
            status,
            "UNAUTHORIZED",
        )

    message = f"Acuity API error: {status}"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        message = str(body["message"])
    elif response.text:
        message = response.text[:500]

    if status == 404:
        return AcuityAPIError(message, status, "NOT_FOUND")
    if 400 <= status < 500:
        return AcuityAPIError(message, status, "BAD_REQUEST")
    return AcuityAPIError(message, status, "UNKNOWN_ERROR")


# ============================================================================
# Request / Response Models
# ============================================================================

class AcuityField(BaseModel):
    """Intake form value as Acuity sends and accepts it."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    field_id: int | None = Field(None, alias="fieldID")
    value: str = ""
    name: str | None = None

    @property
    def effective_id(self) -> int:
        """fieldID when present, else id."""
        return self.field_id if self.field_id is not None else self.id


class AcuityContact(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str | None = None


class AcuityAppointment(BaseModel):
    """Subset of Acuity's appointment resource used by the portal."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    datetime: str
    duration: int | None = None
    appointment_type_id: int = Field(alias="appointmentTypeID")
    calendar_id: int = Field(alias="calendarID")
    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")
    email: str = ""
    type: str = ""
    location: str | None = None
    canceled: bool = False
    no_show: bool = Field(False, alias="noShow")


# ============================================================================
# Client
# ============================================================================

class AcuityClient:
    """
    Thin async wrapper over the Acuity REST API (Basic auth).

    Use as an async context manager so the underlying connection pool is
    closed, or pass a shared httpx.AsyncClient.
    """

    def __init__(
        self,
        *,
        user_id: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        read_max_attempts: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.ACUITY_BASE_URL).rstrip("/")
        self.read_max_attempts = read_max_attempts or settings.ACUITY_READ_MAX_ATTEMPTS
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            auth=(user_id or settings.ACUITY_USER_ID, api_key or settings.ACUITY_API_KEY),
            timeout=timeout or settings.ACUITY_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "AcuityClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send one request, mapping transport failures to AcuityAPIError."""
        logger.debug("Acuity request %s %s", method, path)
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise AcuityAPIError(
                "Request to scheduling service timed out.", None, "TIMEOUT"
            ) from exc
        except httpx.RequestError as exc:
            raise AcuityAPIError(
                "Unable to connect to the scheduling service.", None, "NETWORK_ERROR"
            ) from exc

    async def _write(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._send(method, path, **kwargs)
        if response.is_error:
            raise error_from_response(response)
        return response.json() if response.content else None

    async def _read(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await read_with_retries(
            lambda: self._send("GET", path, params=params),
            max_attempts=self.read_max_attempts,
        )
        if response.is_error:
            raise error_from_response(response)
        return response.json()

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def create_appointment(
        self,
        *,
        datetime: str,
        appointment_type_id: int,
        contact: AcuityContact,
        timezone: str | None = None,
        calendar_id: int | None = None,
        fields: list[AcuityField] | None = None,
    ) -> AcuityAppointment:
        """Book an appointment. datetime is passed through untouched."""
        payload: dict[str, Any] = {
            "appointmentTypeID": appointment_type_id,
            "datetime": datetime,
            "firstName": contact.first_name,
            "lastName": contact.last_name,
            "email": contact.email,
        }
        if contact.phone:
            payload["phone"] = contact.phone
        if timezone:
            payload["timezone"] = timezone
        if calendar_id is not None:
            payload["calendarID"] = calendar_id
        if fields:
            payload["fields"] = [{"id": f.effective_id, "value": f.value} for f in fields]

        data = await self._write("POST", "/appointments", params={"admin": "true"}, json=payload)
        return _parse_appointment(data)

    async def reschedule_appointment(
        self,
        appointment_id: int,
        *,
        datetime: str,
        timezone: str | None = None,
    ) -> AcuityAppointment:
        payload: dict[str, Any] = {"datetime": datetime}
        if timezone:
            payload["timezone"] = timezone
        data = await self._write(
            "PUT",
            f"/appointments/{appointment_id}/reschedule",
            params={"admin": "true"},
            json=payload,
        )
        return _parse_appointment(data)

    async def cancel_appointment(self, appointment_id: int, *, no_show: bool = False) -> AcuityAppointment:
        data = await self._write(
            "PUT",
            f"/appointments/{appointment_id}/cancel",
            params={"admin": "true"},
            json={"noShow": no_show},
        )
        return _parse_appointment(data)

    async def get_appointment(self, appointment_id: int) -> AcuityAppointment:
        data = await self._read(f"/appointments/{appointment_id}")
        return _parse_appointment(data)

    async def list_appointments(
        self,
        *,
        min_date: date | None = None,
        max_date: date | None = None,
        max_results: int = 1000,
        include_canceled: bool = False,
    ) -> list[AcuityAppointment]:
        params: dict[str, Any] = {"max": max_results, "canceled": str(include_canceled).lower()}
        if min_date:
            params["minDate"] = min_date.isoformat()
        if max_date:
            params["maxDate"] = max_date.isoformat()
        data = await self._read("/appointments", params=params)
        return [_parse_appointment(item) for item in data]


def _parse_appointment(data: Any) -> AcuityAppointment:
    try:
        return AcuityAppointment.model_validate(data)
    except ValidationError as exc:
        raise AcuityAPIError(
            "Unexpected response from the scheduling service.", None, "UNKNOWN_ERROR"
        ) from exc


async def read_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
) -> httpx.Response:
    """
    Retry an idempotent request with jittered exponential backoff.

    Retries on READ_RETRY_STATUSES and on NETWORK_ERROR/TIMEOUT failures.
    """
    for attempt in range(max_attempts):
        last_attempt = attempt >= max_attempts - 1
        delay = min(max_delay, base_delay * (2**attempt))
        if delay:
            delay = delay + random.uniform(0, delay / 2)

        try:
            response = await request_fn()
        except AcuityAPIError as exc:
            if last_attempt or exc.code not in ("NETWORK_ERROR", "TIMEOUT"):
                raise
            logger.warning("Acuity read failed (%s), retrying", exc.code)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in READ_RETRY_STATUSES and not last_attempt:
            logger.warning("Acuity read returned %s, retrying", response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
