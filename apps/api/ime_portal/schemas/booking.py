"""Booking schemas - Pydantic models for the bookings API."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ime_portal.db.enums import ProgressStatus
from ime_portal.services.acuity_client import AcuityField


# =============================================================================
# Requests
# =============================================================================

class ContactInput(BaseModel):
    """Referrer contact, also sent to Acuity as the appointment contact."""
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: str | None = Field(None, max_length=50)


class BookingCreate(BaseModel):
    """Schema for creating a booking."""
    specialist_id: UUID
    appointment_type_id: int = Field(..., gt=0)
    date_time: str = Field(..., min_length=10, description="ISO 8601, passed to Acuity untouched")
    timezone: str | None = Field(None, max_length=50)
    contact: ContactInput
    job_title: str | None = Field(None, max_length=255)
    team_id: UUID | None = None
    fields: list[AcuityField] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    status: ProgressStatus
    notes: str | None = Field(None, max_length=2000)


class RescheduleRequest(BaseModel):
    date_time: str = Field(..., min_length=10)
    timezone: str | None = Field(None, max_length=50)


class CancelRequest(BaseModel):
    no_show: bool = False


# =============================================================================
# Responses
# =============================================================================

class ExamineeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    date_of_birth: str
    address: str
    email: str
    phone_number: str
    authorized_contact: bool
    condition: str
    case_type: str


class ExamineeSummary(BaseModel):
    """Reduced examinee columns for list views."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str


class ReferrerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: UUID | None
    first_name: str
    last_name: str
    email: str
    phone: str
    job_title: str | None


class SpecialistSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    specialty: str | None
    acuity_calendar_id: int


class ProgressEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    from_status: str | None
    to_status: str
    changed_by_id: UUID | None
    notes: str | None
    details: dict[str, Any] | None
    created_at: datetime


class _BookingBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    team_id: UUID | None
    created_by_id: UUID | None
    referrer_id: UUID
    specialist_id: UUID
    examinee_id: UUID
    status: str
    type: str
    duration: int
    location: str
    date_time: datetime
    acuity_appointment_id: int
    acuity_appointment_type_id: int
    acuity_calendar_id: int
    scheduled_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime


class BookingRead(_BookingBase):
    """Full booking with progress history."""
    specialist: SpecialistSummary
    referrer: ReferrerRead
    examinee: ExamineeRead
    current_progress: ProgressStatus
    progress_history: list[ProgressEntryRead]


class BookingListItem(_BookingBase):
    specialist: SpecialistSummary | None = None
    referrer: ReferrerRead | None = None
    organization_name: str | None = None
    examinee: ExamineeSummary


class PageInfoRead(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class BookingListResponse(BaseModel):
    items: list[BookingListItem]
    pagination: PageInfoRead | None = None  # None in calendar mode


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    actor_user_id: UUID | None
    impersonated_by_user_id: UUID | None
    target_type: str | None
    target_id: str | None
    details: dict[str, Any] | None
    created_at: datetime


class ReconciliationRead(BaseModel):
    min_date: str
    max_date: str
    checked: int
    orphan_ids: list[int]
    cancelled: list[int]
    failed: dict[int, str]
