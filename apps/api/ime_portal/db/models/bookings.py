"""Booking lifecycle models: referrers, examinees, bookings and progress history."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import CITEXT, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from ime_portal.db.base import Base
from ime_portal.db.enums import DEFAULT_BOOKING_STATUS

if TYPE_CHECKING:
    from ime_portal.db.models import Organization, Specialist, User


class Referrer(Base):
    """Person requesting an examination on behalf of an examinee."""

    __tablename__ = "referrers"
    __table_args__ = (
        Index("idx_referrers_org", "organization_id"),
        Index("idx_referrers_user", "user_id"),
        Index("idx_referrers_email", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Linked portal account, when the referrer logs in
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(CITEXT, nullable=False)
    phone: Mapped[str] = mapped_column(
        String(50), default="", server_default=text("''"), nullable=False
    )
    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)

    organization: Mapped["Organization"] = relationship()


class Examinee(Base):
    """
    Person being examined.

    Created fresh with each booking, never shared.
    """

    __tablename__ = "examinees"
    __table_args__ = (Index("idx_examinees_referrer", "referrer_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("referrers.id", ondelete="CASCADE"), nullable=False
    )
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Free text as submitted on the intake form
    date_of_birth: Mapped[str] = mapped_column(String(50), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone_number: Mapped[str] = mapped_column(
        String(50), default="", server_default=text("''"), nullable=False
    )
    authorized_contact: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    condition: Mapped[str] = mapped_column(Text, nullable=False)
    case_type: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)

    referrer: Mapped["Referrer"] = relationship()


class Booking(Base):
    """
    One scheduled examination.

    status is the coarse projection (active/closed/archived); the fine-grained
    progress lives in BookingProgress. organization_id never changes after insert.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("acuity_appointment_id", name="uq_bookings_acuity_appointment"),
        CheckConstraint("status IN ('active', 'closed', 'archived')", name="status_valid"),
        CheckConstraint("type IN ('in-person', 'telehealth')", name="type_valid"),
        Index("idx_bookings_org_created", "organization_id", "created_at"),
        Index("idx_bookings_specialist_datetime", "specialist_id", "date_time"),
        Index("idx_bookings_referrer", "referrer_id"),
        Index("idx_bookings_created_by", "created_by_id"),
        Index("idx_bookings_datetime", "date_time"),
        Index("idx_bookings_status", "status"),
        Index(
            "uq_bookings_specialist_slot_active",
            "specialist_id",
            "date_time",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("teams.id", ondelete="SET NULL"), nullable=True
    )
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("referrers.id", ondelete="RESTRICT"), nullable=False
    )
    specialist_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("specialists.id", ondelete="RESTRICT"), nullable=False
    )
    examinee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("examinees.id", ondelete="RESTRICT"), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_BOOKING_STATUS.value,
        server_default=text(f"'{DEFAULT_BOOKING_STATUS.value}'"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    location: Mapped[str] = mapped_column(Text, nullable=False)
    date_time: Mapped[datetime] = mapped_column(nullable=False)

    # Acuity references
    acuity_appointment_id: Mapped[int] = mapped_column(Integer, nullable=False)
    acuity_appointment_type_id: Mapped[int] = mapped_column(Integer, nullable=False)
    acuity_calendar_id: Mapped[int] = mapped_column(Integer, nullable=False)

    scheduled_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"), onupdate=text("now()"), nullable=False
    )

    organization: Mapped["Organization"] = relationship()
    referrer: Mapped["Referrer"] = relationship()
    specialist: Mapped["Specialist"] = relationship()
    examinee: Mapped["Examinee"] = relationship()
    created_by: Mapped["User | None"] = relationship()
    progress_entries: Mapped[list["BookingProgress"]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingProgress.created_at",
    )

    @validates("organization_id")
    def _validate_organization_id(self, key, value):
        current = self.__dict__.get("organization_id")
        if current is not None and value != current:
            raise ValueError("Booking organization cannot be changed")
        return value


class BookingProgress(Base):
    """
    Append-only progress history.

    created_at uses clock_timestamp() so entries written in one transaction
    still order strictly.
    """

    __tablename__ = "booking_progress"
    __table_args__ = (
        Index("idx_booking_progress_booking_created", "booking_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # e.g. {"impersonated_by": "<user id>", "source": "webhook"}
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("clock_timestamp()"), nullable=False
    )

    booking: Mapped["Booking"] = relationship(back_populates="progress_entries")
