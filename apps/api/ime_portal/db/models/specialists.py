"""Specialist and appointment-type catalog models."""

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
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ime_portal.db.base import Base

if TYPE_CHECKING:
    from ime_portal.db.models import User


class Specialist(Base):
    """
    Examining professional with an Acuity calendar.

    location is a JSON address:
    {streetAddress, suburb, city, state, postalCode, country}
    """

    __tablename__ = "specialists"
    __table_args__ = (
        CheckConstraint(
            "accepts_in_person OR accepts_telehealth",
            name="at_least_one_modality",
        ),
        Index("idx_specialists_user", "user_id"),
        Index("idx_specialists_active_position", "is_active", "position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    acuity_calendar_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    specialty: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    accepts_in_person: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    accepts_telehealth: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    position: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)

    user: Mapped["User | None"] = relationship(back_populates="specialists")
    appointment_types: Mapped[list["SpecialistAppointmentType"]] = relationship(
        back_populates="specialist", cascade="all, delete-orphan"
    )


class AcuityAppointmentType(Base):
    """Appointment type synced from Acuity (id is Acuity's)."""

    __tablename__ = "acuity_appointment_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(
        Text, default="", server_default=text("''"), nullable=False
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    category: Mapped[str] = mapped_column(
        String(255), default="", server_default=text("''"), nullable=False
    )
    active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"), nullable=False
    )


class SpecialistAppointmentType(Base):
    """Appointment type a specialist offers, tagged with its modality."""

    __tablename__ = "specialist_appointment_types"
    __table_args__ = (
        UniqueConstraint(
            "specialist_id",
            "appointment_type_id",
            name="uq_specialist_appointment_type",
        ),
        CheckConstraint(
            "appointment_mode IN ('in-person', 'telehealth')",
            name="appointment_mode_valid",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    specialist_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False
    )
    appointment_type_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("acuity_appointment_types.id", ondelete="CASCADE"),
        nullable=False,
    )
    appointment_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)

    specialist: Mapped["Specialist"] = relationship(back_populates="appointment_types")
    appointment_type: Mapped["AcuityAppointmentType"] = relationship()
