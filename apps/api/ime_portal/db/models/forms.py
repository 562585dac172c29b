"""Intake form configuration: Acuity forms mapped onto examinee attributes."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ime_portal.db.base import Base


class AcuityForm(Base):
    """Intake form synced from Acuity (id is Acuity's)."""

    __tablename__ = "acuity_forms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(
        String(255), default="", server_default=text("''"), nullable=False
    )
    hidden: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"), nullable=False
    )


class AcuityAppointmentTypeForm(Base):
    """Which forms Acuity attaches to an appointment type."""

    __tablename__ = "acuity_appointment_type_forms"

    appointment_type_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("acuity_appointment_types.id", ondelete="CASCADE"),
        primary_key=True,
    )
    form_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("acuity_forms.id", ondelete="CASCADE"),
        primary_key=True,
    )


class AppForm(Base):
    """
    Portal-side configuration of an Acuity form.

    Only active forms contribute field mappings.
    """

    __tablename__ = "app_forms"
    __table_args__ = (Index("idx_app_forms_acuity_form", "acuity_form_id", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    acuity_form_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("acuity_forms.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=text("now()"), nullable=False)

    fields: Mapped[list["AppFormField"]] = relationship(
        back_populates="app_form", cascade="all, delete-orphan"
    )


class AppFormField(Base):
    """Maps one Acuity form field onto a canonical examinee attribute."""

    __tablename__ = "app_form_fields"
    __table_args__ = (
        UniqueConstraint("app_form_id", "acuity_field_id", name="uq_app_form_field"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    app_form_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("app_forms.id", ondelete="CASCADE"), nullable=False
    )
    acuity_field_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # ExamineeField value, or NULL for fields that only go to Acuity
    examinee_field_mapping: Mapped[str | None] = mapped_column(String(50), nullable=True)

    app_form: Mapped["AppForm"] = relationship(back_populates="fields")
