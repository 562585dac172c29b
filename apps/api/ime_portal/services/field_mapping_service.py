"""Examinee extraction from intake form fields.

Each appointment type has Acuity forms attached; active portal form configs
map individual Acuity field ids onto canonical examinee attributes. Submitted
field values are resolved through that table.

Extraction itself never rejects: it reports which required attributes are
missing and the caller picks the policy (placeholder or reject).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from ime_portal.db.enums import ExamineeField
from ime_portal.db.models import (
    AcuityAppointmentTypeForm,
    AppForm,
    AppFormField,
    Examinee,
)
from ime_portal.services.acuity_client import AcuityField
from ime_portal.services.errors import IncompleteExamineeDataError

REQUIRED_EXAMINEE_FIELDS: tuple[ExamineeField, ...] = (
    ExamineeField.FIRST_NAME,
    ExamineeField.LAST_NAME,
    ExamineeField.DATE_OF_BIRTH,
    ExamineeField.ADDRESS,
    ExamineeField.CONDITION,
    ExamineeField.CASE_TYPE,
)
OPTIONAL_EXAMINEE_FIELDS: tuple[ExamineeField, ...] = (
    ExamineeField.EMAIL,
    ExamineeField.PHONE_NUMBER,
    ExamineeField.AUTHORIZED_CONTACT,
)

POLICY_PLACEHOLDER = "placeholder"
POLICY_REJECT = "reject"


@dataclass
class ExtractionResult:
    values: dict[ExamineeField, str] = field(default_factory=dict)
    missing_required: list[ExamineeField] = field(default_factory=list)
    missing_optional: list[ExamineeField] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing_required


def get_field_mapping(db: Session, appointment_type_id: int) -> dict[int, ExamineeField]:
    """Acuity field id -> examinee attribute, from active forms on the appointment type."""
    rows = (
        db.query(AppFormField.acuity_field_id, AppFormField.examinee_field_mapping)
        .join(AppForm, AppForm.id == AppFormField.app_form_id)
        .join(
            AcuityAppointmentTypeForm,
            AcuityAppointmentTypeForm.form_id == AppForm.acuity_form_id,
        )
        .filter(
            AcuityAppointmentTypeForm.appointment_type_id == appointment_type_id,
            AppForm.is_active.is_(True),
            AppFormField.examinee_field_mapping.isnot(None),
        )
        .all()
    )
    mapping: dict[int, ExamineeField] = {}
    for field_id, attribute in rows:
        if ExamineeField.has_value(attribute):
            mapping[field_id] = ExamineeField(attribute)
    return mapping


def extract_examinee_fields(
    mapping: dict[int, ExamineeField],
    fields: Iterable[AcuityField],
) -> ExtractionResult:
    """Apply a field mapping; unmapped and empty values are dropped."""
    result = ExtractionResult()
    for submitted in fields:
        attribute = mapping.get(submitted.effective_id)
        value = (submitted.value or "").strip()
        if attribute is not None and value:
            result.values[attribute] = value

    result.missing_required = [f for f in REQUIRED_EXAMINEE_FIELDS if f not in result.values]
    result.missing_optional = [f for f in OPTIONAL_EXAMINEE_FIELDS if f not in result.values]
    return result


def extract(db: Session, appointment_type_id: int, fields: Iterable[AcuityField]) -> ExtractionResult:
    return extract_examinee_fields(get_field_mapping(db, appointment_type_id), fields)


def enforce_policy(result: ExtractionResult, policy: str) -> None:
    """Raise under the reject policy when required attributes are missing."""
    if policy == POLICY_REJECT and result.missing_required:
        raise IncompleteExamineeDataError([f.value for f in result.missing_required])


def build_examinee(
    result: ExtractionResult,
    referrer_id: UUID,
    *,
    default_email: str = "",
) -> Examinee:
    """Examinee row from extracted values; missing strings become placeholders."""
    values = result.values
    return Examinee(
        referrer_id=referrer_id,
        first_name=values.get(ExamineeField.FIRST_NAME, ""),
        last_name=values.get(ExamineeField.LAST_NAME, ""),
        date_of_birth=values.get(ExamineeField.DATE_OF_BIRTH, ""),
        address=values.get(ExamineeField.ADDRESS, ""),
        email=values.get(ExamineeField.EMAIL, default_email),
        phone_number=values.get(ExamineeField.PHONE_NUMBER, ""),
        authorized_contact=values.get(ExamineeField.AUTHORIZED_CONTACT, "").lower() == "yes",
        condition=values.get(ExamineeField.CONDITION, ""),
        case_type=values.get(ExamineeField.CASE_TYPE, ""),
    )
