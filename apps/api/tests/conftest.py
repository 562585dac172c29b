"""
Test configuration and fixtures.

Provides:
- Database session with savepoint (rollback after each test)
- Organization, user, specialist and intake-form fixtures
- A recording stand-in for the Acuity client
- HTTPX AsyncClient with session cookie and CSRF header
"""
import itertools
import os
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Disable rate limiting before the app is imported
os.environ["TESTING"] = "1"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ime_portal.core.booking_access import Actor, load_actor
from ime_portal.core.deps import COOKIE_NAME, get_acuity_client, get_db
from ime_portal.core.security import create_session_token
from ime_portal.db.base import Base
from ime_portal.db.enums import BookingStatus, BookingType, ExamineeField, OrgRole
from ime_portal.db.models import (
    AcuityAppointmentType,
    AcuityAppointmentTypeForm,
    AcuityForm,
    AppForm,
    AppFormField,
    Booking,
    Examinee,
    Membership,
    Organization,
    Referrer,
    Specialist,
    SpecialistAppointmentType,
    Team,
    User,
)
from ime_portal.db.session import engine
from ime_portal.main import app
from ime_portal.services import booking_progress_service
from ime_portal.services.acuity_client import AcuityAPIError, AcuityAppointment


def acuity_id() -> int:
    """Random Acuity-style integer id (calendar, type, form and appointment ids are unique)."""
    return random.randint(10_000_000, 2_000_000_000)


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

_schema_ready: bool | None = None


def _ensure_schema() -> bool:
    """Create extensions and tables once; False when PostgreSQL is unreachable."""
    global _schema_ready
    if _schema_ready is None:
        try:
            with engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS citext"))
                Base.metadata.create_all(conn)
            _schema_ready = True
        except OperationalError:
            _schema_ready = False
    return _schema_ready


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates a database session with savepoint for test isolation.

    The session joins the outer transaction through savepoints, so app code
    can commit() and rollback() without ending the test transaction.
    """
    if not _ensure_schema():
        pytest.skip("PostgreSQL not reachable at DATABASE_URL")

    connection = engine.connect()
    # Begin outer transaction that we'll rollback at end
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    # Rollback outer transaction - undoes all test changes
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    """Create a test organization with a default team."""
    org = Organization(
        id=uuid.uuid4(),
        name="Test Organization",
        slug=f"test-org-{uuid.uuid4().hex[:8]}",
    )
    db.add(org)
    db.flush()
    db.add(Team(id=uuid.uuid4(), organization_id=org.id, name="Default"))
    db.commit()
    return org


def make_user(db: Session, org: Organization | None = None, role: OrgRole | None = None, **kwargs) -> User:
    user = User(
        id=uuid.uuid4(),
        email=kwargs.pop("email", f"user-{uuid.uuid4().hex[:8]}@test.com"),
        display_name=kwargs.pop("display_name", "Test User"),
        **kwargs,
    )
    db.add(user)
    db.flush()
    if org is not None and role is not None:
        db.add(Membership(user_id=user.id, organization_id=org.id, role=role.value))
    db.commit()
    return user


@pytest.fixture(scope="function")
def test_user(db: Session, test_org: Organization) -> User:
    """Create a test user who owns test_org."""
    return make_user(db, test_org, OrgRole.OWNER, display_name="Owner User")


@pytest.fixture(scope="function")
def owner_actor(db: Session, test_user: User, test_org: Organization) -> Actor:
    return load_actor(db, test_user.id, active_org_id=test_org.id)


# =============================================================================
# Catalog Fixtures
# =============================================================================

SPECIALIST_LOCATION = {
    "streetAddress": "12 Main St",
    "suburb": "Fortitude Valley",
    "city": "Brisbane",
    "state": "QLD",
    "postalCode": "4006",
    "country": "Australia",
}


@pytest.fixture(scope="function")
def appointment_type(db: Session) -> AcuityAppointmentType:
    appt_type = AcuityAppointmentType(id=acuity_id(), name="IME Assessment", duration=60)
    db.add(appt_type)
    db.commit()
    return appt_type


@pytest.fixture(scope="function")
def specialist(db: Session, appointment_type: AcuityAppointmentType) -> Specialist:
    """Active in-person specialist offering appointment_type."""
    spec = Specialist(
        id=uuid.uuid4(),
        acuity_calendar_id=acuity_id(),
        name="Dr Jane Doe",
        slug=f"dr-jane-doe-{uuid.uuid4().hex[:8]}",
        specialty="Orthopaedics",
        location=dict(SPECIALIST_LOCATION),
        accepts_in_person=True,
        accepts_telehealth=True,
    )
    db.add(spec)
    db.flush()
    db.add(
        SpecialistAppointmentType(
            specialist_id=spec.id,
            appointment_type_id=appointment_type.id,
            appointment_mode=BookingType.IN_PERSON.value,
        )
    )
    db.commit()
    return spec


# Acuity field id for each examinee attribute in the intake_form fixture
INTAKE_FIELD_IDS: dict[ExamineeField, int] = {
    ExamineeField.FIRST_NAME: 101,
    ExamineeField.LAST_NAME: 102,
    ExamineeField.DATE_OF_BIRTH: 103,
    ExamineeField.EMAIL: 104,
    ExamineeField.PHONE_NUMBER: 105,
    ExamineeField.ADDRESS: 106,
    ExamineeField.AUTHORIZED_CONTACT: 107,
    ExamineeField.CONDITION: 108,
    ExamineeField.CASE_TYPE: 109,
}

COMPLETE_INTAKE_VALUES: dict[ExamineeField, str] = {
    ExamineeField.FIRST_NAME: "Sam",
    ExamineeField.LAST_NAME: "Smith",
    ExamineeField.DATE_OF_BIRTH: "1980-04-01",
    ExamineeField.EMAIL: "sam.smith@example.com",
    ExamineeField.PHONE_NUMBER: "0400 000 000",
    ExamineeField.ADDRESS: "1 Example Rd, Brisbane QLD 4000",
    ExamineeField.AUTHORIZED_CONTACT: "Yes",
    ExamineeField.CONDITION: "Lower back injury",
    ExamineeField.CASE_TYPE: "Workers compensation",
}


def intake_fields(values: dict[ExamineeField, str] | None = None) -> list[dict]:
    """Submitted fields as Acuity sends them."""
    values = COMPLETE_INTAKE_VALUES if values is None else values
    return [{"id": INTAKE_FIELD_IDS[attr], "value": value} for attr, value in values.items()]


@pytest.fixture(scope="function")
def intake_form(db: Session, appointment_type: AcuityAppointmentType) -> AppForm:
    """Active form attached to appointment_type mapping every examinee attribute."""
    form = AcuityForm(id=acuity_id(), name="Examinee details")
    db.add(form)
    db.flush()
    db.add(AcuityAppointmentTypeForm(appointment_type_id=appointment_type.id, form_id=form.id))
    app_form = AppForm(acuity_form_id=form.id, name="Examinee details")
    db.add(app_form)
    db.flush()
    for attribute, field_id in INTAKE_FIELD_IDS.items():
        db.add(
            AppFormField(
                app_form_id=app_form.id,
                acuity_field_id=field_id,
                examinee_field_mapping=attribute.value,
            )
        )
    db.commit()
    return app_form


# =============================================================================
# Booking Fixtures
# =============================================================================

# Distinct default slots; active bookings are unique per specialist and time
_slots = itertools.count()


def _next_slot() -> datetime:
    return datetime(2027, 1, 4, 9, 0, tzinfo=timezone.utc) + timedelta(hours=next(_slots))


def make_booking(
    db: Session,
    org: Organization,
    specialist: Specialist,
    *,
    created_by: User | None = None,
    referrer_user: User | None = None,
    examinee_first_name: str = "Sam",
    examinee_last_name: str = "Smith",
    examinee_email: str = "sam.smith@example.com",
    date_time: datetime | None = None,
    appointment_type_id: int = 1,
) -> Booking:
    """Insert a booking with its initial progress entry, bypassing Acuity."""
    referrer = Referrer(
        organization_id=org.id,
        user_id=referrer_user.id if referrer_user else None,
        first_name="Riley",
        last_name="Referrer",
        email=referrer_user.email if referrer_user else f"ref-{uuid.uuid4().hex[:6]}@firm.com",
    )
    db.add(referrer)
    db.flush()
    examinee = Examinee(
        referrer_id=referrer.id,
        first_name=examinee_first_name,
        last_name=examinee_last_name,
        date_of_birth="1980-04-01",
        address="1 Example Rd",
        email=examinee_email,
        condition="Back injury",
        case_type="WorkCover",
    )
    db.add(examinee)
    db.flush()
    booking = Booking(
        organization_id=org.id,
        created_by_id=created_by.id if created_by else None,
        referrer_id=referrer.id,
        specialist_id=specialist.id,
        examinee_id=examinee.id,
        status=BookingStatus.ACTIVE.value,
        type=BookingType.IN_PERSON.value,
        duration=60,
        location="12 Main St, Brisbane",
        date_time=date_time or _next_slot(),
        acuity_appointment_id=acuity_id(),
        acuity_appointment_type_id=appointment_type_id,
        acuity_calendar_id=specialist.acuity_calendar_id,
    )
    db.add(booking)
    db.flush()
    booking_progress_service.record_initial_progress(
        db, booking, created_by.id if created_by else None
    )
    db.commit()
    return booking


@pytest.fixture(scope="function")
def booking(db: Session, test_org: Organization, specialist: Specialist, test_user: User) -> Booking:
    return make_booking(db, test_org, specialist, created_by=test_user)


# =============================================================================
# Acuity Client Stand-in
# =============================================================================

@dataclass
class FakeAcuityClient:
    """
    Records calls; set error to make every mutating call fail with it.

    listed is what list_appointments returns; cancel_errors fails cancels per id.
    """

    error: AcuityAPIError | None = None
    next_id: int = field(default_factory=acuity_id)
    duration: int | None = 60
    calls: list[tuple[str, dict]] = field(default_factory=list)
    listed: list[AcuityAppointment] = field(default_factory=list)
    cancel_errors: dict[int, AcuityAPIError] = field(default_factory=dict)

    def _appointment(self, appointment_id: int, datetime_value: str, **extra) -> AcuityAppointment:
        return AcuityAppointment(
            id=appointment_id,
            datetime=datetime_value,
            duration=self.duration,
            appointmentTypeID=extra.get("appointment_type_id", 1),
            calendarID=extra.get("calendar_id") or 1,
            **{k: v for k, v in extra.items() if k in ("canceled", "noShow")},
        )

    async def create_appointment(self, **kwargs) -> AcuityAppointment:
        self.calls.append(("create", kwargs))
        if self.error:
            raise self.error
        return self._appointment(
            self.next_id,
            kwargs["datetime"],
            appointment_type_id=kwargs["appointment_type_id"],
            calendar_id=kwargs.get("calendar_id"),
        )

    async def reschedule_appointment(self, appointment_id: int, **kwargs) -> AcuityAppointment:
        self.calls.append(("reschedule", {"appointment_id": appointment_id, **kwargs}))
        if self.error:
            raise self.error
        return self._appointment(appointment_id, kwargs["datetime"])

    async def cancel_appointment(self, appointment_id: int, *, no_show: bool = False) -> AcuityAppointment:
        self.calls.append(("cancel", {"appointment_id": appointment_id, "no_show": no_show}))
        if self.error:
            raise self.error
        if appointment_id in self.cancel_errors:
            raise self.cancel_errors[appointment_id]
        return self._appointment(
            appointment_id, "2026-03-02T09:00:00+0000", canceled=True, noShow=no_show
        )

    async def list_appointments(self, **kwargs) -> list[AcuityAppointment]:
        self.calls.append(("list", kwargs))
        if self.error:
            raise self.error
        return list(self.listed)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture(scope="function")
def acuity() -> FakeAcuityClient:
    return FakeAcuityClient()


# =============================================================================
# Client Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    org: Organization
    token: str
    cookie_name: str = COOKIE_NAME


def session_token(user: User, org: Organization | None) -> str:
    return create_session_token(
        user_id=user.id,
        org_id=org.id if org else None,
        token_version=user.token_version,
    )


@pytest.fixture(scope="function")
def test_auth(test_user: User, test_org: Organization) -> TestAuth:
    """Create JWT token for test user."""
    return TestAuth(user=test_user, org=test_org, token=session_token(test_user, test_org))


def _override_dependencies(db: Session, acuity: FakeAcuityClient) -> None:
    def override_get_db():
        yield db

    async def override_get_acuity_client():
        yield acuity

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_acuity_client] = override_get_acuity_client


@pytest.fixture(scope="function")
async def client(db: Session, acuity: FakeAcuityClient) -> AsyncGenerator[AsyncClient, None]:
    """
    Create unauthenticated AsyncClient for testing public endpoints.
    """
    _override_dependencies(db, acuity)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    acuity: FakeAcuityClient,
    test_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create authenticated AsyncClient with JWT cookie and CSRF header.
    """
    _override_dependencies(db, acuity)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
        headers={"X-Requested-With": "XMLHttpRequest"},  # CSRF header
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Factory Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def user_factory(db: Session):
    """make_user bound to the test session: user_factory(org, role, **columns)."""
    def factory(org: Organization | None = None, role: OrgRole | None = None, **kwargs) -> User:
        return make_user(db, org, role, **kwargs)
    return factory


@pytest.fixture(scope="function")
def booking_factory(db: Session, test_org: Organization, specialist: Specialist):
    """make_booking defaulting to test_org and specialist."""
    def factory(**kwargs) -> Booking:
        org = kwargs.pop("org", test_org)
        spec = kwargs.pop("specialist", specialist)
        return make_booking(db, org, spec, **kwargs)
    return factory


@pytest.fixture(scope="function")
def intake_field_ids() -> dict[ExamineeField, int]:
    return dict(INTAKE_FIELD_IDS)


@pytest.fixture(scope="function")
def complete_fields() -> list[dict]:
    """Every examinee attribute submitted with a value."""
    return intake_fields()
