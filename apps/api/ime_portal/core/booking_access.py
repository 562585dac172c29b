"""Booking access control - who may view or mutate a booking.

Access is an ordered list of grant rules evaluated first-match-wins:

1. Platform admin
2. The booking's referrer account, or the specialist of record
3. Owner/manager membership in the booking's organization
4. Otherwise deny

Team-scoped visibility is not modelled yet; team leads fall through to rule 4
unless another rule grants access.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, NamedTuple
from uuid import UUID

from sqlalchemy.orm import Session

from ime_portal.db.enums import OrgRole, ROLES_ORG_WIDE_BOOKING_ACCESS
from ime_portal.db.models import Booking, Membership, Referrer, Specialist, User


# =============================================================================
# Facts
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """Everything the rules need to know about the caller."""

    user_id: UUID
    is_platform_admin: bool = False
    # organization_id -> role value
    org_roles: dict[UUID, str] = field(default_factory=dict)
    # Specialist records linked to this user account
    specialist_ids: frozenset[UUID] = frozenset()
    active_org_id: UUID | None = None
    impersonated_by: UUID | None = None

    def role_in(self, org_id: UUID | None) -> str | None:
        if org_id is None:
            return None
        return self.org_roles.get(org_id)


@dataclass(frozen=True)
class BookingFacts:
    """The slice of a booking the rules inspect."""

    organization_id: UUID
    specialist_id: UUID
    referrer_user_id: UUID | None = None
    created_by_id: UUID | None = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingFacts":
        return cls(
            organization_id=booking.organization_id,
            specialist_id=booking.specialist_id,
            referrer_user_id=booking.referrer.user_id if booking.referrer else None,
            created_by_id=booking.created_by_id,
        )


# =============================================================================
# Rules
# =============================================================================

class AccessRule(NamedTuple):
    name: str
    grants: Callable[[Actor, BookingFacts], bool]


def _is_platform_admin(actor: Actor, booking: BookingFacts) -> bool:
    return actor.is_platform_admin


def _is_referrer_or_specialist(actor: Actor, booking: BookingFacts) -> bool:
    # The creator books on behalf of the referrer and counts as one
    if booking.created_by_id is not None and booking.created_by_id == actor.user_id:
        return True
    if booking.referrer_user_id is not None and booking.referrer_user_id == actor.user_id:
        return True
    return booking.specialist_id in actor.specialist_ids


def _is_org_owner_or_manager(actor: Actor, booking: BookingFacts) -> bool:
    role = actor.role_in(booking.organization_id)
    return role in {r.value for r in ROLES_ORG_WIDE_BOOKING_ACCESS}


BOOKING_ACCESS_RULES: tuple[AccessRule, ...] = (
    AccessRule("platform_admin", _is_platform_admin),
    AccessRule("referrer_or_specialist_of_record", _is_referrer_or_specialist),
    AccessRule("org_owner_or_manager", _is_org_owner_or_manager),
)


class AccessDecision(NamedTuple):
    allowed: bool
    rule: str | None  # name of the granting rule


def evaluate_access(actor: Actor, booking: BookingFacts) -> AccessDecision:
    """Return the first rule that grants access, or a denial."""
    for rule in BOOKING_ACCESS_RULES:
        if rule.grants(actor, booking):
            return AccessDecision(True, rule.name)
    return AccessDecision(False, None)


def can_access(actor: Actor, booking: BookingFacts) -> bool:
    return evaluate_access(actor, booking).allowed


def can_mutate_progress(actor: Actor, booking: BookingFacts) -> bool:
    """
    Progress changes additionally bar organization specialists from other
    specialists' bookings.
    """
    if not can_access(actor, booking):
        return False
    role = actor.role_in(actor.active_org_id)
    if role == OrgRole.SPECIALIST.value and booking.specialist_id not in actor.specialist_ids:
        return False
    return True


# =============================================================================
# Scopes (which list query to run)
# =============================================================================

@dataclass(frozen=True)
class AdminScope:
    pass


@dataclass(frozen=True)
class OrganizationScope:
    organization_id: UUID


@dataclass(frozen=True)
class SpecialistScope:
    specialist_ids: frozenset[UUID]


@dataclass(frozen=True)
class ReferrerScope:
    user_id: UUID


BookingScope = AdminScope | OrganizationScope | SpecialistScope | ReferrerScope


def resolve_scope(actor: Actor) -> BookingScope:
    """
    Pick the widest visibility the actor holds.

    Precedence: admin, owner/manager of the active organization, specialist,
    referrer.
    """
    if actor.is_platform_admin:
        return AdminScope()
    role = actor.role_in(actor.active_org_id)
    if actor.active_org_id and role in {r.value for r in ROLES_ORG_WIDE_BOOKING_ACCESS}:
        return OrganizationScope(actor.active_org_id)
    if actor.specialist_ids:
        return SpecialistScope(actor.specialist_ids)
    return ReferrerScope(actor.user_id)


# =============================================================================
# Loading
# =============================================================================

def load_actor(
    db: Session,
    user_id: UUID,
    *,
    active_org_id: UUID | None = None,
    impersonated_by: UUID | None = None,
) -> Actor:
    """Build an Actor from the user's admin flag, memberships and specialist links."""
    user = db.query(User).filter(User.id == user_id).first()
    memberships = db.query(Membership).filter(Membership.user_id == user_id).all()
    specialist_ids = (
        db.query(Specialist.id).filter(Specialist.user_id == user_id).all()
    )
    return Actor(
        user_id=user_id,
        is_platform_admin=bool(user and user.is_platform_admin),
        org_roles={m.organization_id: m.role for m in memberships},
        specialist_ids=frozenset(row[0] for row in specialist_ids),
        active_org_id=active_org_id,
        impersonated_by=impersonated_by,
    )


def load_booking_facts(db: Session, booking_id: UUID) -> BookingFacts | None:
    row = (
        db.query(
            Booking.organization_id,
            Booking.specialist_id,
            Referrer.user_id,
            Booking.created_by_id,
        )
        .join(Referrer, Referrer.id == Booking.referrer_id)
        .filter(Booking.id == booking_id)
        .first()
    )
    if not row:
        return None
    return BookingFacts(
        organization_id=row[0],
        specialist_id=row[1],
        referrer_user_id=row[2],
        created_by_id=row[3],
    )
