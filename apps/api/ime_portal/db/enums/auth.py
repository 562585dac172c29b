"""Tenancy and membership enums."""

from enum import Enum


class OrgRole(str, Enum):
    """
    Organization membership roles.

    - OWNER / MANAGER: see every booking in the organization
    - TEAM_LEAD: team grouping only (no extra booking visibility yet)
    - SPECIALIST: examining professional's account
    - MEMBER: default role (referrers and staff)
    """

    OWNER = "owner"
    MANAGER = "manager"
    TEAM_LEAD = "team_lead"
    SPECIALIST = "specialist"
    MEMBER = "member"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


# Roles granted organization-wide booking access
ROLES_ORG_WIDE_BOOKING_ACCESS = frozenset({OrgRole.OWNER, OrgRole.MANAGER})
