"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from ime_portal.db.enums import OrgRole


class TokenPayload(BaseModel):
    """Decoded JWT payload structure."""
    sub: UUID  # user_id
    org_id: UUID | None = None
    token_version: int
    impersonated_by: UUID | None = None


class UserSession(BaseModel):
    """
    Full session context for authenticated requests.

    Returned by the get_current_session dependency. org_role is the role in
    the active organization, None when the user has no membership there.
    """
    user_id: UUID
    org_id: UUID | None = None
    org_role: OrgRole | None = None
    is_platform_admin: bool = False
    email: str
    display_name: str
    impersonated_by: UUID | None = None
