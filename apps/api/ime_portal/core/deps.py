"""FastAPI dependencies for authentication, database access and the scheduler client."""

from typing import AsyncGenerator, Generator

import jwt
from fastapi import Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ime_portal.core.security import decode_session_token
from ime_portal.db.session import SessionLocal


# Cookie and header names
COOKIE_NAME = "ime_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Get authenticated user from session cookie.

    Validates:
    - Session cookie exists
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        HTTPException 401: Authentication failed
    """
    from ime_portal.db.models import User
    from ime_portal.schemas.auth import TokenPayload

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = TokenPayload.model_validate(decode_session_token(token))
    except (jwt.InvalidTokenError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.query(User).filter(User.id == payload.sub).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account disabled")

    if user.token_version != payload.token_version:
        raise HTTPException(status_code=401, detail="Session revoked")

    request.state.token_payload = payload
    return user


def get_current_session(
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Get full session context: user, active organization role, admin flag.

    This is the PRIMARY auth dependency for booking endpoints. A missing
    membership is not an error: referrers and specialists may act without an
    organization role.

    Raises:
        HTTPException 401: Not authenticated
        HTTPException 403: Unknown membership role
    """
    from ime_portal.db.enums import OrgRole
    from ime_portal.db.models import Membership
    from ime_portal.schemas.auth import UserSession

    user = get_current_user(request, db)
    payload = request.state.token_payload

    org_role = None
    if payload.org_id:
        membership = db.query(Membership).filter(
            Membership.user_id == user.id,
            Membership.organization_id == payload.org_id,
        ).first()
        if membership:
            if not OrgRole.has_value(membership.role):
                raise HTTPException(
                    status_code=403,
                    detail=f"Unknown role '{membership.role}'. Contact administrator."
                )
            org_role = OrgRole(membership.role)

    return UserSession(
        user_id=user.id,
        org_id=payload.org_id,
        org_role=org_role,
        is_platform_admin=user.is_platform_admin,
        email=user.email,
        display_name=user.display_name,
        impersonated_by=payload.impersonated_by,
    )


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'"
        )


async def get_acuity_client() -> AsyncGenerator:
    """Scheduler client dependency (overridden in tests)."""
    from ime_portal.services.acuity_client import AcuityClient

    async with AcuityClient() as client:
        yield client


def get_actor(
    request: Request,
    db: Session = Depends(get_db),
):
    """Booking access facts for the current session (memberships, specialist links)."""
    from ime_portal.core.booking_access import load_actor

    session = get_current_session(request, db)
    return load_actor(
        db,
        session.user_id,
        active_org_id=session.org_id,
        impersonated_by=session.impersonated_by,
    )
