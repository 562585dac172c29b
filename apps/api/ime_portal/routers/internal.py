"""
Internal endpoints for scheduled/operator operations.

Protected by X-Internal-Secret header.
Call from external cron or an operator shell.
"""
from datetime import date

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ime_portal.core.config import settings
from ime_portal.core.deps import get_acuity_client, get_db
from ime_portal.core.security import verify_secret
from ime_portal.schemas.booking import ReconciliationRead
from ime_portal.services import reconciliation_service
from ime_portal.services.acuity_client import AcuityAPIError, AcuityClient


router = APIRouter(prefix="/internal", tags=["internal"])


def verify_internal_secret(x_internal_secret: str | None = Header(None)):
    """Verify the internal secret header."""
    if not settings.INTERNAL_SECRET:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not verify_secret(x_internal_secret, settings.INTERNAL_SECRET):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


class ReconciliationRequest(BaseModel):
    min_date: date
    max_date: date
    cancel: bool = Field(False, description="Cancel orphans at Acuity")


@router.post(
    "/reconciliation/orphans",
    response_model=ReconciliationRead,
    dependencies=[Depends(verify_internal_secret)],
)
async def reconcile_orphans(
    data: ReconciliationRequest,
    db: Session = Depends(get_db),
    client: AcuityClient = Depends(get_acuity_client),
):
    """List (and optionally cancel) Acuity appointments with no local booking."""
    try:
        report = await reconciliation_service.reconcile(
            db, client, data.min_date, data.max_date, cancel=data.cancel
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AcuityAPIError as e:
        raise HTTPException(status_code=502, detail={"message": str(e), "code": e.code})

    return ReconciliationRead(
        min_date=report.min_date.isoformat(),
        max_date=report.max_date.isoformat(),
        checked=report.checked,
        orphan_ids=[a.id for a in report.orphans],
        cancelled=report.cancelled,
        failed=report.failed,
    )
