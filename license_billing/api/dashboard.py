"""Dashboard summary route."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from license_billing.api.deps import get_db, require_caller_email
from license_billing.services.dashboard import build_dashboard

router = APIRouter(tags=["dashboard"])


@router.get("/dashboard")
def get_dashboard(
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
) -> dict:
    try:
        return build_dashboard(db, email)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
