from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_service.core.config import Settings, get_settings
from billing_service.db.session import get_db
from billing_service.dependencies.auth import Owner, get_current_owner
from billing_service.schemas.subscription import InstallmentStatusResponse
from billing_service.services import weekly_installment

router = APIRouter()


@router.get("/status", response_model=InstallmentStatusResponse)
def installment_status(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
    settings: Settings = Depends(get_settings),
):
    return weekly_installment.get_status(db, owner.id, settings)


@router.post("/downloads", response_model=InstallmentStatusResponse)
def consume_download(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
    settings: Settings = Depends(get_settings),
):
    """Count one download against this week's quota. 403 when nothing is available."""
    return weekly_installment.consume_download(db, owner.id, settings)
