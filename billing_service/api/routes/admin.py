"""
Operator entrypoints for the reconciliation jobs and sweeps.
Called by the scheduler with the cron secret, or by an admin.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_service.core.config import Settings, get_settings
from billing_service.db.session import get_db
from billing_service.dependencies.auth import require_operator
from billing_service.schemas.reconciliation import JobReport
from billing_service.services import expiry_notifier, reconciliation
from billing_service.services.razorpay_client import get_provider

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/reconcile/renewals", response_model=JobReport)
def reconcile_renewals(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    logger.info("[Reconcile] renewals requested by %s", operator)
    return reconciliation.reconcile_renewals(db, provider, settings)


@router.post("/reconcile/validity", response_model=JobReport)
def reconcile_validity(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    settings: Settings = Depends(get_settings),
):
    logger.info("[Reconcile] validity requested by %s", operator)
    return reconciliation.reconcile_validity(db, settings)


@router.post("/reconcile/timestamps", response_model=JobReport)
def reconcile_timestamps(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    settings: Settings = Depends(get_settings),
):
    logger.info("[Reconcile] timestamps requested by %s", operator)
    return reconciliation.reconcile_timestamps(db, settings)


@router.post("/reconcile/installments", response_model=JobReport)
def reconcile_installments(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    logger.info("[Reconcile] installments requested by %s", operator)
    return reconciliation.reconcile_installments(db, provider, settings)


@router.post("/installments/expire", response_model=JobReport)
def expire_installments(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    logger.info("[Reconcile] installment expiry sweep requested by %s", operator)
    return reconciliation.expire_installments(db, provider, settings)


@router.post("/provider-operations/retry", response_model=JobReport)
def retry_provider_operations(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    logger.info("[Reconcile] cancellation retry requested by %s", operator)
    return reconciliation.retry_provider_cancellations(db, provider, settings)


@router.post("/notifications/expiry", response_model=JobReport)
def send_expiry_notifications(
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
    settings: Settings = Depends(get_settings),
):
    logger.info("[billing_email] expiry reminders requested by %s", operator)
    return expiry_notifier.send_expiry_reminders(db, settings)
