"""
Recorded provider cancellations.

Intent is committed before the remote call; the outcome is left on the
session for the caller to commit together with its own state change.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from billing_service.core.errors import ProviderError
from billing_service.models.provider_operation import (
    OPERATION_CANCEL,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCEEDED,
    ProviderOperation,
)
from billing_service.services.subscription_store import commit

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
PENDING_GRACE = timedelta(minutes=10)


def record_intent(db: Session, owner_id: str, external_id: str, now: datetime) -> ProviderOperation:
    op = ProviderOperation(
        owner_id=owner_id,
        operation=OPERATION_CANCEL,
        external_id=external_id,
        status=STATUS_PENDING,
        attempts=0,
        created_at=now,
    )
    db.add(op)
    commit(db)
    return op


def attempt_cancel(provider, op: ProviderOperation, now: datetime) -> bool:
    """Call the provider and record the outcome on `op` (not committed)."""
    op.attempts = (op.attempts or 0) + 1
    try:
        provider.cancel_recurring_plan(op.external_id, immediate=True)
    except ProviderError as e:
        op.status = STATUS_FAILED
        op.last_error = str(e.detail)
        logger.warning(
            "[Razorpay] Cancel of %s for owner %s failed (attempt %s): %s",
            op.external_id, op.owner_id, op.attempts, e.detail,
        )
        return False
    op.status = STATUS_SUCCEEDED
    op.last_error = None
    op.completed_at = now
    return True


def cancel_external(db: Session, provider, owner_id: str, external_id: str, now: datetime) -> bool:
    """Best-effort immediate cancel. Never raises on provider failure."""
    op = record_intent(db, owner_id, external_id, now)
    return attempt_cancel(provider, op, now)


def retry_candidates(db: Session, now: datetime) -> list[ProviderOperation]:
    stale_pending = now - PENDING_GRACE
    return [
        op
        for op in db.query(ProviderOperation)
        .filter(ProviderOperation.operation == OPERATION_CANCEL)
        .filter(ProviderOperation.status.in_([STATUS_FAILED, STATUS_PENDING]))
        .filter(ProviderOperation.attempts < MAX_ATTEMPTS)
        .order_by(ProviderOperation.created_at)
        .all()
        if op.status == STATUS_FAILED or op.created_at <= stale_pending
    ]
