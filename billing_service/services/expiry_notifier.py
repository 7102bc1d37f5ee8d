"""
Send-once reminders for subscriptions that expire in two to three days.

The `expiry_email_sent` gate is committed before the email goes out, so a
crash or retry after the commit can never produce a second reminder for the
same window. Activation and renewal clear the gate for the next window.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from billing_service.core.config import Settings
from billing_service.core.errors import BillingError, ConflictError
from billing_service.models.subscription import Subscription
from billing_service.services import billing_email
from billing_service.services.reconciliation import BatchReport, CHANGED_CONCURRENTLY
from billing_service.services.subscription_store import commit
from billing_service.utils.clock import utcnow

logger = logging.getLogger(__name__)

WINDOW_START = timedelta(days=2)
WINDOW_END = timedelta(days=3)


def due_for_reminder(db: Session, now: datetime) -> list[Subscription]:
    return (
        db.query(Subscription)
        .filter(
            Subscription.is_active.is_(True),
            Subscription.expiry_email_sent.is_(None),
            Subscription.valid_until >= now + WINDOW_START,
            Subscription.valid_until <= now + WINDOW_END,
        )
        .order_by(Subscription.valid_until)
        .all()
    )


def send_expiry_reminders(db: Session, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    report = BatchReport("expiry_notifications")

    for subscription in due_for_reminder(db, now):
        owner_id = subscription.owner_id
        params = {
            "plan": subscription.plan.value if subscription.plan else None,
            "valid_until": subscription.valid_until,
            "autopay_enabled": subscription.autopay_enabled,
        }
        subscription.expiry_email_sent = now
        try:
            commit(db)
        except ConflictError:
            report.skip(owner_id, CHANGED_CONCURRENTLY)
            continue
        except BillingError as e:
            report.error(owner_id, e.detail)
            logger.error("[billing_email] Could not set reminder gate for %s: %s", owner_id, e.detail)
            continue

        sent = billing_email.notify_owner(db, owner_id, billing_email.TEMPLATE_SUBSCRIPTION_EXPIRING, params, settings)
        report.fixed.append({"owner_id": owner_id, "valid_until": params["valid_until"].isoformat(), "sent": sent})

    report.finished_at = utcnow()
    logger.info("[billing_email] Expiry reminders: %s gated, %s skipped", len(report.fixed), len(report.skipped))
    return report.as_dict()
