"""
Owner-initiated commands: checkout, activate, cancel, renew.

These write the Subscription Store directly. Provider cancels issued here are
best-effort and recorded through services.provider_saga; a failed remote
cancel never blocks the local state change.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from billing_service.core.config import Settings
from billing_service.core.errors import NotFoundError, SignatureError, ValidationError
from billing_service.core.plans import Plan, normalize_plan, valid_until_from
from billing_service.models.subscription import Subscription
from billing_service.services import billing_email
from billing_service.services.provider_saga import cancel_external
from billing_service.services.razorpay_client import verify_checkout_signature
from billing_service.services.subscription_store import (
    commit,
    get_or_create_subscription,
    get_subscription,
    upsert_owner,
)
from billing_service.services.weekly_installment import installment_valid_until, start_tracker
from billing_service.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    local_updated: bool
    provider_cancelled: bool
    subscription: Subscription


def parse_plan(value) -> Plan:
    try:
        plan = normalize_plan(value)
    except ValueError:
        raise ValidationError(f"Invalid plan: {value}")
    if plan is None:
        raise ValidationError("plan is required")
    return plan


def _anchor_validity(db: Session, subscription: Subscription, plan: Plan, now: datetime, settings: Settings) -> None:
    if plan == Plan.weekly_installment:
        tracker = start_tracker(db, subscription, now)
        subscription.valid_until = installment_valid_until(tracker)
    else:
        subscription.valid_until = valid_until_from(plan, now, settings)


def create_checkout(db: Session, provider, owner_id: str, email: Optional[str], plan_value, settings: Settings) -> dict:
    plan = parse_plan(plan_value)
    upsert_owner(db, owner_id, email)
    commit(db)
    external_id = provider.create_recurring_plan(plan, owner_id, email=email)
    return {"subscription_id": external_id, "key_id": provider.key_id, "plan": plan}


def activate(
    db: Session,
    provider,
    owner_id: str,
    plan_value,
    settings: Settings,
    external_id: Optional[str] = None,
    autopay: Optional[bool] = None,
    payment_id: Optional[str] = None,
    signature: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    now = now or utcnow()
    plan = parse_plan(plan_value)

    if payment_id or signature:
        if not (payment_id and signature and external_id):
            raise ValidationError("razorpay_payment_id, razorpay_signature and subscription id must be sent together")
        if not verify_checkout_signature(payment_id, external_id, signature, settings.RAZORPAY_KEY_SECRET):
            logger.warning("[Razorpay] Checkout signature mismatch for owner %s", owner_id)
            raise SignatureError("Invalid payment signature")

    upsert_owner(db, owner_id, email)
    subscription = get_or_create_subscription(db, owner_id)

    previous_external = subscription.external_subscription_id
    if previous_external and previous_external != external_id:
        cancel_external(db, provider, owner_id, previous_external, now)

    subscription.plan = plan
    subscription.is_active = True
    subscription.autopay_enabled = True if autopay is None else autopay
    subscription.external_subscription_id = external_id or None
    subscription.expiry_email_sent = None
    subscription.updated_at = now
    _anchor_validity(db, subscription, plan, now, settings)
    commit(db)
    db.refresh(subscription)

    logger.info(
        "Activated %s for owner %s until %s (external=%s)",
        plan.value, owner_id, subscription.valid_until, subscription.external_subscription_id,
    )
    billing_email.notify_owner(
        db,
        owner_id,
        billing_email.TEMPLATE_SUBSCRIPTION_ACTIVATED,
        {"plan": plan.value, "valid_until": subscription.valid_until},
        settings,
    )
    return subscription


def cancel(db: Session, provider, owner_id: str, settings: Settings, now: Optional[datetime] = None) -> CancelResult:
    now = now or utcnow()
    subscription = get_subscription(db, owner_id)
    if subscription is None:
        raise NotFoundError("No subscription found")

    provider_cancelled = False
    external_id = subscription.external_subscription_id
    if external_id:
        provider_cancelled = cancel_external(db, provider, owner_id, external_id, now)

    # Plan and external id are kept: renew reuses the plan, and late webhooks
    # for this external id must not reactivate it.
    subscription.is_active = False
    subscription.autopay_enabled = False
    subscription.updated_at = now
    commit(db)
    db.refresh(subscription)

    logger.info("Cancelled subscription for owner %s (provider_cancelled=%s)", owner_id, provider_cancelled)
    billing_email.notify_owner(
        db,
        owner_id,
        billing_email.TEMPLATE_SUBSCRIPTION_CANCELLED,
        {"plan": subscription.plan.value if subscription.plan else None},
        settings,
    )
    return CancelResult(local_updated=True, provider_cancelled=provider_cancelled, subscription=subscription)


def renew(db: Session, provider, owner_id: str, settings: Settings, now: Optional[datetime] = None) -> Subscription:
    """Re-anchor validity at now. Does not consult the provider's cycle state."""
    now = now or utcnow()
    subscription = get_subscription(db, owner_id)
    if subscription is None or subscription.plan is None:
        raise ValidationError("No existing subscription found to renew")

    external_id = subscription.external_subscription_id
    if external_id:
        cancel_external(db, provider, owner_id, external_id, now)

    plan = normalize_plan(subscription.plan)
    subscription.plan = plan
    subscription.is_active = True
    subscription.external_subscription_id = None
    subscription.expiry_email_sent = None
    subscription.updated_at = now
    _anchor_validity(db, subscription, plan, now, settings)
    commit(db)
    db.refresh(subscription)

    logger.info("Renewed %s for owner %s until %s", plan.value, owner_id, subscription.valid_until)
    return subscription
