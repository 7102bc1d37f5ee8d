"""
Razorpay webhook ingestion.

Flow: verify HMAC over the raw body -> parse -> dedup on event id -> classify
by payload shape -> apply -> record the event id in the same commit.
Notifications go out only after that commit and never undo it.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from billing_service.core.config import Settings
from billing_service.core.errors import SignatureError, ValidationError
from billing_service.core.plans import Plan, normalize_plan, plan_from_provider, valid_until_from
from billing_service.models.purchase import Purchase
from billing_service.models.subscription import Subscription
from billing_service.models.webhook_event import ProcessedWebhookEvent
from billing_service.services import billing_email
from billing_service.services.razorpay_client import verify_webhook_signature
from billing_service.services.subscription_store import (
    commit,
    find_by_external_id,
    get_or_create_subscription,
    get_subscription,
)
from billing_service.services.weekly_installment import (
    get_tracker,
    installment_valid_until,
    mark_week_paid,
    start_tracker,
    week_in_progress,
)
from billing_service.utils.clock import utcnow

logger = logging.getLogger(__name__)

ACTIVATION_EVENTS = {"subscription.activated", "invoice.paid", "invoice.payment_succeeded"}
FAILURE_EVENTS = {"subscription.cancelled", "payment.failed", "invoice.payment_failed"}


class EventEntities:
    """The three entities a Razorpay event may carry, with the lookups shared by every handler."""

    def __init__(self, event: str, payload: dict):
        self.event = event
        payload = payload or {}
        self.subscription = (payload.get("subscription") or {}).get("entity") or {}
        self.invoice = (payload.get("invoice") or {}).get("entity") or {}
        self.payment = (payload.get("payment") or {}).get("entity") or {}

    @property
    def owner_from_notes(self) -> Optional[str]:
        for entity in (self.subscription, self.invoice, self.payment):
            owner_id = (entity.get("notes") or {}).get("user_id")
            if owner_id:
                return str(owner_id)
        return None

    @property
    def external_id(self) -> Optional[str]:
        return (
            self.subscription.get("id")
            or self.invoice.get("subscription_id")
            or self.payment.get("subscription_id")
        )

    @property
    def notes(self) -> dict:
        return self.subscription.get("notes") or self.invoice.get("notes") or {}

    @property
    def provider_plan_id(self) -> Optional[str]:
        return self.subscription.get("plan_id") or self.invoice.get("plan_id")

    def is_subscription_linked(self) -> bool:
        # A one-time payment carries neither an invoice nor a subscription.
        return bool(
            self.subscription.get("id")
            or self.invoice.get("subscription_id")
            or self.payment.get("invoice_id")
            or self.payment.get("subscription_id")
            or self.event == "invoice.payment_failed"
        )


def parse_event(raw_body: bytes, signature: Optional[str], settings: Settings) -> dict:
    if not verify_webhook_signature(raw_body, signature, settings.RAZORPAY_WEBHOOK_SECRET):
        logger.warning("[Razorpay webhook] Signature verification failed; event rejected")
        raise SignatureError("Invalid webhook signature")
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Invalid event body")
    return data


def process_webhook(
    db: Session,
    raw_body: bytes,
    signature: Optional[str],
    event_id_header: Optional[str],
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    data = parse_event(raw_body, signature, settings)

    event_id = event_id_header or data.get("id")
    if not event_id:
        raise ValidationError("Missing event id")
    event_type = data.get("event") or ""

    if db.get(ProcessedWebhookEvent, event_id) is not None:
        logger.info("[Razorpay webhook] Duplicate event %s (%s) ignored", event_id, event_type)
        return {"status": "ok", "duplicate": True}

    entities = EventEntities(event_type, data.get("payload"))
    logger.info("[Razorpay webhook] event=%s id=%s external=%s", event_type, event_id, entities.external_id)

    notification = None
    result = {"status": "ok"}
    linked = entities.is_subscription_linked()
    if event_type in ACTIVATION_EVENTS and linked:
        result["action"], notification = _apply_activation(db, entities, settings, now)
    elif event_type in FAILURE_EVENTS and linked:
        result["action"], notification = _apply_deactivation(db, entities, now)
    elif event_type in ("payment.captured", "payment.failed") and not linked:
        result["action"] = _apply_purchase(db, entities, "paid" if event_type == "payment.captured" else "failed")
    else:
        result["action"] = "ignored"

    db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type or "unknown", received_at=now))
    commit(db)

    if notification:
        owner_id, template, params = notification
        billing_email.notify_owner(db, owner_id, template, params, settings)
    return result


def _resolve_subscription(db: Session, entities: EventEntities) -> tuple[Optional[str], Optional[Subscription]]:
    owner_id = entities.owner_from_notes
    subscription = get_subscription(db, owner_id) if owner_id else None
    if subscription is None:
        subscription = find_by_external_id(db, entities.external_id)
        if subscription is not None and not owner_id:
            owner_id = subscription.owner_id
    return owner_id, subscription


def _apply_activation(db: Session, entities: EventEntities, settings: Settings, now: datetime):
    owner_id, existing = _resolve_subscription(db, entities)
    if not owner_id:
        logger.warning("[Razorpay webhook] %s: no owner for external id %s", entities.event, entities.external_id)
        return "unresolved_owner", None

    external_id = entities.external_id
    if (
        existing is not None
        and not existing.is_active
        and not existing.autopay_enabled
        and existing.external_subscription_id
        and existing.external_subscription_id == external_id
    ):
        logger.info("[Razorpay webhook] Owner %s cancelled %s; not reactivating", owner_id, external_id)
        return "skipped_cancelled", None

    plan = plan_from_provider(entities.provider_plan_id, settings, entities.notes)
    if plan is None and existing is not None and existing.plan is not None:
        plan = normalize_plan(existing.plan)
    plan = plan or Plan.monthly

    was_active = bool(existing is not None and existing.is_active)
    same_external = bool(existing is not None and existing.external_subscription_id == external_id)
    subscription = existing or get_or_create_subscription(db, owner_id)

    subscription.plan = plan
    subscription.is_active = True
    subscription.autopay_enabled = True
    subscription.external_subscription_id = external_id or subscription.external_subscription_id
    subscription.updated_at = now

    if plan == Plan.weekly_installment:
        tracker = get_tracker(db, subscription) if subscription.id is not None else None
        # Same provider subscription keeps its anchor, even after a failed charge deactivated it.
        if tracker is not None and same_external:
            week = week_in_progress(tracker.week_start_date, now)
            if mark_week_paid(tracker, week, now):
                logger.info("[Installments] Week %s paid for owner %s", week, owner_id)
        else:
            tracker = start_tracker(db, subscription, now)
        subscription.valid_until = installment_valid_until(tracker)
    else:
        subscription.valid_until = valid_until_from(plan, now, settings)
    subscription.expiry_email_sent = None

    params = {"plan": plan.value, "valid_until": subscription.valid_until}
    if not was_active:
        template = billing_email.TEMPLATE_SUBSCRIPTION_ACTIVATED
        action = "activated"
    else:
        template = billing_email.TEMPLATE_PAYMENT_RECEIVED if entities.event == "invoice.paid" else None
        action = "renewed"
    logger.info(
        "[Razorpay webhook] %s owner %s plan=%s valid_until=%s",
        action, owner_id, plan.value, subscription.valid_until,
    )
    return action, (owner_id, template, params) if template else None


def _apply_deactivation(db: Session, entities: EventEntities, now: datetime):
    owner_id, subscription = _resolve_subscription(db, entities)
    if subscription is None:
        logger.warning("[Razorpay webhook] %s: no local subscription for %s", entities.event, entities.external_id)
        return "unresolved_owner", None

    # Autopay is left as-is: a failed charge may still be retried next cycle.
    was_active = subscription.is_active
    subscription.is_active = False
    subscription.updated_at = now
    logger.info(
        "[Razorpay webhook] Deactivated owner %s on %s (plan kept: %s)",
        subscription.owner_id, entities.event, subscription.plan,
    )
    if not was_active:
        return "deactivated", None
    params = {"plan": subscription.plan.value if subscription.plan else None}
    return "deactivated", (subscription.owner_id, billing_email.TEMPLATE_SUBSCRIPTION_CANCELLED, params)


def _apply_purchase(db: Session, entities: EventEntities, new_status: str) -> str:
    payment = entities.payment
    purchase_id = (payment.get("notes") or {}).get("purchase_id")
    order_id = payment.get("order_id")

    purchase = None
    if purchase_id:
        purchase = db.get(Purchase, str(purchase_id))
    if purchase is None and order_id:
        purchase = db.query(Purchase).filter(Purchase.razorpay_order_id == order_id).first()
    if purchase is None:
        logger.info("[Razorpay webhook] No purchase for payment %s (order %s)", payment.get("id"), order_id)
        return "ignored"

    purchase.status = new_status
    if order_id and not purchase.razorpay_order_id:
        purchase.razorpay_order_id = order_id
    logger.info("[Razorpay webhook] Purchase %s marked %s", purchase.id, new_status)
    return f"purchase_{new_status}"
