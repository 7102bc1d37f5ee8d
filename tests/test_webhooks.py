import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from billing_service.core.errors import SignatureError, ValidationError
from billing_service.core.plans import Plan
from billing_service.models import ProcessedWebhookEvent, Purchase, User, WeeklyInstallmentTracker
from billing_service.services.razorpay_client import verify_webhook_signature
from billing_service.services.subscription_store import get_subscription
from billing_service.services.webhook_processor import process_webhook
from tests.conftest import NOW

SECRET = "whsec_test"


def _sign(raw: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def _event(event, event_id="evt_1", subscription=None, invoice=None, payment=None):
    payload = {}
    if subscription is not None:
        payload["subscription"] = {"entity": subscription}
    if invoice is not None:
        payload["invoice"] = {"entity": invoice}
    if payment is not None:
        payload["payment"] = {"entity": payment}
    return json.dumps({"entity": "event", "id": event_id, "event": event, "payload": payload}).encode()


def _deliver(db_session, settings, raw, now=NOW, event_id_header=None, signature=None):
    return process_webhook(
        db_session, raw, signature or _sign(raw), event_id_header, settings, now=now
    )


def test_verify_webhook_signature():
    raw = b'{"event":"invoice.paid"}'
    assert verify_webhook_signature(raw, _sign(raw), SECRET) is True
    assert verify_webhook_signature(raw + b" ", _sign(raw), SECRET) is False
    assert verify_webhook_signature(raw, None, SECRET) is False
    assert verify_webhook_signature(raw, _sign(raw), "") is False


def test_bad_signature_is_rejected_without_changes(db_session, settings):
    raw = _event("subscription.activated", subscription={"id": "sub_1", "notes": {"user_id": "owner-1"}})
    with pytest.raises(SignatureError):
        _deliver(db_session, settings, raw, signature=_sign(raw, "wrong"))
    assert get_subscription(db_session, "owner-1") is None
    assert db_session.query(ProcessedWebhookEvent).count() == 0


def test_missing_event_id_is_rejected(db_session, settings):
    raw = json.dumps({"event": "invoice.paid", "payload": {}}).encode()
    with pytest.raises(ValidationError):
        _deliver(db_session, settings, raw)


def test_activation_creates_subscription(db_session, settings):
    raw = _event(
        "subscription.activated",
        subscription={"id": "sub_1", "plan_id": "plan_yearly_1", "notes": {"user_id": "owner-1"}},
    )

    result = _deliver(db_session, settings, raw)

    assert result == {"status": "ok", "action": "activated"}
    sub = get_subscription(db_session, "owner-1")
    assert sub.is_active is True
    assert sub.autopay_enabled is True
    assert sub.plan == Plan.yearly
    assert sub.external_subscription_id == "sub_1"
    assert sub.valid_until == NOW + timedelta(days=365)


def test_duplicate_delivery_does_not_extend_twice(db_session, settings, make_subscription):
    make_subscription(external_subscription_id="sub_1", valid_until=NOW + timedelta(days=2))
    raw = _event("invoice.paid", event_id="evt_renew", invoice={"subscription_id": "sub_1"})

    _deliver(db_session, settings, raw)
    first = get_subscription(db_session, "owner-1").valid_until
    again = _deliver(db_session, settings, raw, now=NOW + timedelta(hours=1))

    assert again == {"status": "ok", "duplicate": True}
    assert get_subscription(db_session, "owner-1").valid_until == first == NOW + timedelta(days=30)


def test_event_id_header_takes_precedence(db_session, settings):
    raw = _event("payment.authorized", event_id="evt_body")
    _deliver(db_session, settings, raw, event_id_header="evt_header")
    assert db_session.get(ProcessedWebhookEvent, "evt_header") is not None
    assert db_session.get(ProcessedWebhookEvent, "evt_body") is None


def test_plan_falls_back_to_stored_then_monthly(db_session, settings, make_subscription):
    make_subscription(plan="yearly", external_subscription_id="sub_1")
    raw = _event("invoice.paid", invoice={"subscription_id": "sub_1", "plan_id": "plan_Abc"})
    _deliver(db_session, settings, raw)
    assert get_subscription(db_session, "owner-1").plan == Plan.yearly

    raw = _event("subscription.activated", event_id="evt_2", subscription={"id": "sub_9", "notes": {"user_id": "owner-2"}})
    _deliver(db_session, settings, raw)
    assert get_subscription(db_session, "owner-2").plan == Plan.monthly


def test_owner_resolved_by_external_id(db_session, settings, make_subscription):
    make_subscription(owner_id="owner-7", external_subscription_id="sub_7", valid_until=NOW)
    raw = _event("invoice.payment_succeeded", invoice={"subscription_id": "sub_7"})
    result = _deliver(db_session, settings, raw)
    assert result["action"] == "renewed"
    assert get_subscription(db_session, "owner-7").valid_until == NOW + timedelta(days=30)


def test_unresolvable_owner_is_acknowledged(db_session, settings):
    raw = _event("invoice.paid", invoice={"subscription_id": "sub_unknown"})
    result = _deliver(db_session, settings, raw)
    assert result["action"] == "unresolved_owner"
    assert db_session.get(ProcessedWebhookEvent, "evt_1") is not None


def test_owner_cancelled_subscription_is_not_reactivated(db_session, settings, make_subscription):
    make_subscription(
        external_subscription_id="sub_1", is_active=False, autopay_enabled=False, valid_until=NOW
    )
    raw = _event("invoice.paid", invoice={"subscription_id": "sub_1", "notes": {"user_id": "owner-1"}})

    result = _deliver(db_session, settings, raw)

    assert result["action"] == "skipped_cancelled"
    sub = get_subscription(db_session, "owner-1")
    assert sub.is_active is False
    assert sub.valid_until == NOW


def test_one_time_payment_is_not_treated_as_subscription(db_session, settings, make_subscription):
    make_subscription(valid_until=NOW + timedelta(days=3))
    db_session.add(Purchase(id="pur_1", owner_id="owner-1", status="pending"))
    db_session.commit()
    raw = _event(
        "payment.failed",
        payment={"id": "pay_1", "order_id": "order_1", "notes": {"user_id": "owner-1", "purchase_id": "pur_1"}},
    )

    result = _deliver(db_session, settings, raw)

    assert result["action"] == "purchase_failed"
    assert db_session.get(Purchase, "pur_1").status == "failed"
    assert get_subscription(db_session, "owner-1").is_active is True


def test_captured_payment_marks_purchase_by_order_id(db_session, settings):
    db_session.add(Purchase(id="pur_2", razorpay_order_id="order_2", status="pending"))
    db_session.commit()
    raw = _event("payment.captured", payment={"id": "pay_2", "order_id": "order_2"})
    assert _deliver(db_session, settings, raw)["action"] == "purchase_paid"
    assert db_session.get(Purchase, "pur_2").status == "paid"


def test_subscription_payment_failure_keeps_autopay(db_session, settings, make_subscription):
    make_subscription(plan="yearly", external_subscription_id="sub_1")
    raw = _event("payment.failed", payment={"id": "pay_3", "invoice_id": "inv_1", "subscription_id": "sub_1"})

    result = _deliver(db_session, settings, raw)

    assert result["action"] == "deactivated"
    sub = get_subscription(db_session, "owner-1")
    assert sub.is_active is False
    assert sub.autopay_enabled is True
    assert sub.plan == Plan.yearly


def test_invoice_payment_failed_is_always_subscription_linked(db_session, settings, make_subscription):
    make_subscription(external_subscription_id="sub_1")
    raw = _event("invoice.payment_failed", invoice={"notes": {"user_id": "owner-1"}})
    assert _deliver(db_session, settings, raw)["action"] == "deactivated"


def test_subscription_cancelled_event(db_session, settings, make_subscription):
    make_subscription(external_subscription_id="sub_1")
    raw = _event("subscription.cancelled", subscription={"id": "sub_1"})
    _deliver(db_session, settings, raw)
    assert get_subscription(db_session, "owner-1").is_active is False


def test_weekly_installment_renewal_marks_week_paid(db_session, settings, make_subscription):
    sub = make_subscription(
        plan="weekly_installment", external_subscription_id="sub_w", valid_until=NOW + timedelta(days=7)
    )
    db_session.add(WeeklyInstallmentTracker(
        subscription_id=sub.id,
        owner_id="owner-1",
        week_start_date=NOW,
        current_week_start=NOW,
        week_number=1,
        downloads_used=0,
    ))
    db_session.commit()
    raw = _event("invoice.paid", invoice={"subscription_id": "sub_w"})

    _deliver(db_session, settings, raw, now=NOW + timedelta(days=7, hours=2))

    tracker = db_session.query(WeeklyInstallmentTracker).one()
    assert tracker.week2_paid is True
    assert tracker.week3_paid is False
    assert get_subscription(db_session, "owner-1").valid_until == NOW + timedelta(days=14)


def test_weekly_installment_first_activation_starts_tracker(db_session, settings):
    raw = _event(
        "subscription.activated",
        subscription={"id": "sub_w", "notes": {"user_id": "owner-1", "plan": "weekly_installment"}},
    )
    _deliver(db_session, settings, raw)
    tracker = db_session.query(WeeklyInstallmentTracker).one()
    assert tracker.week_start_date == NOW
    assert get_subscription(db_session, "owner-1").valid_until == NOW + timedelta(days=7)


def test_email_failure_does_not_undo_activation(db_session, settings, mocker):
    db_session.add(User(id="owner-1", email="owner1@example.com", notify_billing=True))
    db_session.commit()
    settings = settings.model_copy(update={"RESEND_API_KEY": "re_test"})
    send = mocker.patch("resend.Emails.send", side_effect=RuntimeError("smtp down"))
    raw = _event("subscription.activated", subscription={"id": "sub_1", "notes": {"user_id": "owner-1"}})

    result = _deliver(db_session, settings, raw)

    assert result["action"] == "activated"
    send.assert_called_once()
    assert send.call_args[0][0]["to"] == ["owner1@example.com"]
    assert get_subscription(db_session, "owner-1").is_active is True
    assert db_session.get(ProcessedWebhookEvent, "evt_1") is not None


def test_webhook_route(client, db_session):
    raw = _event("subscription.activated", subscription={"id": "sub_1", "notes": {"user_id": "owner-1"}})
    response = client.post(
        "/webhooks/razorpay",
        content=raw,
        headers={"x-razorpay-signature": _sign(raw), "content-type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json()["action"] == "activated"

    bad = client.post("/webhooks/razorpay", content=raw, headers={"x-razorpay-signature": "nope"})
    assert bad.status_code == 400
    assert bad.json() == {"detail": "Invalid webhook signature"}


def test_retried_installment_charge_keeps_tracker_anchor(db_session, settings, make_subscription):
    sub = make_subscription(
        plan="weekly_installment", external_subscription_id="sub_w", valid_until=NOW + timedelta(days=7)
    )
    db_session.add(WeeklyInstallmentTracker(
        subscription_id=sub.id,
        owner_id="owner-1",
        week_start_date=NOW,
        current_week_start=NOW,
        week_number=1,
        downloads_used=0,
    ))
    db_session.commit()

    failed = _event("invoice.payment_failed", event_id="evt_fail", invoice={"subscription_id": "sub_w"})
    assert _deliver(db_session, settings, failed, now=NOW + timedelta(days=7, hours=1))["action"] == "deactivated"
    paid = _event("invoice.paid", event_id="evt_retry", invoice={"subscription_id": "sub_w"})
    _deliver(db_session, settings, paid, now=NOW + timedelta(days=8))

    tracker = db_session.query(WeeklyInstallmentTracker).one()
    assert tracker.week_start_date == NOW
    assert tracker.week2_paid is True
    sub = get_subscription(db_session, "owner-1")
    assert sub.is_active is True
    assert sub.valid_until == NOW + timedelta(days=14)


def test_inactive_subscription_with_autopay_is_reactivated(db_session, settings, make_subscription):
    make_subscription(external_subscription_id="sub_1", is_active=False, autopay_enabled=True, valid_until=NOW)
    raw = _event("invoice.paid", invoice={"subscription_id": "sub_1"})

    result = _deliver(db_session, settings, raw, now=NOW + timedelta(days=1))

    assert result["action"] == "activated"
    sub = get_subscription(db_session, "owner-1")
    assert sub.is_active is True
    assert sub.valid_until == NOW + timedelta(days=31)


def test_captured_subscription_payment_does_not_touch_purchase(db_session, settings):
    db_session.add(Purchase(id="pur_3", razorpay_order_id="order_3", status="pending"))
    db_session.commit()
    raw = _event(
        "payment.captured",
        payment={"id": "pay_4", "invoice_id": "inv_1", "order_id": "order_3", "notes": {"purchase_id": "pur_3"}},
    )

    assert _deliver(db_session, settings, raw)["action"] == "ignored"
    assert db_session.get(Purchase, "pur_3").status == "pending"
