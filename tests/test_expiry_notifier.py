from datetime import timedelta

import pytest

from billing_service.models import User
from billing_service.services import billing_email
from billing_service.services.expiry_notifier import send_expiry_reminders
from billing_service.services.subscription_store import get_subscription
from tests.conftest import NOW

DAY = timedelta(days=1)


@pytest.fixture
def mail_settings(settings):
    return settings.model_copy(update={"RESEND_API_KEY": "re_test"})


@pytest.fixture
def resend_send(mocker):
    return mocker.patch("resend.Emails.send", return_value={"id": "email_1"})


def _user(db_session, owner_id, email, notify_billing=True):
    db_session.add(User(id=owner_id, email=email, notify_billing=notify_billing))
    db_session.commit()


def test_reminder_window(db_session, mail_settings, resend_send, make_subscription):
    make_subscription("in-window", valid_until=NOW + 2 * DAY + timedelta(hours=6))
    make_subscription("too-early", valid_until=NOW + DAY)
    make_subscription("upper-bound", valid_until=NOW + 3 * DAY)
    make_subscription("too-late", valid_until=NOW + 3 * DAY + timedelta(minutes=1))
    make_subscription("inactive", is_active=False, valid_until=NOW + 2 * DAY)
    for owner_id in ("in-window", "upper-bound", "too-early", "too-late", "inactive"):
        _user(db_session, owner_id, f"{owner_id}@example.com")

    report = send_expiry_reminders(db_session, mail_settings, now=NOW)

    assert [entry["owner_id"] for entry in report["fixed"]] == ["in-window", "upper-bound"]
    assert all(entry["sent"] for entry in report["fixed"])
    assert resend_send.call_count == 2
    message = resend_send.call_args_list[0][0][0]
    assert message["to"] == ["in-window@example.com"]
    assert message["subject"] == "Your Celite subscription expires soon"
    assert get_subscription(db_session, "in-window").expiry_email_sent == NOW


def test_reminder_is_sent_once(db_session, mail_settings, resend_send, make_subscription):
    make_subscription(valid_until=NOW + 2 * DAY + timedelta(hours=12))
    _user(db_session, "owner-1", "owner1@example.com")

    send_expiry_reminders(db_session, mail_settings, now=NOW)
    second = send_expiry_reminders(db_session, mail_settings, now=NOW + timedelta(hours=6))

    assert second["fixed"] == []
    assert resend_send.call_count == 1


def test_gate_is_kept_when_send_fails(db_session, mail_settings, mocker, make_subscription):
    mocker.patch("resend.Emails.send", side_effect=RuntimeError("rate limited"))
    make_subscription(valid_until=NOW + 2 * DAY)
    _user(db_session, "owner-1", "owner1@example.com")

    report = send_expiry_reminders(db_session, mail_settings, now=NOW)

    assert report["fixed"][0]["sent"] is False
    assert get_subscription(db_session, "owner-1").expiry_email_sent == NOW


def test_owner_without_email_or_opted_out(db_session, mail_settings, resend_send, make_subscription):
    make_subscription("no-user", valid_until=NOW + 2 * DAY)
    make_subscription("opted-out", valid_until=NOW + 2 * DAY)
    _user(db_session, "opted-out", "out@example.com", notify_billing=False)

    report = send_expiry_reminders(db_session, mail_settings, now=NOW)

    assert {entry["owner_id"]: entry["sent"] for entry in report["fixed"]} == {"no-user": False, "opted-out": False}
    resend_send.assert_not_called()


def test_no_api_key_skips_send(mocker, settings):
    send = mocker.patch("resend.Emails.send")
    assert billing_email.send_transactional_email(
        "a@example.com", billing_email.TEMPLATE_PAYMENT_RECEIVED, {"plan": "monthly"}, settings
    ) is False
    send.assert_not_called()


def test_render_mentions_plan_and_date(settings):
    subject, html = billing_email._render(
        billing_email.TEMPLATE_SUBSCRIPTION_ACTIVATED,
        {"plan": "weekly_installment", "valid_until": NOW},
        settings,
    )
    assert subject == "Your Celite subscription is active"
    assert "weekly installment" in html
    assert "March 01, 2026" in html
