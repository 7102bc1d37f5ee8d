"""
Send billing-related emails (activation, receipts, cancellation, expiry reminders).
Uses Resend if RESEND_API_KEY is set; otherwise no-op so billing never fails on email.
"""
import logging
from datetime import datetime
from typing import Optional

import resend
from sqlalchemy.orm import Session

from billing_service.core.config import Settings
from billing_service.models.user import User

logger = logging.getLogger(__name__)

TEMPLATE_SUBSCRIPTION_ACTIVATED = "subscription_activated"
TEMPLATE_PAYMENT_RECEIVED = "payment_received"
TEMPLATE_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
TEMPLATE_SUBSCRIPTION_EXPIRING = "subscription_expiring"

_SUBJECTS = {
    TEMPLATE_SUBSCRIPTION_ACTIVATED: "Your {app} subscription is active",
    TEMPLATE_PAYMENT_RECEIVED: "Your {app} payment was received",
    TEMPLATE_SUBSCRIPTION_CANCELLED: "Your {app} subscription was cancelled",
    TEMPLATE_SUBSCRIPTION_EXPIRING: "Your {app} subscription expires soon",
}


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else ""


def _render(template: str, params: dict, settings: Settings) -> tuple[str, str]:
    app = settings.APP_NAME
    subject = _SUBJECTS[template].format(app=app)
    plan = (params.get("plan") or "").replace("_", " ")
    valid_until = _format_date(params.get("valid_until"))

    if template == TEMPLATE_SUBSCRIPTION_ACTIVATED:
        body = f"<p>Your <strong>{plan}</strong> plan is now active.</p>"
        if valid_until:
            body += f"<p><strong>Valid until:</strong> {valid_until}</p>"
    elif template == TEMPLATE_PAYMENT_RECEIVED:
        body = f"<p>We received your payment for the <strong>{plan}</strong> plan.</p>"
        if valid_until:
            body += f"<p>Your access now runs until {valid_until}.</p>"
    elif template == TEMPLATE_SUBSCRIPTION_CANCELLED:
        body = "<p>Your subscription has been cancelled and autopay is off.</p>"
        body += "<p>You can renew at any time from your account.</p>"
    else:
        body = f"<p>Your <strong>{plan}</strong> plan expires on {valid_until}.</p>"
        if params.get("autopay_enabled"):
            body += "<p>Autopay is on, so no action is needed.</p>"
        else:
            body += "<p>Renew now to keep your downloads.</p>"

    html = f"<p>Hi,</p>{body}<p>Thank you for using {app}.</p>"
    return subject, html


def send_transactional_email(to_email: Optional[str], template: str, params: dict, settings: Settings) -> bool:
    """
    Returns True if sent, False if skipped or failed.
    Does not raise; logs errors so the state change that triggered it is never rolled back.
    """
    if not settings.RESEND_API_KEY or not to_email:
        logger.info("[billing_email] Skipping %s (no API key or recipient)", template)
        return False
    if template not in _SUBJECTS:
        logger.error("[billing_email] Unknown template %s", template)
        return False

    resend.api_key = settings.RESEND_API_KEY
    subject, html = _render(template, params, settings)
    try:
        resend.Emails.send(
            {
                "from": settings.BILLING_FROM_EMAIL,
                "to": [to_email],
                "subject": subject,
                "html": html,
            }
        )
        logger.info("[billing_email] %s email sent to %s", template, to_email)
        return True
    except Exception as e:
        logger.warning("[billing_email] Failed to send %s to %s: %s", template, to_email, e)
        return False


def notify_owner(db: Session, owner_id: str, template: str, params: dict, settings: Settings) -> bool:
    """Look the owner up in the directory and send if they have an address and want billing mail."""
    user = db.query(User).filter(User.id == owner_id).first()
    if not user or not user.email:
        logger.info("[billing_email] No email on file for owner %s; %s skipped", owner_id, template)
        return False
    if not user.notify_billing:
        return False
    return send_transactional_email(user.email, template, params, settings)
