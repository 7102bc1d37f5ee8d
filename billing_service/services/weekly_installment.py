"""
Weekly installment plan: three 7-day windows, one payment each, with a
per-window download quota.

State is recomputed lazily on read. There is no cron for rollover; the only
scheduled piece is the final expiry sweep in services.reconciliation.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from billing_service.core.config import Settings
from billing_service.core.errors import ForbiddenError
from billing_service.core.plans import INSTALLMENT_WEEKS, WEEK, Plan
from billing_service.models.subscription import Subscription
from billing_service.models.weekly_installment import WeeklyInstallmentTracker
from billing_service.services.subscription_store import commit
from billing_service.utils.clock import utcnow

logger = logging.getLogger(__name__)

PAYMENT_PROCESSING_MESSAGE = "Your weekly payment is being processed. Please try again shortly."
ENABLE_AUTOPAY_MESSAGE = "Your autopay is disabled. Please enable autopay to continue."


def week_in_progress(week_start_date: datetime, now: datetime) -> int:
    """1-based index of the 7-day window `now` falls in, capped at the last installment."""
    elapsed = max(0, int((now - week_start_date) // WEEK))
    return min(elapsed + 1, INSTALLMENT_WEEKS)


def installment_valid_until(tracker: WeeklyInstallmentTracker) -> datetime:
    return tracker.week_start_date + tracker.weeks_paid * WEEK


def get_tracker(db: Session, subscription: Subscription) -> Optional[WeeklyInstallmentTracker]:
    return (
        db.query(WeeklyInstallmentTracker)
        .filter(WeeklyInstallmentTracker.subscription_id == subscription.id)
        .first()
    )


def start_tracker(db: Session, subscription: Subscription, now: datetime) -> WeeklyInstallmentTracker:
    """Create the tracker for a fresh activation, or re-anchor an existing one at `now`."""
    if subscription.id is None:
        db.flush()
    tracker = get_tracker(db, subscription)
    if tracker is None:
        tracker = WeeklyInstallmentTracker(subscription_id=subscription.id, owner_id=subscription.owner_id)
        db.add(tracker)
    tracker.owner_id = subscription.owner_id
    tracker.week_start_date = now
    tracker.current_week_start = now
    tracker.week_number = 1
    tracker.downloads_used = 0
    tracker.week1_paid = True
    tracker.week2_paid = False
    tracker.week3_paid = False
    tracker.week2_paid_at = None
    tracker.week3_paid_at = None
    tracker.updated_at = now
    return tracker


def ensure_tracker(db: Session, subscription: Subscription, now: datetime) -> WeeklyInstallmentTracker:
    """Existing tracker, or one anchored on the subscription's own window when it was never created."""
    tracker = get_tracker(db, subscription)
    if tracker is not None:
        return tracker
    anchor = now
    if subscription.valid_until is not None:
        anchor = min(now, subscription.valid_until - WEEK)
    logger.info("[Installments] Creating missing tracker for owner %s", subscription.owner_id)
    tracker = start_tracker(db, subscription, anchor)
    db.flush()
    return tracker


def roll_over(tracker: WeeklyInstallmentTracker, now: datetime) -> bool:
    """Advance to the window `now` falls in. Returns True when the tracker changed."""
    if now - tracker.current_week_start < WEEK:
        return False
    elapsed = max(0, int((now - tracker.week_start_date) // WEEK))
    tracker.week_number = max(tracker.week_number or 1, min(elapsed + 1, INSTALLMENT_WEEKS))
    tracker.current_week_start = tracker.week_start_date + elapsed * WEEK
    tracker.downloads_used = 0
    tracker.updated_at = now
    logger.info(
        "[Installments] Rolled owner %s to week %s (paid=%s)",
        tracker.owner_id, tracker.week_number, tracker.current_week_paid,
    )
    return True


def mark_week_paid(tracker: WeeklyInstallmentTracker, week: int, now: datetime) -> bool:
    """Set week{N}_paid. Returns False when that week was already paid."""
    week = max(1, min(week, INSTALLMENT_WEEKS))
    if tracker.week_paid(week):
        return False
    setattr(tracker, f"week{week}_paid", True)
    if week > 1:
        setattr(tracker, f"week{week}_paid_at", now)
    tracker.updated_at = now
    return True


def downloads_available(tracker: WeeklyInstallmentTracker, quota: int) -> int:
    if not tracker.current_week_paid:
        return 0
    return max(0, quota - (tracker.downloads_used or 0))


def _empty_status(subscription: Optional[Subscription], expired: bool = False) -> dict:
    status = {
        "has_subscription": False,
        "downloads_used": 0,
        "downloads_available": 0,
        "week_number": 0,
        "valid_until": subscription.valid_until if subscription else None,
    }
    if expired:
        status["expired"] = True
    return status


def _active_installment(db: Session, owner_id: str) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.owner_id == owner_id, Subscription.plan == Plan.weekly_installment)
        .first()
    )


def build_status(subscription: Subscription, tracker: WeeklyInstallmentTracker, settings: Settings, now: datetime) -> dict:
    quota = settings.WEEKLY_DOWNLOAD_QUOTA
    current_paid = tracker.current_week_paid
    payment_required = tracker.week_number >= 2 and not current_paid
    next_reset = tracker.current_week_start + WEEK
    days_until_reset = math.ceil((next_reset - now) / timedelta(days=1))

    payment_message = None
    if payment_required:
        payment_message = PAYMENT_PROCESSING_MESSAGE if subscription.autopay_enabled else ENABLE_AUTOPAY_MESSAGE

    return {
        "has_subscription": True,
        "downloads_used": tracker.downloads_used,
        "downloads_available": downloads_available(tracker, quota),
        "week_number": tracker.week_number,
        "valid_until": subscription.valid_until,
        "next_week_reset": next_reset,
        "days_until_reset": max(0, days_until_reset),
        "weekly_quota": quota,
        "current_week_paid": current_paid,
        "autopay_enabled": subscription.autopay_enabled,
        "week1_paid": tracker.week1_paid,
        "week2_paid": tracker.week2_paid,
        "week3_paid": tracker.week3_paid,
        "payment_required": payment_required,
        "payment_message": payment_message,
    }


def _load(db: Session, owner_id: str, now: datetime):
    subscription = _active_installment(db, owner_id)
    if subscription is None or not subscription.is_active:
        return subscription, None, _empty_status(None)
    if subscription.valid_until is not None and now > subscription.valid_until:
        return subscription, None, _empty_status(subscription, expired=True)
    return subscription, get_tracker(db, subscription), None


def get_status(db: Session, owner_id: str, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    subscription, tracker, empty = _load(db, owner_id, now)
    if empty is not None:
        return empty
    changed = False
    if tracker is None:
        tracker = ensure_tracker(db, subscription, now)
        changed = True
    if roll_over(tracker, now):
        changed = True
    if changed:
        commit(db)
    return build_status(subscription, tracker, settings, now)


def consume_download(db: Session, owner_id: str, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    subscription, tracker, empty = _load(db, owner_id, now)
    if empty is not None:
        raise ForbiddenError("No active weekly installment subscription")
    if tracker is None:
        tracker = ensure_tracker(db, subscription, now)
    roll_over(tracker, now)

    if downloads_available(tracker, settings.WEEKLY_DOWNLOAD_QUOTA) == 0:
        # Persist any rollover before refusing.
        commit(db)
        if not tracker.current_week_paid:
            raise ForbiddenError(
                PAYMENT_PROCESSING_MESSAGE if subscription.autopay_enabled else ENABLE_AUTOPAY_MESSAGE
            )
        raise ForbiddenError("Weekly download limit reached")

    tracker.downloads_used = (tracker.downloads_used or 0) + 1
    tracker.updated_at = now
    commit(db)
    logger.info("[Installments] Owner %s used download %s this week", owner_id, tracker.downloads_used)
    return build_status(subscription, tracker, settings, now)
