"""
Drift reconciliation jobs.

Every job has the same shape: snapshot candidate rows, ask the provider about
each one through a bounded worker pool, then apply the resulting corrections
one at a time on the caller's session. A record's failure lands in `errors`;
it never aborts the batch. Running a job again after convergence is a no-op.

Worker threads never touch the session. They only see plain snapshot values
captured up front, so the decision they return is re-checked against the
row's version before it is written.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from billing_service.core.config import Settings
from billing_service.core.errors import BillingError, ConflictError, ProviderError
from billing_service.core.plans import WEEK, Plan, normalize_plan, plan_duration
from billing_service.models.provider_operation import (
    OPERATION_CANCEL,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    ProviderOperation,
)
from billing_service.models.subscription import Subscription
from billing_service.models.webhook_event import ProcessedWebhookEvent
from billing_service.models.weekly_installment import WeeklyInstallmentTracker
from billing_service.services.provider_saga import retry_candidates
from billing_service.services.subscription_store import commit
from billing_service.services.weekly_installment import installment_valid_until, mark_week_paid
from billing_service.utils.clock import utcnow

logger = logging.getLogger(__name__)

CLAMP_TOLERANCE = timedelta(days=1)
HEARTBEAT_STALENESS = timedelta(days=1)

CHANGED_CONCURRENTLY = "changed concurrently"
DEADLINE_EXCEEDED = "deadline exceeded"


@dataclass
class Candidate:
    owner_id: str
    version: Optional[int]
    data: dict = field(default_factory=dict)


@dataclass
class Decision:
    action: str  # "fix" | "skip" | "error"
    reason: str = ""
    values: dict = field(default_factory=dict)

    @classmethod
    def fix(cls, **values) -> "Decision":
        return cls("fix", values=values)

    @classmethod
    def skip(cls, reason: str) -> "Decision":
        return cls("skip", reason=reason)

    @classmethod
    def error(cls, reason: str, **values) -> "Decision":
        return cls("error", reason=reason, values=values)


class StaleSnapshot(Exception):
    pass


class BatchReport:
    def __init__(self, job: str):
        self.job = job
        self.fixed: list[dict] = []
        self.skipped: list[dict] = []
        self.errors: list[dict] = []
        self.started_at = utcnow()
        self.finished_at: Optional[datetime] = None

    def skip(self, owner_id: str, reason: str, **extra) -> None:
        self.skipped.append({"owner_id": owner_id, "reason": reason, **extra})

    def error(self, owner_id: str, error: str, **extra) -> None:
        self.errors.append({"owner_id": owner_id, "error": error, **extra})

    def as_dict(self) -> dict:
        return {
            "job": self.job,
            "processed_count": len(self.fixed) + len(self.skipped) + len(self.errors),
            "fixed": self.fixed,
            "skipped": self.skipped,
            "errors": self.errors,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def _passthrough(candidate: Candidate) -> Decision:
    return Decision.fix()


def run_batch(
    db: Session,
    job: str,
    candidates: Iterable[Candidate],
    evaluate: Optional[Callable[[Candidate], Decision]],
    apply: Callable[[Candidate, Decision], dict],
    workers: int = 1,
    deadline: Optional[float] = None,
) -> dict:
    """
    `evaluate` runs in worker threads and may call the provider; `apply` runs
    here, in submission order, and returns the `fixed` entry for the record.
    Records still outstanding when `deadline` seconds have elapsed are
    reported as skipped and the partial report is returned.
    """
    report = BatchReport(job)
    candidates = list(candidates)
    evaluate = evaluate or _passthrough
    stop_at = time.monotonic() + deadline if deadline else None

    executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix=f"reconcile-{job}")
    try:
        futures = [executor.submit(evaluate, candidate) for candidate in candidates]
        for index, (candidate, future) in enumerate(zip(candidates, futures)):
            remaining = None if stop_at is None else max(0.0, stop_at - time.monotonic())
            try:
                decision = future.result(timeout=remaining)
            except FuturesTimeout:
                for late in candidates[index:]:
                    report.skip(late.owner_id, DEADLINE_EXCEEDED)
                logger.warning("[Reconcile] %s hit its deadline; %s record(s) left", job, len(candidates) - index)
                break
            except BillingError as e:
                report.error(candidate.owner_id, e.detail)
                logger.warning("[Reconcile] %s: %s failed: %s", job, candidate.owner_id, e.detail)
                continue
            except Exception as e:
                report.error(candidate.owner_id, str(e))
                logger.exception("[Reconcile] %s: unexpected error evaluating %s", job, candidate.owner_id)
                continue
            _apply_decision(db, report, candidate, decision, apply)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    report.finished_at = utcnow()
    logger.info(
        "[Reconcile] %s done: fixed=%s skipped=%s errors=%s",
        job, len(report.fixed), len(report.skipped), len(report.errors),
    )
    return report.as_dict()


def _apply_decision(db: Session, report: BatchReport, candidate: Candidate, decision: Decision, apply) -> None:
    if decision.action == "skip":
        report.skip(candidate.owner_id, decision.reason)
        return
    try:
        entry = apply(candidate, decision)
    except (StaleSnapshot, ConflictError):
        db.rollback()
        report.skip(candidate.owner_id, CHANGED_CONCURRENTLY)
        return
    except BillingError as e:
        db.rollback()
        report.error(candidate.owner_id, e.detail)
        logger.error("[Reconcile] %s: could not apply fix for %s: %s", report.job, candidate.owner_id, e.detail)
        return
    if decision.action == "error":
        report.error(candidate.owner_id, decision.reason, **(entry or {}))
    elif entry is None:
        report.skip(candidate.owner_id, decision.reason or "no change")
    else:
        report.fixed.append({"owner_id": candidate.owner_id, **entry})


def _snapshot(subscription: Subscription, **extra) -> Candidate:
    data = {
        "plan": normalize_plan(subscription.plan) if subscription.plan else None,
        "valid_until": subscription.valid_until,
        "updated_at": subscription.updated_at,
        "created_at": subscription.created_at,
        "external_id": subscription.external_subscription_id,
        "autopay_enabled": subscription.autopay_enabled,
    }
    data.update(extra)
    return Candidate(subscription.owner_id, subscription.version, data)


def _current(db: Session, candidate: Candidate) -> Subscription:
    """Re-read the row and refuse to write if it moved since the snapshot."""
    row = (
        db.query(Subscription)
        .filter(Subscription.owner_id == candidate.owner_id)
        .populate_existing()
        .first()
    )
    if row is None or row.version != candidate.version:
        raise StaleSnapshot(candidate.owner_id)
    return row


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# Renewal drift ---------------------------------------------------------------

def reconcile_renewals(db: Session, provider, settings: Settings, now: Optional[datetime] = None) -> dict:
    """Catch up local validity when a provider renewal was missed."""
    now = now or utcnow()
    rows = (
        db.query(Subscription)
        .filter(
            Subscription.is_active.is_(True),
            Subscription.autopay_enabled.is_(True),
            Subscription.external_subscription_id.isnot(None),
        )
        .order_by(Subscription.id)
        .all()
    )
    candidates = [_snapshot(row) for row in rows if row.plan != Plan.weekly_installment]

    def evaluate(candidate: Candidate) -> Decision:
        state = provider.get_cycle_state(candidate.data["external_id"])
        if state.is_terminal:
            return Decision.skip(f"provider status {state.status}")
        cycle_end = state.current_cycle_end
        if cycle_end is None:
            return Decision.skip("provider has no current cycle")

        duration = plan_duration(candidate.data["plan"] or Plan.monthly, settings)
        local = candidate.data["valid_until"]
        if local is None:
            return Decision.fix(new_valid_until=max(cycle_end, now) + duration, provider_cycle_end=cycle_end)
        if cycle_end > local:
            return Decision.fix(new_valid_until=max(local, now) + duration, provider_cycle_end=cycle_end)
        return Decision.skip("in sync")

    def apply(candidate: Candidate, decision: Decision) -> dict:
        row = _current(db, candidate)
        old = row.valid_until
        row.valid_until = decision.values["new_valid_until"]
        row.autopay_enabled = True
        row.expiry_email_sent = None
        commit(db)
        return {
            "plan": candidate.data["plan"].value if candidate.data["plan"] else None,
            "old_valid_until": _iso(old),
            "new_valid_until": _iso(row.valid_until),
            "provider_cycle_end": _iso(decision.values["provider_cycle_end"]),
        }

    return run_batch(
        db, "renewals", candidates, evaluate, apply,
        workers=settings.RECONCILE_WORKERS, deadline=settings.RECONCILE_BATCH_DEADLINE_SECONDS,
    )


# Validity clamp --------------------------------------------------------------

def reconcile_validity(db: Session, settings: Settings, now: Optional[datetime] = None) -> dict:
    """Pull valid_until back when it runs more than a day past anchor + one plan duration."""
    now = now or utcnow()
    rows = db.query(Subscription).filter(Subscription.is_active.is_(True)).order_by(Subscription.id).all()
    candidates = [_snapshot(row) for row in rows if row.plan != Plan.weekly_installment]

    def evaluate(candidate: Candidate) -> Decision:
        data = candidate.data
        if data["valid_until"] is None:
            return Decision.skip("no valid_until set")
        plan = data["plan"] or Plan.monthly
        reference = data["updated_at"] or data["created_at"] or data["valid_until"] or now
        expected = reference + plan_duration(plan, settings)
        if data["valid_until"] > expected + CLAMP_TOLERANCE:
            return Decision.fix(expected=expected, reference=reference, plan=plan)
        return Decision.skip("within tolerance")

    def apply(candidate: Candidate, decision: Decision) -> dict:
        row = _current(db, candidate)
        old = row.valid_until
        row.valid_until = decision.values["expected"]
        row.updated_at = now
        commit(db)
        return {
            "plan": decision.values["plan"].value,
            "old_valid_until": _iso(old),
            "new_valid_until": _iso(row.valid_until),
            "reference_date": _iso(decision.values["reference"]),
        }

    return run_batch(db, "validity", candidates, evaluate, apply, deadline=settings.RECONCILE_BATCH_DEADLINE_SECONDS)


# Heartbeat -------------------------------------------------------------------

def reconcile_timestamps(db: Session, settings: Settings, now: Optional[datetime] = None) -> dict:
    """Refresh updated_at on live subscriptions so the clamp anchor stays trustworthy."""
    now = now or utcnow()
    rows = (
        db.query(Subscription)
        .filter(Subscription.is_active.is_(True), Subscription.valid_until.isnot(None))
        .order_by(Subscription.id)
        .all()
    )
    candidates = [_snapshot(row) for row in rows]

    def evaluate(candidate: Candidate) -> Decision:
        valid_until = candidate.data["valid_until"]
        updated_at = candidate.data["updated_at"]
        if valid_until <= now:
            return Decision.skip("subscription expired")
        if updated_at is None or updated_at < valid_until or now - updated_at > HEARTBEAT_STALENESS:
            return Decision.fix()
        return Decision.skip("up to date")

    def apply(candidate: Candidate, decision: Decision) -> dict:
        row = _current(db, candidate)
        old = row.updated_at
        row.updated_at = now
        commit(db)
        return {"old_updated_at": _iso(old), "new_updated_at": _iso(now)}

    return run_batch(db, "timestamps", candidates, evaluate, apply, deadline=settings.RECONCILE_BATCH_DEADLINE_SECONDS)


# Weekly installment payment drift --------------------------------------------

def reconcile_installments(db: Session, provider, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    rows = (
        db.query(Subscription, WeeklyInstallmentTracker)
        .outerjoin(WeeklyInstallmentTracker, WeeklyInstallmentTracker.subscription_id == Subscription.id)
        .filter(Subscription.is_active.is_(True), Subscription.plan == Plan.weekly_installment)
        .order_by(Subscription.id)
        .all()
    )
    candidates = []
    for subscription, tracker in rows:
        extra = {"has_tracker": tracker is not None}
        if tracker is not None:
            extra.update(weeks_paid=tracker.weeks_paid, week_start_date=tracker.week_start_date)
        candidates.append(_snapshot(subscription, **extra))

    def evaluate(candidate: Candidate) -> Decision:
        data = candidate.data
        if not data["has_tracker"]:
            return Decision.skip("no installment tracker")
        external_id = data["external_id"]
        if external_id:
            try:
                state = provider.get_cycle_state(external_id)
            except ProviderError as e:
                logger.warning("[Installments] Provider lookup for %s failed, using local data: %s", candidate.owner_id, e.detail)
            else:
                if state.paid_count > data["weeks_paid"]:
                    return Decision.fix(source="provider", paid_count=state.paid_count)
                return Decision.skip("in sync")
        return _local_installment_decision(data)

    def apply(candidate: Candidate, decision: Decision) -> dict:
        row = _current(db, candidate)
        tracker = (
            db.query(WeeklyInstallmentTracker)
            .filter(WeeklyInstallmentTracker.subscription_id == row.id)
            .populate_existing()
            .first()
        )
        if tracker is None or tracker.weeks_paid != candidate.data["weeks_paid"]:
            raise StaleSnapshot(candidate.owner_id)

        old = row.valid_until
        source = decision.values["source"]
        if source == "provider":
            target = min(decision.values["paid_count"], 3)
            for week in range(2, target + 1):
                mark_week_paid(tracker, week, now)
        row.valid_until = installment_valid_until(tracker)
        row.updated_at = now
        commit(db)
        return {
            "old_valid_until": _iso(old),
            "new_valid_until": _iso(row.valid_until),
            "weeks_paid": tracker.weeks_paid,
            "reason": "provider paid_count ahead" if source == "provider" else "local validity behind paid weeks",
        }

    return run_batch(
        db, "installments", candidates, evaluate, apply,
        workers=settings.RECONCILE_WORKERS, deadline=settings.RECONCILE_BATCH_DEADLINE_SECONDS,
    )


def _local_installment_decision(data: dict) -> Decision:
    expected = data["week_start_date"] + data["weeks_paid"] * WEEK
    current = data["valid_until"]
    # Never shrink validity without provider confirmation.
    if current is None or expected > current:
        return Decision.fix(source="local")
    return Decision.skip("in sync")


# Installment expiry sweep ----------------------------------------------------

def expire_installments(db: Session, provider, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    rows = (
        db.query(Subscription)
        .filter(
            Subscription.is_active.is_(True),
            Subscription.plan == Plan.weekly_installment,
            Subscription.valid_until.isnot(None),
            Subscription.valid_until < now,
        )
        .order_by(Subscription.id)
        .all()
    )
    candidates = [_snapshot(row) for row in rows]

    def evaluate(candidate: Candidate) -> Decision:
        external_id = candidate.data["external_id"]
        if not (external_id and candidate.data["autopay_enabled"]):
            return Decision.fix(provider_cancelled=None)
        try:
            provider.cancel_recurring_plan(external_id, immediate=True)
        except ProviderError as e:
            logger.warning("[Installments] Cancel of %s failed; deactivating anyway: %s", external_id, e.detail)
            return Decision.fix(provider_cancelled=False, provider_error=e.detail)
        return Decision.fix(provider_cancelled=True)

    def apply(candidate: Candidate, decision: Decision) -> dict:
        row = _current(db, candidate)
        cancelled = decision.values["provider_cancelled"]
        if cancelled is not None:
            # Failed cancels are left for the retry sweep.
            db.add(ProviderOperation(
                owner_id=row.owner_id,
                operation=OPERATION_CANCEL,
                external_id=candidate.data["external_id"],
                status=STATUS_SUCCEEDED if cancelled else STATUS_FAILED,
                attempts=1,
                last_error=decision.values.get("provider_error"),
                created_at=now,
                completed_at=now if cancelled else None,
            ))
        row.is_active = False
        row.autopay_enabled = False
        row.updated_at = now
        commit(db)
        logger.info("[Installments] Expired weekly plan for owner %s", row.owner_id)
        return {"valid_until": _iso(row.valid_until), "provider_cancelled": cancelled}

    return run_batch(
        db, "expire_installments", candidates, evaluate, apply,
        workers=settings.RECONCILE_WORKERS, deadline=settings.RECONCILE_BATCH_DEADLINE_SECONDS,
    )


# Cancellation retry ----------------------------------------------------------

def retry_provider_cancellations(db: Session, provider, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    candidates = [
        Candidate(op.owner_id, None, {"operation_id": op.id, "external_id": op.external_id})
        for op in retry_candidates(db, now)
    ]

    def evaluate(candidate: Candidate) -> Decision:
        try:
            provider.cancel_recurring_plan(candidate.data["external_id"], immediate=True)
        except ProviderError as e:
            return Decision.error(e.detail)
        return Decision.fix()

    def apply(candidate: Candidate, decision: Decision) -> dict:
        op = db.get(ProviderOperation, candidate.data["operation_id"])
        if op is None or op.status == STATUS_SUCCEEDED:
            raise StaleSnapshot(candidate.owner_id)
        op.attempts = (op.attempts or 0) + 1
        if decision.action == "error":
            op.status = STATUS_FAILED
            op.last_error = decision.reason
        else:
            op.status = STATUS_SUCCEEDED
            op.last_error = None
            op.completed_at = now
        commit(db)
        return {"external_id": op.external_id, "attempts": op.attempts}

    return run_batch(
        db, "retry_cancellations", candidates, evaluate, apply,
        workers=settings.RECONCILE_WORKERS, deadline=settings.RECONCILE_BATCH_DEADLINE_SECONDS,
    )


# Webhook dedup pruning -------------------------------------------------------

def prune_webhook_events(db: Session, settings: Settings, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    report = BatchReport("prune_webhook_events")
    cutoff = now - timedelta(days=settings.WEBHOOK_EVENT_TTL_DAYS)
    deleted = (
        db.query(ProcessedWebhookEvent)
        .filter(ProcessedWebhookEvent.received_at < cutoff)
        .delete(synchronize_session=False)
    )
    commit(db)
    report.finished_at = utcnow()
    result = report.as_dict()
    result["processed_count"] = deleted
    logger.info("[Reconcile] Pruned %s webhook event id(s) older than %s", deleted, cutoff)
    return result
