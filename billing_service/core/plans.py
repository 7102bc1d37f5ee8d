"""
Billing plans and the duration arithmetic built on them.

`normalize_plan` is the only place legacy plan names are mapped; it runs at
each ingress boundary (request schemas, webhook payloads, and the `PlanType`
column type for stored rows).
"""
import enum
from datetime import datetime, timedelta
from typing import Optional

from billing_service.core.config import Settings


class Plan(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"
    weekly_installment = "weekly_installment"


# Older rows and clients still send these names.
LEGACY_PLAN_ALIASES = {
    "weekly": Plan.monthly,
    "pongal_weekly": Plan.weekly_installment,
}

WEEK = timedelta(days=7)
INSTALLMENT_WEEKS = 3

# Total billing cycles requested from the provider per recurring plan.
PROVIDER_TOTAL_COUNT = {
    Plan.monthly: 120,  # 10 years
    Plan.yearly: 10,
    Plan.weekly_installment: INSTALLMENT_WEEKS,
}

PROVIDER_PERIOD = {
    Plan.monthly: "monthly",
    Plan.yearly: "yearly",
    Plan.weekly_installment: "weekly",
}


def normalize_plan(value) -> Optional[Plan]:
    """Map a raw plan value (enum, str, None) to a Plan. Unknown names raise ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, Plan):
        return value
    raw = str(value).strip().lower()
    if raw in LEGACY_PLAN_ALIASES:
        return LEGACY_PLAN_ALIASES[raw]
    return Plan(raw)


def plan_duration(plan: Plan, settings: Settings) -> timedelta:
    """Single-cycle duration. The installment plan has none; see services.weekly_installment."""
    plan = normalize_plan(plan)
    if plan == Plan.monthly:
        return timedelta(days=settings.MONTHLY_DURATION_DAYS)
    if plan == Plan.yearly:
        return timedelta(days=settings.YEARLY_DURATION_DAYS)
    raise ValueError(f"Plan {plan.value} has no single-cycle duration")


def has_single_duration(plan: Optional[Plan]) -> bool:
    return plan in (Plan.monthly, Plan.yearly)


def valid_until_from(plan: Plan, anchor: datetime, settings: Settings) -> datetime:
    return anchor + plan_duration(plan, settings)


def plan_amount(plan: Plan, settings: Settings) -> int:
    if plan == Plan.yearly:
        return settings.YEARLY_AMOUNT
    if plan == Plan.weekly_installment:
        return settings.WEEKLY_INSTALLMENT_AMOUNT
    return settings.MONTHLY_AMOUNT


def plan_from_provider(plan_id: Optional[str], settings: Settings, notes: Optional[dict] = None) -> Optional[Plan]:
    """
    Work out the local plan from what the provider sent.

    Order: explicit `notes.plan` we set at checkout, configured plan-id mapping,
    then the plan id naming convention. Returns None when nothing matches.
    """
    if notes and notes.get("plan"):
        try:
            return normalize_plan(notes["plan"])
        except ValueError:
            pass

    if not plan_id:
        return None

    mapped = settings.RAZORPAY_PLAN_IDS.get(plan_id)
    if mapped:
        return normalize_plan(mapped)

    lowered = plan_id.lower()
    if "yearly" in lowered:
        return Plan.yearly
    if "installment" in lowered:
        return Plan.weekly_installment
    if "weekly" in lowered:
        return LEGACY_PLAN_ALIASES["weekly"]
    if "monthly" in lowered:
        return Plan.monthly
    return None
