from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from billing_service.core.plans import Plan, normalize_plan


class PlanType(TypeDecorator):
    """Stores Plan as its string value; legacy names are normalized on both read and write."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        plan = normalize_plan(value)
        return plan.value if plan else None

    def process_result_value(self, value, dialect):
        try:
            return normalize_plan(value)
        except ValueError:
            # Unknown legacy values fall back to monthly rather than breaking every read.
            return Plan.monthly
