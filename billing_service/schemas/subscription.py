from pydantic import BaseModel, field_validator
from datetime import datetime

from billing_service.core.plans import Plan, normalize_plan


class PlanField(BaseModel):
    plan: Plan | None = None

    @field_validator("plan", mode="before")
    @classmethod
    def _normalize(cls, v):
        # Legacy names ("weekly") are mapped here, once, at the request boundary.
        return normalize_plan(v)


class CheckoutRequest(PlanField):
    plan: Plan


class CheckoutResponse(BaseModel):
    subscription_id: str
    key_id: str
    plan: Plan


class ActivateRequest(PlanField):
    plan: Plan
    razorpay_subscription_id: str | None = None
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None
    autopay: bool | None = None


class SubscriptionResponse(BaseModel):
    owner_id: str
    plan: Plan | None
    is_active: bool
    valid_until: datetime | None
    autopay_enabled: bool
    external_subscription_id: str | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class CancelResponse(BaseModel):
    ok: bool = True
    message: str
    local_updated: bool
    provider_cancelled: bool
    plan: Plan | None
    valid_until: datetime | None


class InstallmentStatusResponse(BaseModel):
    has_subscription: bool
    expired: bool = False
    downloads_used: int
    downloads_available: int
    week_number: int
    valid_until: datetime | None = None
    next_week_reset: datetime | None = None
    days_until_reset: int | None = None
    weekly_quota: int | None = None
    current_week_paid: bool | None = None
    autopay_enabled: bool | None = None
    week1_paid: bool | None = None
    week2_paid: bool | None = None
    week3_paid: bool | None = None
    payment_required: bool = False
    payment_message: str | None = None
