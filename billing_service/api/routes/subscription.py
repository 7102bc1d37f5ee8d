"""
Owner-facing subscription commands.
End users only ever see coarse outcomes; provider details stay in the logs.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_service.core.config import Settings, get_settings
from billing_service.core.errors import NotFoundError
from billing_service.db.session import get_db
from billing_service.dependencies.auth import Owner, get_current_owner
from billing_service.schemas.subscription import (
    ActivateRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    SubscriptionResponse,
)
from billing_service.services import subscription_commands
from billing_service.services.razorpay_client import get_provider
from billing_service.services.subscription_store import get_subscription

router = APIRouter()


@router.get("", response_model=SubscriptionResponse)
def read_subscription(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
):
    subscription = get_subscription(db, owner.id)
    if subscription is None:
        raise NotFoundError("No subscription found")
    return subscription


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    """Create a Razorpay recurring subscription; the client completes payment with the returned id."""
    return subscription_commands.create_checkout(db, provider, owner.id, owner.email, request.plan, settings)


@router.post("/activate", response_model=SubscriptionResponse)
def activate_subscription(
    request: ActivateRequest,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    return subscription_commands.activate(
        db,
        provider,
        owner.id,
        request.plan,
        settings,
        external_id=request.razorpay_subscription_id,
        autopay=request.autopay,
        payment_id=request.razorpay_payment_id,
        signature=request.razorpay_signature,
        email=owner.email,
    )


@router.post("/cancel", response_model=CancelResponse)
def cancel_subscription(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    result = subscription_commands.cancel(db, provider, owner.id, settings)
    return CancelResponse(
        message="Subscription cancelled",
        local_updated=result.local_updated,
        provider_cancelled=result.provider_cancelled,
        plan=result.subscription.plan,
        valid_until=result.subscription.valid_until,
    )


@router.post("/renew", response_model=SubscriptionResponse)
def renew_subscription(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
):
    return subscription_commands.renew(db, provider, owner.id, settings)
