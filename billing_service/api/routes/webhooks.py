"""
Webhooks for the payment provider (Razorpay).
Register https://your-backend.com/webhooks/razorpay in the Razorpay dashboard.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from billing_service.core.config import Settings, get_settings
from billing_service.db.session import get_db
from billing_service.services.webhook_processor import process_webhook

router = APIRouter()


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    # Signature is computed over the exact bytes received; never re-serialize.
    payload = await request.body()
    return process_webhook(
        db,
        payload,
        request.headers.get("x-razorpay-signature"),
        request.headers.get("x-razorpay-event-id"),
        settings,
    )
