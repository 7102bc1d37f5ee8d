"""
Razorpay REST client (recurring subscriptions).

Thin wrapper: every non-2xx response, timeout or transport failure comes back
as ProviderError. A ProviderError says nothing about whether Razorpay applied
the change, so callers never treat it as proof either way.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from billing_service.core.config import Settings, get_settings
from billing_service.core.errors import ProviderError
from billing_service.core.plans import PROVIDER_PERIOD, PROVIDER_TOTAL_COUNT, Plan, plan_amount
from billing_service.utils.clock import from_unix

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"cancelled", "expired", "completed", "halted"}


@dataclass
class ExternalCycleState:
    """Snapshot of a Razorpay subscription. Reconciliation input only; never stored."""
    status: str
    current_cycle_start: Optional[datetime]
    current_cycle_end: Optional[datetime]
    paid_count: int
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_payload(cls, data: dict) -> "ExternalCycleState":
        return cls(
            status=(data.get("status") or "").lower(),
            current_cycle_start=from_unix(data.get("current_start")),
            current_cycle_end=from_unix(data.get("current_end")),
            paid_count=int(data.get("paid_count") or 0),
            ended_at=from_unix(data.get("ended_at")),
        )


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 hex digest of the exact raw body, compared in constant time."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def verify_checkout_signature(payment_id: str, subscription_id: str, signature: Optional[str], key_secret: str) -> bool:
    """Checkout handler proof: HMAC-SHA256(key_secret, "<payment_id>|<subscription_id>")."""
    if not key_secret or not signature:
        return False
    message = f"{payment_id}|{subscription_id}".encode()
    expected = hmac.new(key_secret.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


class RazorpayClient:
    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self._http = http or httpx.Client(
            base_url=settings.RAZORPAY_BASE_URL,
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET),
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            headers={"Content-Type": "application/json"},
        )

    @property
    def key_id(self) -> str:
        return self.settings.RAZORPAY_KEY_ID

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        if not self.settings.provider_configured:
            raise ProviderError("Razorpay credentials are not configured")
        try:
            r = self._http.request(method, path, json=body)
        except httpx.TimeoutException as e:
            logger.warning("[Razorpay] Timeout on %s %s: %s", method, path, e)
            raise ProviderError(f"Razorpay timeout on {path}") from e
        except httpx.RequestError as e:
            logger.warning("[Razorpay] Request error on %s %s: %s", method, path, e)
            raise ProviderError(f"Razorpay request failed on {path}") from e

        if r.status_code >= 400:
            logger.warning("[Razorpay] %s %s -> %s: %s", method, path, r.status_code, r.text[:500])
            raise ProviderError(f"Razorpay returned {r.status_code} for {path}")
        try:
            return r.json()
        except ValueError as e:
            raise ProviderError(f"Razorpay returned a non-JSON body for {path}") from e

    def _plan_id_for(self, plan: Plan) -> str:
        # Reuse a configured plan id when one maps to this plan.
        for provider_plan_id, local_plan in self.settings.RAZORPAY_PLAN_IDS.items():
            if local_plan == plan.value:
                return provider_plan_id

        period = PROVIDER_PERIOD[plan]
        created = self._request(
            "POST",
            "/plans",
            {
                "period": period,
                "interval": 1,
                "item": {
                    "name": f"{self.settings.APP_NAME} {plan.value.replace('_', ' ').title()} Plan",
                    "amount": plan_amount(plan, self.settings),
                    "currency": self.settings.RAZORPAY_CURRENCY,
                },
            },
        )
        logger.info("[Razorpay] Created %s plan %s", period, created.get("id"))
        return created["id"]

    def create_recurring_plan(self, plan: Plan, owner_id: str, email: Optional[str] = None) -> str:
        """Create a recurring subscription for `plan` and return its external id."""
        notes = {"user_id": owner_id, "plan": plan.value}
        if email:
            notes["customer_email"] = email
        data = self._request(
            "POST",
            "/subscriptions",
            {
                "plan_id": self._plan_id_for(plan),
                "total_count": PROVIDER_TOTAL_COUNT[plan],
                "customer_notify": 1,
                "notes": notes,
            },
        )
        external_id = data.get("id")
        if not external_id:
            raise ProviderError("Razorpay did not return a subscription id")
        logger.info("[Razorpay] Created subscription %s for owner %s (%s)", external_id, owner_id, plan.value)
        return external_id

    def cancel_recurring_plan(self, external_id: str, immediate: bool = True) -> bool:
        self._request(
            "POST",
            f"/subscriptions/{external_id}/cancel",
            {"cancel_at_cycle_end": 0 if immediate else 1},
        )
        logger.info("[Razorpay] Cancelled subscription %s (immediate=%s)", external_id, immediate)
        return True

    def get_cycle_state(self, external_id: str) -> ExternalCycleState:
        return ExternalCycleState.from_payload(self._request("GET", f"/subscriptions/{external_id}"))


def get_provider():
    """FastAPI dependency; tests override it with a fake."""
    client = RazorpayClient(get_settings())
    try:
        yield client
    finally:
        client.close()
