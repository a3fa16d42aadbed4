"""
Razorpay adapter (REST v1).

Amounts are sent in paise. Webhooks are signed with HMAC-SHA256 (hex) of the
raw body using the webhook secret.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Optional, Dict, Any, Mapping
from uuid import UUID

import httpx
import structlog

from ledgerline.models.pricing import BillingCycle, SubscriptionPlan
from ledgerline.models.subscription import PaymentProvider, SubscriptionStatus
from ledgerline.modules.billing.adapters.base import (
    PaymentGatewayAdapter,
    GatewaySubscriptionResult,
    GatewayResult,
    ChargeResult,
    RemoteStatus,
    NormalizedEvent,
    WebhookVerification,
    WebhookEventKind,
    to_minor_units,
    from_minor_units,
    from_unix,
)
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import GatewayError, ConfigurationError

logger = structlog.get_logger()

PERIODS = {
    BillingCycle.MONTHLY: ("monthly", 1),
    BillingCycle.QUARTERLY: ("monthly", 3),
    BillingCycle.ANNUAL: ("yearly", 1),
}

# Razorpay subscriptions need a finite cycle count
TOTAL_COUNT = {
    BillingCycle.MONTHLY: 120,
    BillingCycle.QUARTERLY: 40,
    BillingCycle.ANNUAL: 10,
}


class RazorpayClient:
    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None, base_url: Optional[str] = None):
        settings = get_settings()
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        if not self.key_id or not self.key_secret:
            raise ConfigurationError("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not configured")
        self.base_url = (base_url or settings.RAZORPAY_API_URL).rstrip("/")

    async def request(self, method: str, path: str, data: Dict = None) -> Dict:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}/{path}",
                    auth=(self.key_id, self.key_secret),
                    json=data,
                    timeout=30.0,
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                logger.error("razorpay_api_error", path=path, error=str(e))
                raise GatewayError(f"Razorpay {path} failed: {e}", provider="razorpay") from e


class RazorpayAdapter(PaymentGatewayAdapter):
    provider = PaymentProvider.RAZORPAY

    STATUS_MAP = {
        "active": SubscriptionStatus.ACTIVE,
        "pending": SubscriptionStatus.PAST_DUE,
        "halted": SubscriptionStatus.SUSPENDED,
        "paused": SubscriptionStatus.SUSPENDED,
        "cancelled": SubscriptionStatus.CANCELLED,
        "completed": SubscriptionStatus.EXPIRED,
        "expired": SubscriptionStatus.EXPIRED,
    }

    def __init__(self, client: Optional[RazorpayClient] = None, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        self.client = client or RazorpayClient()

    async def _plan_id(self, plan: SubscriptionPlan, amount: Decimal, cycle: BillingCycle) -> str:
        existing = (plan.gateway_plan_ids or {}).get("razorpay")
        if existing:
            return existing
        period, interval = PERIODS[cycle]
        created = await self.client.request("POST", "plans", {
            "period": period,
            "interval": interval,
            "item": {
                "name": plan.name,
                "amount": to_minor_units(amount),
                "currency": plan.currency.upper(),
            },
            "notes": {"plan_id": plan.id},
        })
        return created["id"]

    async def create_subscription(
        self,
        tenant_id: UUID,
        plan: SubscriptionPlan,
        amount: Decimal,
        cycle: BillingCycle,
        email: Optional[str],
        payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySubscriptionResult:
        notes = {"tenant_id": str(tenant_id), "plan_id": plan.id, **{k: str(v) for k, v in (metadata or {}).items()}}

        async def subscribe():
            body = {
                "plan_id": await self._plan_id(plan, amount, cycle),
                "total_count": TOTAL_COUNT[cycle],
                "customer_notify": 1,
                "notes": notes,
            }
            if payment_method:
                body["customer_id"] = payment_method
            return await self.client.request("POST", "subscriptions", body)

        try:
            response = await self._timed("create_subscription", subscribe())
        except GatewayError as e:
            return GatewaySubscriptionResult(success=False, error=e.message)

        return GatewaySubscriptionResult(
            success=True,
            gateway_subscription_id=response.get("id"),
            gateway_customer_id=response.get("customer_id"),
            checkout_url=response.get("short_url"),
            status=self.map_status(response.get("status")),
            current_period_end=from_unix(response.get("current_end")),
        )

    async def cancel_subscription(self, gateway_subscription_id: str) -> GatewayResult:
        try:
            await self._timed(
                "cancel_subscription",
                self.client.request("POST", f"subscriptions/{gateway_subscription_id}/cancel", {"cancel_at_cycle_end": 0}),
            )
        except GatewayError as e:
            return GatewayResult(success=False, error=e.message)
        return GatewayResult(success=True)

    async def get_status(self, gateway_subscription_id: str) -> RemoteStatus:
        body = await self._timed("get_status", self.client.request("GET", f"subscriptions/{gateway_subscription_id}"))
        raw = body.get("status", "")
        return RemoteStatus(status=self.map_status(raw), raw_status=raw, current_period_end=from_unix(body.get("current_end")))

    async def charge_one_time(
        self,
        amount: Decimal,
        currency: str,
        payment_method: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        # Payment links collect the charge; the payment_link.paid webhook confirms it
        body: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "description": metadata.get("description", "Subscription charge"),
            "notes": {k: str(v) for k, v in metadata.items()},
        }
        if email:
            body["customer"] = {"email": email}

        try:
            response = await self._timed("charge_one_time", self.client.request("POST", "payment_links", body))
        except GatewayError as e:
            return ChargeResult(success=False, error=e.message)

        return ChargeResult(success=True, transaction_id=response.get("id"), checkout_url=response.get("short_url"))

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookVerification:
        if not signature or not secret:
            return WebhookVerification(valid=False, error="Missing signature or secret")

        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            logger.warning("razorpay_invalid_signature")
            return WebhookVerification(valid=False, error="Signature mismatch")

        try:
            body = json.loads(payload)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON payload")

        headers = {k.lower(): v for k, v in (headers or {}).items()}
        event_id = headers.get("x-razorpay-event-id") or hashlib.sha256(payload).hexdigest()[:32]
        return WebhookVerification(valid=True, event=self._normalize(body, event_id))

    def _normalize(self, body: Dict[str, Any], event_id: str) -> NormalizedEvent:
        event_type = body.get("event", "unknown")
        payload = body.get("payload") or {}
        subscription = (payload.get("subscription") or {}).get("entity") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        payment_link = (payload.get("payment_link") or {}).get("entity") or {}

        event = NormalizedEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            kind=WebhookEventKind.IGNORED,
            gateway_subscription_id=subscription.get("id"),
            metadata=dict(subscription.get("notes") or payment.get("notes") or {}),
        )

        if event_type == "subscription.charged":
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = payment.get("id")
            event.amount = from_minor_units(payment.get("amount"))
            event.currency = payment.get("currency")
            event.current_period_end = from_unix(subscription.get("current_end"))
        elif event_type == "payment_link.paid":
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = payment.get("id")
            event.amount = from_minor_units(payment.get("amount") or payment_link.get("amount_paid"))
            event.currency = payment.get("currency") or payment_link.get("currency")
            event.metadata = {**dict(payment_link.get("notes") or {}), "transaction_id": payment_link.get("id")}
        elif event_type in ("payment.failed", "subscription.pending"):
            event.kind = WebhookEventKind.CHARGE_FAILED
            event.charge_id = payment.get("id")
        elif event_type in ("subscription.activated", "subscription.halted", "subscription.paused",
                            "subscription.resumed", "subscription.completed"):
            event.kind = WebhookEventKind.SUBSCRIPTION_UPDATED
            event.remote_status = self.map_status(subscription.get("status"))
            event.current_period_end = from_unix(subscription.get("current_end"))
        elif event_type == "subscription.cancelled":
            event.kind = WebhookEventKind.SUBSCRIPTION_CANCELLED

        return event
