"""
Stripe adapter.

The SDK is synchronous, so calls run in a worker thread under the adapter timeout.
Webhooks are authenticated with stripe.WebhookSignature.verify_header against the
raw body before the JSON is parsed.
"""

import asyncio
import json
from decimal import Decimal
from typing import Optional, Dict, Any, Mapping
from uuid import UUID

import stripe
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

RECURRING = {
    BillingCycle.MONTHLY: {"interval": "month", "interval_count": 1},
    BillingCycle.QUARTERLY: {"interval": "month", "interval_count": 3},
    BillingCycle.ANNUAL: {"interval": "year", "interval_count": 1},
}


def _period_end(subscription: Dict[str, Any]):
    # Newer API versions report the period on the subscription items
    end = subscription.get("current_period_end")
    if not end:
        items = (subscription.get("items") or {}).get("data") or []
        end = items[0].get("current_period_end") if items else None
    return from_unix(end)


class StripeAdapter(PaymentGatewayAdapter):
    provider = PaymentProvider.STRIPE

    STATUS_MAP = {
        "active": SubscriptionStatus.ACTIVE,
        "trialing": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.PAST_DUE,
        "incomplete": SubscriptionStatus.PAST_DUE,
        "unpaid": SubscriptionStatus.SUSPENDED,
        "paused": SubscriptionStatus.SUSPENDED,
        "canceled": SubscriptionStatus.CANCELLED,
        "cancelled": SubscriptionStatus.CANCELLED,
        "incomplete_expired": SubscriptionStatus.EXPIRED,
    }

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        settings = get_settings()
        api_key = api_key or settings.STRIPE_SECRET_KEY
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = api_key
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        self.frontend_url = settings.FRONTEND_URL

    async def _call(self, operation: str, fn, *args, **kwargs):
        """Runs a blocking SDK call in a thread and converts SDK errors."""
        def invoke():
            try:
                return fn(*args, **kwargs)
            except stripe.StripeError as e:
                logger.error("stripe_api_error", operation=operation, error=str(e))
                raise GatewayError(f"Stripe {operation} failed: {e.user_message or e}", provider="stripe") from e

        return await self._timed(operation, asyncio.to_thread(invoke))

    # --- sync helpers (worker thread) ---

    def _find_or_create_customer(self, email: Optional[str], tenant_id: UUID) -> str:
        if email:
            existing = stripe.Customer.list(email=email, limit=1)
            if existing["data"]:
                return existing["data"][0]["id"]
        customer = stripe.Customer.create(email=email, metadata={"tenant_id": str(tenant_id)})
        return customer["id"]

    def _find_or_create_price(self, plan: SubscriptionPlan, amount: Decimal, cycle: BillingCycle) -> str:
        lookup_key = f"{plan.id}:{cycle.value}:{to_minor_units(amount)}:{plan.currency.lower()}"
        existing = stripe.Price.list(lookup_keys=[lookup_key], limit=1)
        if existing["data"]:
            return existing["data"][0]["id"]
        price = stripe.Price.create(
            unit_amount=to_minor_units(amount),
            currency=plan.currency.lower(),
            recurring=RECURRING[cycle],
            product_data={"name": plan.name},
            lookup_key=lookup_key,
        )
        return price["id"]

    def _subscribe(self, tenant_id, plan, amount, cycle, email, payment_method, metadata):
        customer_id = self._find_or_create_customer(email, tenant_id)
        stripe.PaymentMethod.attach(payment_method, customer=customer_id)
        stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": payment_method})
        return stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": self._find_or_create_price(plan, amount, cycle)}],
            default_payment_method=payment_method,
            metadata=metadata,
        )

    def _checkout(self, plan, amount, cycle, email, metadata):
        return stripe.checkout.Session.create(
            mode="subscription",
            customer_email=email,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": plan.currency.lower(),
                    "unit_amount": to_minor_units(amount),
                    "recurring": RECURRING[cycle],
                    "product_data": {"name": plan.name},
                },
            }],
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=f"{self.frontend_url}/billing?success=true",
            cancel_url=f"{self.frontend_url}/billing?cancelled=true",
        )

    # --- adapter contract ---

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
        metadata = {"tenant_id": str(tenant_id), "plan_id": plan.id, **(metadata or {})}
        try:
            if payment_method:
                sub = await self._call(
                    "create_subscription", self._subscribe,
                    tenant_id, plan, amount, cycle, email, payment_method, metadata,
                )
                return GatewaySubscriptionResult(
                    success=True,
                    gateway_subscription_id=sub["id"],
                    gateway_customer_id=sub.get("customer"),
                    status=self.map_status(sub.get("status")),
                    current_period_end=_period_end(sub),
                )

            session = await self._call("create_subscription", self._checkout, plan, amount, cycle, email, metadata)
        except GatewayError as e:
            return GatewaySubscriptionResult(success=False, error=e.message)

        return GatewaySubscriptionResult(
            success=True,
            gateway_subscription_id=session.get("subscription"),
            gateway_customer_id=session.get("customer"),
            checkout_url=session.get("url"),
        )

    async def cancel_subscription(self, gateway_subscription_id: str) -> GatewayResult:
        try:
            await self._call("cancel_subscription", stripe.Subscription.cancel, gateway_subscription_id)
        except GatewayError as e:
            return GatewayResult(success=False, error=e.message)
        return GatewayResult(success=True)

    async def get_status(self, gateway_subscription_id: str) -> RemoteStatus:
        sub = await self._call("get_status", stripe.Subscription.retrieve, gateway_subscription_id)
        raw = sub.get("status", "")
        return RemoteStatus(status=self.map_status(raw), raw_status=raw, current_period_end=_period_end(sub))

    async def charge_one_time(
        self,
        amount: Decimal,
        currency: str,
        payment_method: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": {k: str(v) for k, v in metadata.items()},
            "receipt_email": email,
        }
        if payment_method:
            params.update(payment_method=payment_method, confirm=True, off_session=True)

        try:
            intent = await self._call("charge_one_time", stripe.PaymentIntent.create, **params)
        except GatewayError as e:
            return ChargeResult(success=False, error=e.message)

        status = intent.get("status")
        if payment_method and status not in ("succeeded", "processing"):
            return ChargeResult(success=False, transaction_id=intent["id"], error=f"Payment intent {status}")
        return ChargeResult(success=True, transaction_id=intent["id"])

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookVerification:
        if not signature or not secret:
            return WebhookVerification(valid=False, error="Missing signature or secret")

        try:
            stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("stripe_invalid_signature", error=str(e))
            return WebhookVerification(valid=False, error="Signature mismatch")

        try:
            body = json.loads(payload)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON payload")

        return WebhookVerification(valid=True, event=self._normalize(body))

    def _normalize(self, body: Dict[str, Any]) -> NormalizedEvent:
        event_type = body.get("type", "unknown")
        obj = (body.get("data") or {}).get("object") or {}

        event = NormalizedEvent(
            provider=self.provider,
            event_id=body.get("id", ""),
            event_type=event_type,
            kind=WebhookEventKind.IGNORED,
            metadata=dict(obj.get("metadata") or {}),
        )

        if event_type in ("invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"):
            # Subscription id and metadata moved under parent.subscription_details in newer API versions
            details = ((obj.get("parent") or {}).get("subscription_details")) or obj.get("subscription_details") or {}
            event.gateway_subscription_id = obj.get("subscription") or details.get("subscription")
            event.metadata = {**dict(details.get("metadata") or {}), **event.metadata}
            event.charge_id = obj.get("id")
            event.currency = (obj.get("currency") or "").upper() or None
            lines = (obj.get("lines") or {}).get("data") or []
            if lines:
                event.current_period_end = from_unix((lines[0].get("period") or {}).get("end"))
            if event_type == "invoice.payment_failed":
                event.kind = WebhookEventKind.CHARGE_FAILED
            else:
                event.kind = WebhookEventKind.CHARGE_SUCCEEDED
                event.amount = from_minor_units(obj.get("amount_paid"))
        elif event_type == "payment_intent.succeeded":
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = obj.get("id")
            event.amount = from_minor_units(obj.get("amount_received") or obj.get("amount"))
            event.currency = (obj.get("currency") or "").upper() or None
        elif event_type == "payment_intent.payment_failed":
            event.kind = WebhookEventKind.CHARGE_FAILED
            event.charge_id = obj.get("id")
        elif event_type == "customer.subscription.updated":
            event.kind = WebhookEventKind.SUBSCRIPTION_UPDATED
            event.gateway_subscription_id = obj.get("id")
            event.remote_status = self.map_status(obj.get("status"))
            event.current_period_end = _period_end(obj)
        elif event_type == "customer.subscription.deleted":
            event.kind = WebhookEventKind.SUBSCRIPTION_CANCELLED
            event.gateway_subscription_id = obj.get("id")

        return event
