"""
Paystack adapter.

Amounts are sent in kobo. Webhooks are signed with HMAC-SHA512 of the raw body
using the secret key.
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
    parse_iso8601,
)
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import GatewayError, ConfigurationError

logger = structlog.get_logger()


class PaystackClient:
    """Async wrapper for Paystack operations."""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None):
        settings = get_settings()
        secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not secret_key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")

        self.base_url = (base_url or settings.PAYSTACK_API_URL).rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json"
        }

    async def _request(self, method: str, endpoint: str, data: Dict = None) -> Dict:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    json=data,
                    timeout=30.0
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                logger.error("paystack_api_error", endpoint=endpoint, error=str(e))
                raise GatewayError(f"Paystack {endpoint} failed: {e}", provider="paystack") from e

    async def initialize_transaction(self, email: str, amount_kobo: int, plan_code: Optional[str], callback_url: str, metadata: Dict) -> Dict:
        """Initialize a transaction; returns the hosted checkout URL."""
        data = {
            "email": email,
            "amount": amount_kobo,
            "callback_url": callback_url,
            "metadata": metadata
        }
        if plan_code:
            data["plan"] = plan_code

        return await self._request("POST", "transaction/initialize", data)

    async def charge_authorization(self, email: str, amount_kobo: int, authorization_code: str, metadata: Dict) -> Dict:
        """Charge a stored authorization code."""
        data = {
            "email": email,
            "amount": amount_kobo,
            "authorization_code": authorization_code,
            "metadata": metadata
        }
        return await self._request("POST", "transaction/charge_authorization", data)

    async def create_subscription(self, email: str, plan_code: str, authorization_code: str) -> Dict:
        data = {"customer": email, "plan": plan_code, "authorization": authorization_code}
        return await self._request("POST", "subscription", data)

    async def fetch_subscription(self, code_or_token: str) -> Dict:
        return await self._request("GET", f"subscription/{code_or_token}")

    async def disable_subscription(self, code: str, token: str) -> Dict:
        data = {"code": code, "token": token}
        return await self._request("POST", "subscription/disable", data)


class PaystackAdapter(PaymentGatewayAdapter):
    provider = PaymentProvider.PAYSTACK

    STATUS_MAP = {
        "active": SubscriptionStatus.ACTIVE,
        "non-renewing": SubscriptionStatus.ACTIVE,
        "attention": SubscriptionStatus.PAST_DUE,
        "completed": SubscriptionStatus.EXPIRED,
        "complete": SubscriptionStatus.EXPIRED,
        "cancelled": SubscriptionStatus.CANCELLED,
    }

    def __init__(self, client: Optional[PaystackClient] = None, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        self.client = client or PaystackClient()
        self.callback_url = f"{get_settings().FRONTEND_URL}/billing?provider=paystack"

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
        if not email:
            return GatewaySubscriptionResult(success=False, error="Paystack requires a customer email")

        plan_code = (plan.gateway_plan_ids or {}).get("paystack")
        metadata = {"tenant_id": str(tenant_id), "plan_id": plan.id, "cycle": cycle.value, **(metadata or {})}

        try:
            if payment_method and plan_code:
                response = await self._timed(
                    "create_subscription",
                    self.client.create_subscription(email, plan_code, payment_method),
                )
                data = response.get("data", {})
                return GatewaySubscriptionResult(
                    success=True,
                    gateway_subscription_id=data.get("subscription_code"),
                    gateway_customer_id=str(data.get("customer") or "") or None,
                    status=self.map_status(data.get("status")) or SubscriptionStatus.ACTIVE,
                    current_period_end=parse_iso8601(data.get("next_payment_date")),
                )

            # No stored authorization: send the customer to hosted checkout
            response = await self._timed(
                "create_subscription",
                self.client.initialize_transaction(
                    email=email,
                    amount_kobo=to_minor_units(amount),
                    plan_code=plan_code,
                    callback_url=self.callback_url,
                    metadata=metadata,
                ),
            )
        except GatewayError as e:
            return GatewaySubscriptionResult(success=False, error=e.message)

        data = response.get("data", {})
        logger.info("paystack_checkout_initialized", tenant_id=str(tenant_id), reference=data.get("reference"))
        return GatewaySubscriptionResult(success=True, checkout_url=data.get("authorization_url"))

    async def cancel_subscription(self, gateway_subscription_id: str) -> GatewayResult:
        try:
            details = await self._timed("fetch_subscription", self.client.fetch_subscription(gateway_subscription_id))
            token = details.get("data", {}).get("email_token")
            if not token:
                return GatewayResult(success=False, error="Paystack subscription has no email token")
            await self._timed("cancel_subscription", self.client.disable_subscription(gateway_subscription_id, token))
        except GatewayError as e:
            return GatewayResult(success=False, error=e.message)
        return GatewayResult(success=True)

    async def get_status(self, gateway_subscription_id: str) -> RemoteStatus:
        response = await self._timed("get_status", self.client.fetch_subscription(gateway_subscription_id))
        data = response.get("data", {})
        raw = data.get("status", "")
        return RemoteStatus(
            status=self.map_status(raw),
            raw_status=raw,
            current_period_end=parse_iso8601(data.get("next_payment_date")),
        )

    async def charge_one_time(
        self,
        amount: Decimal,
        currency: str,
        payment_method: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        if not email:
            return ChargeResult(success=False, error="Paystack requires a customer email")

        try:
            if payment_method:
                response = await self._timed(
                    "charge_one_time",
                    self.client.charge_authorization(email, to_minor_units(amount), payment_method, metadata),
                )
                data = response.get("data", {})
                if data.get("status") != "success":
                    return ChargeResult(
                        success=False,
                        transaction_id=data.get("reference"),
                        error=data.get("gateway_response") or "Charge declined",
                    )
                return ChargeResult(success=True, transaction_id=data.get("reference"))

            response = await self._timed(
                "charge_one_time",
                self.client.initialize_transaction(
                    email=email,
                    amount_kobo=to_minor_units(amount),
                    plan_code=None,
                    callback_url=self.callback_url,
                    metadata=metadata,
                ),
            )
        except GatewayError as e:
            return ChargeResult(success=False, error=e.message)

        data = response.get("data", {})
        return ChargeResult(
            success=True,
            transaction_id=data.get("reference"),
            checkout_url=data.get("authorization_url"),
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookVerification:
        if not signature or not secret:
            return WebhookVerification(valid=False, error="Missing signature or secret")

        expected = hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            logger.warning("paystack_invalid_signature")
            return WebhookVerification(valid=False, error="Signature mismatch")

        try:
            body = json.loads(payload)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON payload")

        return WebhookVerification(valid=True, event=self._normalize(body))

    def _normalize(self, body: Dict[str, Any]) -> NormalizedEvent:
        event_type = body.get("event", "unknown")
        data = body.get("data") or {}
        subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        ref = data.get("id") or data.get("reference") or data.get("subscription_code") or ""

        event = NormalizedEvent(
            provider=self.provider,
            event_id=f"{event_type}:{ref}",
            event_type=event_type,
            kind=WebhookEventKind.IGNORED,
            metadata=metadata,
        )

        if event_type == "charge.success":
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = data.get("reference")
            event.amount = from_minor_units(data.get("amount"))
            event.currency = data.get("currency")
            event.gateway_subscription_id = subscription.get("subscription_code")
        elif event_type == "invoice.update" and data.get("paid"):
            transaction = data.get("transaction") or {}
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = transaction.get("reference")
            event.amount = from_minor_units(data.get("amount"))
            event.gateway_subscription_id = subscription.get("subscription_code")
            event.current_period_end = parse_iso8601(subscription.get("next_payment_date"))
        elif event_type == "invoice.payment_failed":
            event.kind = WebhookEventKind.CHARGE_FAILED
            event.gateway_subscription_id = subscription.get("subscription_code")
        elif event_type in ("subscription.create", "subscription.not_renew"):
            event.kind = WebhookEventKind.SUBSCRIPTION_UPDATED
            event.gateway_subscription_id = data.get("subscription_code")
            event.remote_status = self.map_status(data.get("status"))
            event.current_period_end = parse_iso8601(data.get("next_payment_date"))
        elif event_type == "subscription.disable":
            event.kind = WebhookEventKind.SUBSCRIPTION_CANCELLED
            event.gateway_subscription_id = data.get("subscription_code")

        return event
