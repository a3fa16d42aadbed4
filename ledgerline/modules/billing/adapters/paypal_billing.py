"""
PayPal adapter (REST v1 subscriptions, v2 orders).

PayPal webhooks carry an RSA transmission signature that PayPal itself verifies
through the verify-webhook-signature API. The raw body is forwarded verbatim so
the event is never parsed before it is authenticated.
"""

import json
import time
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
    parse_iso8601,
)
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import GatewayError, ConfigurationError

logger = structlog.get_logger()

TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}


def encode_custom_id(metadata: Dict[str, Any]) -> Optional[str]:
    """PayPal offers one 127-char custom field; carry 'subscription_id:type' in it."""
    subscription_id = metadata.get("subscription_id")
    if not subscription_id:
        return None
    kind = metadata.get("type")
    return f"{subscription_id}:{kind}" if kind else str(subscription_id)


def decode_custom_id(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    subscription_id, _, kind = value.partition(":")
    metadata = {"subscription_id": subscription_id}
    if kind:
        metadata["type"] = kind
    return metadata


class PayPalClient:
    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None, base_url: Optional[str] = None):
        settings = get_settings()
        self.client_id = client_id or settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or settings.PAYPAL_CLIENT_SECRET
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET not configured")
        self.base_url = (base_url or settings.PAYPAL_API_URL).rstrip("/")
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        response = await client.post(
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            timeout=30.0,
        )
        response.raise_for_status()
        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + int(body.get("expires_in", 300)) - 60
        return self._token

    async def request(self, method: str, path: str, json_body: Any = None, content: Optional[bytes] = None) -> Dict:
        async with httpx.AsyncClient() as client:
            try:
                token = await self._access_token(client)
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                    json=json_body,
                    content=content,
                    timeout=30.0,
                )
                response.raise_for_status()
                return response.json() if response.content else {}
            except httpx.HTTPError as e:
                logger.error("paypal_api_error", path=path, error=str(e))
                raise GatewayError(f"PayPal {path} failed: {e}", provider="paypal") from e


def _link(body: Dict[str, Any], rel: str) -> Optional[str]:
    for link in body.get("links") or []:
        if link.get("rel") in (rel, "payer-action"):
            return link.get("href")
    return None


class PayPalAdapter(PaymentGatewayAdapter):
    provider = PaymentProvider.PAYPAL

    STATUS_MAP = {
        "active": SubscriptionStatus.ACTIVE,
        "suspended": SubscriptionStatus.SUSPENDED,
        "cancelled": SubscriptionStatus.CANCELLED,
        "expired": SubscriptionStatus.EXPIRED,
    }

    def __init__(self, client: Optional[PayPalClient] = None, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        self.client = client or PayPalClient()
        self.frontend_url = get_settings().FRONTEND_URL

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
        paypal_plan_id = (plan.gateway_plan_ids or {}).get("paypal")
        if not paypal_plan_id:
            return GatewaySubscriptionResult(success=False, error=f"Plan {plan.id} has no PayPal plan id")

        body: Dict[str, Any] = {
            "plan_id": paypal_plan_id,
            "custom_id": encode_custom_id(metadata or {}),
            "application_context": {
                "return_url": f"{self.frontend_url}/billing?success=true",
                "cancel_url": f"{self.frontend_url}/billing?cancelled=true",
            },
        }
        if email:
            body["subscriber"] = {"email_address": email}

        try:
            response = await self._timed("create_subscription", self.client.request("POST", "/v1/billing/subscriptions", body))
        except GatewayError as e:
            return GatewaySubscriptionResult(success=False, error=e.message)

        return GatewaySubscriptionResult(
            success=True,
            gateway_subscription_id=response.get("id"),
            checkout_url=_link(response, "approve"),
            status=self.map_status(response.get("status")),
        )

    async def cancel_subscription(self, gateway_subscription_id: str) -> GatewayResult:
        try:
            await self._timed(
                "cancel_subscription",
                self.client.request(
                    "POST",
                    f"/v1/billing/subscriptions/{gateway_subscription_id}/cancel",
                    {"reason": "Cancelled by customer"},
                ),
            )
        except GatewayError as e:
            return GatewayResult(success=False, error=e.message)
        return GatewayResult(success=True)

    async def get_status(self, gateway_subscription_id: str) -> RemoteStatus:
        body = await self._timed("get_status", self.client.request("GET", f"/v1/billing/subscriptions/{gateway_subscription_id}"))
        raw = body.get("status", "")
        return RemoteStatus(
            status=self.map_status(raw),
            raw_status=raw,
            current_period_end=parse_iso8601((body.get("billing_info") or {}).get("next_billing_time")),
        )

    async def charge_one_time(
        self,
        amount: Decimal,
        currency: str,
        payment_method: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        order: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency.upper(), "value": f"{Decimal(amount):.2f}"},
                "custom_id": encode_custom_id(metadata),
                "description": metadata.get("description", "Subscription charge"),
            }],
        }
        if payment_method:
            order["payment_source"] = {"paypal": {"vault_id": payment_method}}

        try:
            created = await self._timed("charge_one_time", self.client.request("POST", "/v2/checkout/orders", order))
            if payment_method and created.get("status") != "COMPLETED":
                created = await self._timed(
                    "capture_order",
                    self.client.request("POST", f"/v2/checkout/orders/{created['id']}/capture", {}),
                )
        except GatewayError as e:
            return ChargeResult(success=False, error=e.message)

        if payment_method and created.get("status") != "COMPLETED":
            return ChargeResult(success=False, transaction_id=created.get("id"), error=f"Order {created.get('status')}")

        return ChargeResult(success=True, transaction_id=created.get("id"), checkout_url=_link(created, "approve"))

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookVerification:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        fields = {name: headers.get(header) for name, header in TRANSMISSION_HEADERS.items()}
        if not signature or not secret or not all(fields.values()):
            return WebhookVerification(valid=False, error="Missing PayPal transmission headers")

        envelope = json.dumps({**fields, "transmission_sig": signature, "webhook_id": secret})
        # Splice the untouched event body into the verification request
        request_body = envelope[:-1].encode() + b', "webhook_event": ' + payload + b"}"

        try:
            result = await self._timed(
                "verify_webhook",
                self.client.request("POST", "/v1/notifications/verify-webhook-signature", content=request_body),
            )
        except GatewayError as e:
            return WebhookVerification(valid=False, error=e.message)

        if result.get("verification_status") != "SUCCESS":
            logger.warning("paypal_invalid_signature", status=result.get("verification_status"))
            return WebhookVerification(valid=False, error="Signature mismatch")

        try:
            body = json.loads(payload)
        except ValueError:
            return WebhookVerification(valid=False, error="Malformed JSON payload")

        return WebhookVerification(valid=True, event=self._normalize(body))

    def _normalize(self, body: Dict[str, Any]) -> NormalizedEvent:
        event_type = body.get("event_type", "unknown")
        resource = body.get("resource") or {}

        event = NormalizedEvent(
            provider=self.provider,
            event_id=body.get("id", ""),
            event_type=event_type,
            kind=WebhookEventKind.IGNORED,
        )

        if event_type == "PAYMENT.SALE.COMPLETED":
            amount = resource.get("amount") or {}
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = resource.get("id")
            event.gateway_subscription_id = resource.get("billing_agreement_id")
            event.amount = Decimal(amount["total"]) if amount.get("total") else None
            event.currency = amount.get("currency")
            event.metadata = decode_custom_id(resource.get("custom"))
        elif event_type == "PAYMENT.CAPTURE.COMPLETED":
            amount = resource.get("amount") or {}
            event.kind = WebhookEventKind.CHARGE_SUCCEEDED
            event.charge_id = resource.get("id")
            event.amount = Decimal(amount["value"]) if amount.get("value") else None
            event.currency = amount.get("currency_code")
            event.metadata = decode_custom_id(resource.get("custom_id"))
            # Orders are tracked by order id; the capture links back to it
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            if order_id:
                event.metadata["transaction_id"] = order_id
        elif event_type in ("BILLING.SUBSCRIPTION.PAYMENT.FAILED", "PAYMENT.CAPTURE.DENIED"):
            event.kind = WebhookEventKind.CHARGE_FAILED
            event.gateway_subscription_id = resource.get("id") if event_type.startswith("BILLING") else None
            event.metadata = decode_custom_id(resource.get("custom_id"))
        elif event_type in (
            "BILLING.SUBSCRIPTION.ACTIVATED",
            "BILLING.SUBSCRIPTION.UPDATED",
            "BILLING.SUBSCRIPTION.SUSPENDED",
            "BILLING.SUBSCRIPTION.EXPIRED",
        ):
            event.kind = WebhookEventKind.SUBSCRIPTION_UPDATED
            event.gateway_subscription_id = resource.get("id")
            event.remote_status = self.map_status(resource.get("status"))
            event.current_period_end = parse_iso8601((resource.get("billing_info") or {}).get("next_billing_time"))
            event.metadata = decode_custom_id(resource.get("custom_id"))
        elif event_type == "BILLING.SUBSCRIPTION.CANCELLED":
            event.kind = WebhookEventKind.SUBSCRIPTION_CANCELLED
            event.gateway_subscription_id = resource.get("id")

        return event
