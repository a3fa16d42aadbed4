"""
Gateway Webhook Endpoint

POST /webhooks/{provider} - Signed notifications from stripe, paypal, razorpay, paystack.

The raw body goes to ReconciliationHandler untouched; signature checks run on
those exact bytes.
"""

import structlog
from fastapi import APIRouter, Depends, Request

from ledgerline.models.subscription import PaymentProvider
from ledgerline.modules.billing.api.v1.deps import get_reconciliation_handler
from ledgerline.modules.billing.domain.reconciliation import ReconciliationHandler
from ledgerline.shared.core.exceptions import NotFoundError

logger = structlog.get_logger()
router = APIRouter(tags=["Webhooks"])

SIGNATURE_HEADERS = {
    PaymentProvider.STRIPE: "stripe-signature",
    PaymentProvider.PAYPAL: "paypal-transmission-sig",
    PaymentProvider.RAZORPAY: "x-razorpay-signature",
    PaymentProvider.PAYSTACK: "x-paystack-signature",
}


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    handler: ReconciliationHandler = Depends(get_reconciliation_handler),
):
    try:
        gateway = PaymentProvider(provider.lower())
    except ValueError:
        raise NotFoundError(f"Unknown payment provider: {provider}")

    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[gateway])
    result = await handler.handle(gateway, payload, signature, headers=request.headers)

    return {
        "received": True,
        "outcome": result.outcome.value,
        "event_id": result.event_id,
    }
