"""
Subscription API Endpoints

Provides:
- GET /plans - Active plans
- POST /subscriptions - Subscribe the tenant to a plan
- GET /subscriptions/{id} - Subscription detail
- POST /subscriptions/{id}/upgrade | /upgrade/confirm | /downgrade
- POST /subscriptions/{id}/cancel | /reactivate | /coupon | /sync
- GET /subscriptions/{id}/invoices - Invoices for the subscription

Errors are LedgerlineExceptions, mapped to responses by the app-level handler.
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.invoice import Invoice
from ledgerline.models.pricing import SubscriptionPlan
from ledgerline.models.subscription import PaymentProvider, Subscription
from ledgerline.modules.billing.api.v1.deps import get_state_machine, get_tenant_id
from ledgerline.modules.billing.domain.state_machine import SubscriptionStateMachine
from ledgerline.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


class CreateSubscriptionRequest(BaseModel):
    plan_id: str
    provider: PaymentProvider
    customer_email: Optional[str] = None
    payment_method: Optional[str] = None


class PlanChangeRequest(BaseModel):
    plan_id: str
    payment_method: Optional[str] = None


class ConfirmUpgradeRequest(BaseModel):
    transaction_id: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    immediate: bool = False


class ReactivateRequest(BaseModel):
    payment_method: Optional[str] = None


class CouponRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_subscription(sub: Subscription) -> Dict[str, Any]:
    change = sub.plan_change
    cancellation = sub.cancellation
    discount = sub.discount
    return {
        "id": str(sub.id),
        "tenant_id": str(sub.tenant_id),
        "plan_id": sub.plan_id,
        "status": sub.status,
        "provider": sub.provider,
        "gateway_subscription_id": sub.gateway_subscription_id,
        "checkout_url": sub.checkout_url,
        "start_date": _iso(sub.start_date),
        "end_date": _iso(sub.end_date),
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "auto_renew": sub.auto_renew,
        "renewal_attempts": sub.renewal_attempts,
        "grace_period_end": _iso(sub.grace_period_end),
        "pending_upgrade": {
            "target_plan_id": change.target_plan_id,
            "prorated_amount": _money(change.prorated_amount),
            "status": change.status.value,
            "initiated_at": _iso(change.initiated_at),
        } if sub.pending_upgrade else None,
        "scheduled_downgrade": {
            "target_plan_id": change.target_plan_id,
            "effective_at": _iso(change.effective_at),
        } if sub.scheduled_downgrade else None,
        "cancellation": {
            "reason": cancellation.reason,
            "immediate": cancellation.immediate,
            "at_period_end": cancellation.at_period_end,
            "requested_at": _iso(cancellation.requested_at),
        } if cancellation else None,
        "discount": {
            "code": discount.code,
            "type": discount.discount_type.value,
            "value": _money(discount.value),
        } if discount else None,
        "limits": sub.limits_snapshot or {},
    }


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoice_number": invoice.invoice_number,
        "amount": _money(invoice.amount),
        "tax": _money(invoice.tax),
        "total": _money(invoice.total),
        "currency": invoice.currency,
        "status": invoice.status,
        "line_items": invoice.line_items,
        "document_url": invoice.document_url,
        "issued_at": _iso(invoice.issued_at),
        "paid_at": _iso(invoice.paid_at),
    }


@router.get("/plans")
async def list_plans(db: AsyncSession = Depends(get_db)):
    """Active plans, cheapest first. No tenant required."""
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.price)
    )
    return [{
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "price": str(p.price),
        "currency": p.currency,
        "billing_cycle": p.cycle.value,
        "limits": p.plan_limits.as_dict(),
        "features": p.features or {},
    } for p in result.scalars().all()]


@router.post("/subscriptions", status_code=201)
async def create_subscription(
    body: CreateSubscriptionRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.create_subscription(
        tenant_id,
        body.plan_id,
        body.provider,
        customer_email=body.customer_email,
        payment_method=body.payment_method,
    )
    return serialize_subscription(sub)


@router.get("/subscriptions/{subscription_id}")
async def get_subscription(
    subscription_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.get_subscription(subscription_id, tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/upgrade")
async def upgrade_subscription(
    subscription_id: UUID,
    body: PlanChangeRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.upgrade_plan(subscription_id, body.plan_id, payment_method=body.payment_method, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/upgrade/confirm")
async def confirm_upgrade(
    subscription_id: UUID,
    body: ConfirmUpgradeRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.confirm_upgrade(subscription_id, transaction_id=body.transaction_id, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/downgrade")
async def downgrade_subscription(
    subscription_id: UUID,
    body: PlanChangeRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.downgrade_plan(subscription_id, body.plan_id, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: UUID,
    body: CancelRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.cancel_subscription(subscription_id, reason=body.reason, immediate=body.immediate, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/reactivate")
async def reactivate_subscription(
    subscription_id: UUID,
    body: ReactivateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.reactivate_subscription(subscription_id, payment_method=body.payment_method, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/coupon")
async def apply_coupon(
    subscription_id: UUID,
    body: CouponRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.apply_coupon(subscription_id, body.code, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.post("/subscriptions/{subscription_id}/sync")
async def sync_subscription(
    subscription_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    sub = await machine.sync_status(subscription_id, tenant_id=tenant_id)
    return serialize_subscription(sub)


@router.get("/subscriptions/{subscription_id}/invoices")
async def list_invoices(
    subscription_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_db),
):
    await machine.get_subscription(subscription_id, tenant_id)
    result = await db.execute(
        select(Invoice)
        .where(Invoice.subscription_id == subscription_id)
        .order_by(Invoice.issued_at.desc())
    )
    return [serialize_invoice(i) for i in result.scalars().all()]
