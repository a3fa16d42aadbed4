"""
Invoice recording.

An invoice is written once per successful charge, keyed by (provider, gateway
charge id). Rendering the document is delegated to an external renderer and a
rendering failure never undoes the charge bookkeeping.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.invoice import Invoice, InvoiceStatus
from ledgerline.models.subscription import Subscription
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.ops_metrics import INVOICES_RECORDED
from ledgerline.shared.db.base import utc_now

logger = structlog.get_logger()

CENT = Decimal("0.01")


class InvoiceRenderer(Protocol):
    async def render(self, invoice: Invoice) -> Optional[str]:
        """Returns a document reference (path or URL) for the rendered invoice."""


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total": str(self.total),
        }


def generate_invoice_number(now: datetime) -> str:
    return f"INV-{now.year}-{int(now.timestamp() * 1000)}-{secrets.token_hex(3).upper()}"


class InvoiceRecorder:
    def __init__(self, db: AsyncSession, renderer: Optional[InvoiceRenderer] = None, tax_rate: Optional[float] = None):
        self.db = db
        self.renderer = renderer
        rate = tax_rate if tax_rate is not None else get_settings().INVOICE_TAX_RATE
        self.tax_rate = Decimal(str(rate))

    async def find_by_charge(self, provider: str, gateway_charge_id: str) -> Optional[Invoice]:
        result = await self.db.execute(
            select(Invoice).where(
                Invoice.provider == provider,
                Invoice.gateway_charge_id == gateway_charge_id,
            )
        )
        return result.scalar_one_or_none()

    async def record_charge(
        self,
        subscription: Subscription,
        amount: Decimal,
        *,
        gateway_charge_id: str,
        description: str,
        kind: str,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Invoice, bool]:
        """
        Records a paid invoice for a charge. Returns (invoice, created); an
        existing invoice for the same charge is returned unchanged.
        Does not commit; the caller owns the transaction.
        """
        existing = await self.find_by_charge(subscription.provider, gateway_charge_id)
        if existing is not None:
            logger.info(
                "invoice_already_recorded",
                invoice_number=existing.invoice_number,
                gateway_charge_id=gateway_charge_id,
            )
            return existing, False

        now = now or utc_now()
        amount = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
        tax = (amount * self.tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        item = LineItem(description=description, quantity=1, unit_price=amount)

        invoice = Invoice(
            invoice_number=generate_invoice_number(now),
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            amount=amount,
            tax=tax,
            total=amount + tax,
            currency=(currency or "USD").upper(),
            status=InvoiceStatus.PAID.value,
            provider=subscription.provider,
            gateway_charge_id=gateway_charge_id,
            line_items=[item.as_dict()],
            extra={"kind": kind, "plan_id": subscription.plan_id, **(metadata or {})},
            issued_at=now,
            paid_at=now,
        )
        self.db.add(invoice)
        await self.db.flush()

        INVOICES_RECORDED.labels(provider=subscription.provider, kind=kind).inc()
        logger.info(
            "invoice_recorded",
            invoice_number=invoice.invoice_number,
            subscription_id=str(subscription.id),
            amount=str(invoice.total),
            kind=kind,
        )
        return invoice, True

    async def attach_document(self, invoice: Invoice) -> Optional[str]:
        """Asks the renderer for a document reference; failures are logged, not raised."""
        if self.renderer is None or invoice.document_url:
            return invoice.document_url

        try:
            reference = await self.renderer.render(invoice)
        except Exception as e:
            logger.warning("invoice_render_failed", invoice_number=invoice.invoice_number, error=str(e))
            return None

        if reference:
            invoice.document_url = reference
            await self.db.commit()
        return reference
