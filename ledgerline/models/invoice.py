import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import String, Numeric, ForeignKey, UniqueConstraint, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.shared.db.base import Base, JSONType, UTCDateTime, utc_now
from ledgerline.shared.core.exceptions import InvalidTransitionError


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


class Invoice(Base):
    """
    Append-only record of a successful charge.
    The only permitted update is attaching the rendered document reference.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        # One invoice per provider charge; reconciliation relies on this
        UniqueConstraint("provider", "gateway_charge_id", name="uq_invoices_provider_charge"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("subscriptions.id"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default=InvoiceStatus.PAID.value)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_charge_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # [{"description", "quantity", "unit_price", "total"}]
    line_items: Mapped[list[Dict[str, Any]]] = mapped_column(JSONType, default=list)
    extra: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)

    document_url: Mapped[Optional[str]] = mapped_column(String(1024))

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)


MUTABLE_INVOICE_FIELDS = frozenset({"document_url"})


@event.listens_for(Invoice, "before_update")
def reject_invoice_mutation(mapper, connection, target):
    state = inspect(target)
    changed = [
        attr.key for attr in state.attrs
        if attr.key not in MUTABLE_INVOICE_FIELDS and attr.history.has_changes()
    ]
    if changed:
        raise InvalidTransitionError(
            f"Invoice {target.invoice_number} is immutable",
            code="invoice_immutable",
            details={"fields": changed},
        )


class ProcessedWebhookEvent(Base):
    """Provider event ids already applied, for duplicate-delivery short-circuiting."""
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_processed_webhook_events_provider_event"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
