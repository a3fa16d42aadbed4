import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union, Dict, Any
from sqlalchemy import String, Integer, Boolean, Numeric, Text, ForeignKey, CheckConstraint, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.shared.db.base import Base, JSONType, UTCDateTime, utc_now


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    RAZORPAY = "razorpay"
    PAYSTACK = "paystack"


class UpgradeStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    COMPLETED = "completed"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True)
class PendingUpgrade:
    target_plan_id: str
    prorated_amount: Decimal
    initiated_at: datetime
    status: UpgradeStatus = UpgradeStatus.PENDING_PAYMENT
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ScheduledDowngrade:
    target_plan_id: str
    effective_at: datetime


PlanChange = Union[PendingUpgrade, ScheduledDowngrade]


@dataclass(frozen=True)
class Cancellation:
    reason: Optional[str]
    immediate: bool
    at_period_end: bool
    requested_at: datetime


@dataclass(frozen=True)
class AppliedDiscount:
    code: str
    discount_type: DiscountType
    value: Decimal
    applied_at: datetime


class Subscription(Base):
    """
    A tenant's billing relationship with one plan through one payment provider.
    Mutated only through SubscriptionStateMachine.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_subscriptions_period_order"),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
        Index("ix_subscriptions_gateway_ref", "provider", "gateway_subscription_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(50), ForeignKey("subscription_plans.id"), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.PENDING.value, index=True)

    # Provider linkage, stored once
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    checkout_url: Mapped[Optional[str]] = mapped_column(String(1024))

    # Billing period
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    # Renewal bookkeeping
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    renewal_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_renewal_attempt: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    reminders_sent: Mapped[list[int]] = mapped_column(JSONType, default=list)

    # Plan change in flight (exactly one kind at a time)
    plan_change_kind: Mapped[Optional[str]] = mapped_column(String(20))  # upgrade, downgrade
    plan_change_plan_id: Mapped[Optional[str]] = mapped_column(String(50))
    plan_change_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    plan_change_status: Mapped[Optional[str]] = mapped_column(String(20))
    plan_change_transaction_id: Mapped[Optional[str]] = mapped_column(String(255))
    plan_change_initiated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    plan_change_effective_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancel_immediately: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_requested_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Coupon (recorded, not applied to charges)
    discount_code: Mapped[Optional[str]] = mapped_column(String(50))
    discount_type: Mapped[Optional[str]] = mapped_column(String(20))
    discount_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    discount_applied_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Entitlements of the current plan and quota-warning state keyed by dimension
    limits_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    quota_warnings: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def state(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)

    @property
    def payment_provider(self) -> PaymentProvider:
        return PaymentProvider(self.provider)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATUSES

    # --- plan change ---

    @property
    def plan_change(self) -> Optional[PlanChange]:
        if self.plan_change_kind == "upgrade":
            return PendingUpgrade(
                target_plan_id=self.plan_change_plan_id,
                prorated_amount=Decimal(self.plan_change_amount or 0),
                initiated_at=self.plan_change_initiated_at,
                status=UpgradeStatus(self.plan_change_status or UpgradeStatus.PENDING_PAYMENT.value),
                transaction_id=self.plan_change_transaction_id,
            )
        if self.plan_change_kind == "downgrade":
            return ScheduledDowngrade(
                target_plan_id=self.plan_change_plan_id,
                effective_at=self.plan_change_effective_at,
            )
        return None

    @plan_change.setter
    def plan_change(self, change: Optional[PlanChange]) -> None:
        self.plan_change_kind = None
        self.plan_change_plan_id = None
        self.plan_change_amount = None
        self.plan_change_status = None
        self.plan_change_transaction_id = None
        self.plan_change_initiated_at = None
        self.plan_change_effective_at = None

        if isinstance(change, PendingUpgrade):
            self.plan_change_kind = "upgrade"
            self.plan_change_plan_id = change.target_plan_id
            self.plan_change_amount = change.prorated_amount
            self.plan_change_status = change.status.value
            self.plan_change_transaction_id = change.transaction_id
            self.plan_change_initiated_at = change.initiated_at
        elif isinstance(change, ScheduledDowngrade):
            self.plan_change_kind = "downgrade"
            self.plan_change_plan_id = change.target_plan_id
            self.plan_change_effective_at = change.effective_at
        elif change is not None:
            raise TypeError(f"Unsupported plan change: {change!r}")

    @property
    def pending_upgrade(self) -> Optional[PendingUpgrade]:
        change = self.plan_change
        return change if isinstance(change, PendingUpgrade) else None

    @property
    def scheduled_downgrade(self) -> Optional[ScheduledDowngrade]:
        change = self.plan_change
        return change if isinstance(change, ScheduledDowngrade) else None

    # --- cancellation ---

    @property
    def cancellation(self) -> Optional[Cancellation]:
        if self.cancellation_requested_at is None:
            return None
        return Cancellation(
            reason=self.cancellation_reason,
            immediate=bool(self.cancel_immediately),
            at_period_end=bool(self.cancel_at_period_end),
            requested_at=self.cancellation_requested_at,
        )

    @cancellation.setter
    def cancellation(self, value: Optional[Cancellation]) -> None:
        if value is None:
            self.cancellation_reason = None
            self.cancel_immediately = False
            self.cancel_at_period_end = False
            self.cancellation_requested_at = None
            return
        if value.immediate and value.at_period_end:
            raise ValueError("A cancellation is either immediate or at period end")
        self.cancellation_reason = value.reason
        self.cancel_immediately = value.immediate
        self.cancel_at_period_end = value.at_period_end
        self.cancellation_requested_at = value.requested_at

    # --- discount ---

    @property
    def discount(self) -> Optional[AppliedDiscount]:
        if not self.discount_code:
            return None
        return AppliedDiscount(
            code=self.discount_code,
            discount_type=DiscountType(self.discount_type),
            value=Decimal(self.discount_value),
            applied_at=self.discount_applied_at,
        )

    @discount.setter
    def discount(self, value: Optional[AppliedDiscount]) -> None:
        self.discount_code = value.code if value else None
        self.discount_type = value.discount_type.value if value else None
        self.discount_value = value.value if value else None
        self.discount_applied_at = value.applied_at if value else None

    # --- reminders ---

    def reminder_sent(self, days: int) -> bool:
        return days in (self.reminders_sent or [])

    def mark_reminders_sent(self, *days: int) -> None:
        # Reassign so the JSON column is flagged dirty
        self.reminders_sent = sorted(set(self.reminders_sent or []) | set(days), reverse=True)
