from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import String, Numeric, Boolean, Integer
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.shared.db.base import Base, JSONType, UTCDateTime, utc_now


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value: str) -> "BillingCycle":
        """Accepts the stored value plus the 'yearly' alias; unknown cycles bill monthly."""
        normalized = (value or "").strip().lower()
        if normalized == "yearly":
            return cls.ANNUAL
        try:
            return cls(normalized)
        except ValueError:
            return cls.MONTHLY


@dataclass(frozen=True)
class PlanLimits:
    """Numeric caps per resource type. None means unlimited."""
    max_contacts: Optional[int] = None
    max_users: Optional[int] = None
    max_campaigns: Optional[int] = None
    max_conversations: Optional[int] = None
    max_flows: Optional[int] = None
    max_automations: Optional[int] = None
    max_connections: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlanLimits":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def as_dict(self) -> Dict[str, Optional[int]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class SubscriptionPlan(Base):
    """
    Catalog entry a subscription bills against.
    Plans are deactivated rather than deleted once referenced.
    """
    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)  # e.g. 'starter', 'growth'
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    billing_cycle: Mapped[str] = mapped_column(String(20), default=BillingCycle.MONTHLY.value)

    limits: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    features: Mapped[Dict[str, bool]] = mapped_column(JSONType, default=dict)
    # Provider-side plan/price identifiers, e.g. {"paypal": "P-123", "paystack": "PLN_abc"}
    gateway_plan_ids: Mapped[Dict[str, str]] = mapped_column(JSONType, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    @property
    def cycle(self) -> BillingCycle:
        return BillingCycle.parse(self.billing_cycle)

    @property
    def plan_limits(self) -> PlanLimits:
        return PlanLimits.from_dict(self.limits)

    def has_feature(self, name: str) -> bool:
        return bool((self.features or {}).get(name, False))
