"""
Uniform payment gateway capability.

Each provider implements PaymentGatewayAdapter. Calls are bounded by
GATEWAY_TIMEOUT_SECONDS and never retried inline; failed calls come back as
unsuccessful results (or GatewayError for status lookups) and the renewal
scheduler owns retry policy.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Awaitable, Dict, Mapping, Optional, TypeVar
from uuid import UUID

import structlog

from ledgerline.models.pricing import BillingCycle, SubscriptionPlan
from ledgerline.models.subscription import PaymentProvider, SubscriptionStatus
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import GatewayError
from ledgerline.shared.core.ops_metrics import GATEWAY_CALLS, GATEWAY_LATENCY

logger = structlog.get_logger()

T = TypeVar("T")


class WebhookEventKind(str, Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    IGNORED = "ignored"


@dataclass
class GatewaySubscriptionResult:
    success: bool
    gateway_subscription_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None
    checkout_url: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class GatewayResult:
    success: bool
    error: Optional[str] = None


@dataclass
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    checkout_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RemoteStatus:
    status: Optional[SubscriptionStatus]  # None when the provider status has no canonical meaning
    raw_status: str
    current_period_end: Optional[datetime] = None


@dataclass
class NormalizedEvent:
    provider: PaymentProvider
    event_id: str
    event_type: str
    kind: WebhookEventKind
    gateway_subscription_id: Optional[str] = None
    charge_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    remote_status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def subscription_ref(self) -> Optional[str]:
        """Our own subscription id when the provider echoes it back in metadata."""
        value = self.metadata.get("subscription_id")
        return str(value) if value else None


@dataclass
class WebhookVerification:
    valid: bool
    event: Optional[NormalizedEvent] = None
    error: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    """Decimal major units to integer cents/kobo/paise."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class PaymentGatewayAdapter(ABC):
    provider: PaymentProvider
    # Provider status vocabulary -> canonical status; unknown statuses map to None
    STATUS_MAP: Dict[str, SubscriptionStatus] = {}

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else get_settings().GATEWAY_TIMEOUT_SECONDS

    def map_status(self, raw_status: Optional[str]) -> Optional[SubscriptionStatus]:
        if not raw_status:
            return None
        return self.STATUS_MAP.get(raw_status.lower())

    async def _timed(self, operation: str, call: Awaitable[T]) -> T:
        """Runs a provider call under the configured timeout and records metrics."""
        provider = self.provider.value
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            GATEWAY_CALLS.labels(provider=provider, operation=operation, outcome="timeout").inc()
            logger.error("gateway_call_timeout", provider=provider, operation=operation, timeout=self.timeout)
            raise GatewayError(f"{provider} {operation} timed out after {self.timeout}s", provider=provider) from e
        except GatewayError:
            GATEWAY_CALLS.labels(provider=provider, operation=operation, outcome="failure").inc()
            raise
        finally:
            GATEWAY_LATENCY.labels(provider=provider, operation=operation).observe(time.perf_counter() - start)

        GATEWAY_CALLS.labels(provider=provider, operation=operation, outcome="success").inc()
        return result

    @abstractmethod
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
        ...

    @abstractmethod
    async def cancel_subscription(self, gateway_subscription_id: str) -> GatewayResult:
        ...

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookVerification:
        """Authenticates the raw body before it is parsed."""

    @abstractmethod
    async def get_status(self, gateway_subscription_id: str) -> RemoteStatus:
        """Raises GatewayError when the provider cannot be reached."""

    @abstractmethod
    async def charge_one_time(
        self,
        amount: Decimal,
        currency: str,
        payment_method: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        ...


def parse_iso8601(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("gateway_timestamp_unparseable", value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_unix(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
