from enum import Enum
from typing import Any, Protocol

import structlog

from ledgerline.models.subscription import Subscription

logger = structlog.get_logger()


class NotificationKind(str, Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    GRACE_PERIOD_STARTED = "grace_period_started"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    RENEWAL_REMINDER = "renewal_reminder"
    UPGRADE_PENDING_PAYMENT = "upgrade_pending_payment"
    UPGRADE_COMPLETED = "upgrade_completed"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    DOWNGRADE_APPLIED = "downgrade_applied"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    CHARGE_UNAPPLIED = "charge_unapplied"


class NotificationSink(Protocol):
    """
    Delivery channel for lifecycle notices.
    Context carries amounts, dates and, for payments, the invoice.
    """

    async def notify(self, kind: NotificationKind, subscription: Subscription, **context: Any) -> bool: ...


class LoggingNotificationSink:
    """Used when no delivery transport is configured; records the notice in the log."""

    async def notify(self, kind: NotificationKind, subscription: Subscription, **context: Any) -> bool:
        logger.info(
            "notification_logged",
            kind=kind.value,
            subscription_id=str(subscription.id),
            tenant_id=str(subscription.tenant_id),
            context={k: str(v) for k, v in context.items()},
        )
        return True
