"""
Wiring for the billing core.

Collaborators are built once per process (gateways, notifier) or per session
(state machine, invoices, usage) and passed in explicitly; nothing here holds
a reference back to its caller.
"""

from functools import lru_cache
from typing import Callable, Optional
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.modules.billing.adapters.registry import GatewayRegistry, build_gateway_registry
from ledgerline.modules.billing.domain.invoices import InvoiceRecorder
from ledgerline.modules.billing.domain.state_machine import SubscriptionStateMachine
from ledgerline.modules.billing.domain.usage import UsageProvider, SqlUsageProvider
from ledgerline.modules.notifications.domain import get_notification_sink
from ledgerline.modules.notifications.domain.base import NotificationSink


@lru_cache
def get_gateway_registry() -> GatewayRegistry:
    return build_gateway_registry()


def build_state_machine(
    db: AsyncSession,
    gateways: Optional[GatewayRegistry] = None,
    notifier: Optional[NotificationSink] = None,
    usage: Optional[UsageProvider] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(
        db,
        gateways or get_gateway_registry(),
        notifier or get_notification_sink(),
        invoices=InvoiceRecorder(db),
        usage=usage or SqlUsageProvider(db),
        clock=clock,
    )
