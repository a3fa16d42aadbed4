from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.modules.billing.adapters.registry import GatewayRegistry
from ledgerline.modules.billing.domain.factory import build_state_machine, get_gateway_registry
from ledgerline.modules.billing.domain.reconciliation import ReconciliationHandler
from ledgerline.modules.billing.domain.state_machine import SubscriptionStateMachine
from ledgerline.modules.notifications.domain import get_notification_sink
from ledgerline.modules.notifications.domain.base import NotificationSink
from ledgerline.shared.db.session import get_db


async def get_tenant_id(x_tenant_id: UUID = Header(..., alias="X-Tenant-ID")) -> UUID:
    """Tenant identity is established upstream; this service only scopes by it."""
    return x_tenant_id


def get_gateways() -> GatewayRegistry:
    return get_gateway_registry()


def get_notifier() -> NotificationSink:
    return get_notification_sink()


def get_state_machine(
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    notifier: NotificationSink = Depends(get_notifier),
) -> SubscriptionStateMachine:
    return build_state_machine(db, gateways=gateways, notifier=notifier)


def get_reconciliation_handler(
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> ReconciliationHandler:
    return ReconciliationHandler(db, gateways, state_machine)
