from typing import Dict, Optional

import structlog

from ledgerline.models.subscription import PaymentProvider
from ledgerline.modules.billing.adapters.base import PaymentGatewayAdapter
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class GatewayRegistry:
    """Maps each PaymentProvider to its adapter."""

    def __init__(self, adapters: Optional[Dict[PaymentProvider, PaymentGatewayAdapter]] = None):
        self._adapters: Dict[PaymentProvider, PaymentGatewayAdapter] = dict(adapters or {})

    def register(self, adapter: PaymentGatewayAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: PaymentProvider | str) -> PaymentGatewayAdapter:
        provider = PaymentProvider(provider)
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(f"Payment provider '{provider.value}' is not configured")
        return adapter

    def providers(self) -> list[PaymentProvider]:
        return list(self._adapters)


def build_gateway_registry() -> GatewayRegistry:
    """Registers an adapter for every provider with credentials in the environment."""
    settings = get_settings()
    registry = GatewayRegistry()

    if settings.STRIPE_SECRET_KEY:
        from ledgerline.modules.billing.adapters.stripe_billing import StripeAdapter
        registry.register(StripeAdapter())
    if settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET:
        from ledgerline.modules.billing.adapters.paypal_billing import PayPalAdapter
        registry.register(PayPalAdapter())
    if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET:
        from ledgerline.modules.billing.adapters.razorpay_billing import RazorpayAdapter
        registry.register(RazorpayAdapter())
    if settings.PAYSTACK_SECRET_KEY:
        from ledgerline.modules.billing.adapters.paystack_billing import PaystackAdapter
        registry.register(PaystackAdapter())

    logger.info("payment_gateways_registered", providers=[p.value for p in registry.providers()])
    return registry
