"""Select the processor adapter once, at startup"""

from functools import lru_cache

from billing_gateway.config import Settings, settings
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.gateways.mercadopago import MercadoPagoGateway
from billing_gateway.infrastructure.gateways.sandbox import SandboxGateway

GATEWAYS = {
    MercadoPagoGateway.name: MercadoPagoGateway,
    SandboxGateway.name: SandboxGateway,
}


def build_gateway(config: Settings = settings) -> PaymentGateway:
    try:
        gateway_cls = GATEWAYS[config.payment_gateway]
    except KeyError:
        raise ValueError(
            f"Unknown payment gateway {config.payment_gateway!r}; expected one of {sorted(GATEWAYS)}"
        ) from None
    return gateway_cls()


@lru_cache
def get_configured_gateway() -> PaymentGateway:
    """Process-wide adapter instance (the sandbox keeps its state in memory)"""
    return build_gateway(settings)
