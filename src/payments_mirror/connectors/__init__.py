"""Payment provider gateways."""

from typing import Callable, Optional

from ..mode import ModeContext
from .base import (
    MAX_PAGE_SIZE,
    CreatedIntent,
    ProviderGateway,
    ProviderPaymentSnapshot,
    ProviderRefundSnapshot,
)
from .events import (
    ProviderEvent,
    DecodedEvent,
    PaymentSucceeded,
    PaymentFailed,
    RefundCreated,
    RefundUpdated,
    UnknownEvent,
    decode_event,
    verify_signature,
)
from .stripe_connector import StripeGateway
from .simulator_connector import (
    SimulatedProvider,
    SimulatedPaymentIntent,
    SimulatedRefund,
    SimulatorConfig,
    SimulatorGateway,
)

GatewayFactory = Callable[[ModeContext], ProviderGateway]


def get_gateway_factory(
    provider: str = "stripe",
    simulator: Optional[SimulatedProvider] = None,
) -> GatewayFactory:
    """Factory function returning a gateway constructor for ``provider``.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = provider.lower()
    if provider == "stripe":
        return StripeGateway
    if provider == "simulator":
        return simulator or SimulatedProvider()
    raise ValueError(f"Unsupported payment provider: {provider}")


__all__ = [
    # Base classes and models
    "MAX_PAGE_SIZE",
    "CreatedIntent",
    "ProviderGateway",
    "ProviderPaymentSnapshot",
    "ProviderRefundSnapshot",
    "GatewayFactory",
    "get_gateway_factory",
    # Events
    "ProviderEvent",
    "DecodedEvent",
    "PaymentSucceeded",
    "PaymentFailed",
    "RefundCreated",
    "RefundUpdated",
    "UnknownEvent",
    "decode_event",
    "verify_signature",
    # Gateways
    "StripeGateway",
    "SimulatedProvider",
    "SimulatedPaymentIntent",
    "SimulatedRefund",
    "SimulatorConfig",
    "SimulatorGateway",
]
