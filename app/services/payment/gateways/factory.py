"""
Payment Gateway Factory
Creates and caches PSP client instances
"""
from typing import Dict, Any, Optional, Type

from app.services.payment.gateways.base import BasePaymentGateway
from app.services.payment.gateways.phonepe import PhonePeGateway


class PaymentGatewayFactory:
    """
    Factory for creating payment gateway instances.
    Instances are cached because each one owns its token cache.
    """

    # Registry of available gateways
    _gateways: Dict[str, Type[BasePaymentGateway]] = {
        "phonepe": PhonePeGateway,
    }

    # Cached gateway instances
    _instances: Dict[str, BasePaymentGateway] = {}

    DEFAULT_GATEWAY = "phonepe"

    @classmethod
    def register_gateway(cls, gateway_id: str, gateway_class: Type[BasePaymentGateway]):
        """Register a new payment gateway class"""
        cls._gateways[gateway_id] = gateway_class

    @classmethod
    def get_available_gateways(cls) -> list:
        """Get list of available gateway IDs"""
        return list(cls._gateways.keys())

    @classmethod
    def get_gateway(
        cls,
        gateway_id: str = DEFAULT_GATEWAY,
        config: Optional[Dict[str, Any]] = None
    ) -> BasePaymentGateway:
        """
        Get the process-wide gateway instance.

        Raises:
            ValueError: If gateway is not registered or misconfigured
        """
        if gateway_id not in cls._gateways:
            raise ValueError(f"Unknown payment gateway: {gateway_id}. Available: {list(cls._gateways.keys())}")

        if gateway_id not in cls._instances:
            cls._instances[gateway_id] = cls._gateways[gateway_id](config)

        return cls._instances[gateway_id]

    @classmethod
    def set_gateway(cls, gateway_id: str, instance: BasePaymentGateway):
        """Install a pre-built instance (used by tests and startup wiring)"""
        cls._instances[gateway_id] = instance

    @classmethod
    def clear_cache(cls):
        """Clear all cached gateway instances"""
        cls._instances.clear()


def get_payment_gateway(gateway_id: str = PaymentGatewayFactory.DEFAULT_GATEWAY) -> BasePaymentGateway:
    """Convenience accessor"""
    return PaymentGatewayFactory.get_gateway(gateway_id)
