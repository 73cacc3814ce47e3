"""
Base Payment Gateway for the billing engine
Narrow adapter interface every payment provider implements.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, TypedDict

from apps.billing import config as billing_config

logger = logging.getLogger(__name__)


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


class ChargeRequest(TypedDict):
    """Off-session charge of a saved payment method"""

    invoice_id: str
    invoice_number: str
    attempt_number: int
    amount_minor: int  # smallest currency unit (cents, paise)
    currency: str
    customer_id: str
    payment_method_ref: str
    email: str
    idempotency_key: str


class ChargeOutcome(TypedDict):
    """Accepted charge. ``status`` is 'succeeded' or 'pending' (awaiting webhook)"""

    status: str
    gateway_payment_id: str
    amount_minor: int
    raw_status: str


# ===============================================================================
# ABSTRACT BASE GATEWAY
# ===============================================================================


class BasePaymentGateway(ABC):
    """
    🏛️ Abstract base class for all payment gateways

    ``charge`` either returns an accepted outcome or raises
    ``GatewayTransient`` (network, timeout, provider outage: retry and fall
    back) or ``GatewayDeclined`` (card or business decline: terminal for the
    attempt). Calls are blocking and bounded by ``timeout_seconds``.
    """

    def __init__(self, options: dict[str, Any] | None = None, timeout_seconds: int | None = None) -> None:
        self.options = options or {}
        self.timeout_seconds = timeout_seconds or billing_config.get_gateway_timeout_seconds()
        self.logger = logging.getLogger(f"apps.billing.gateways.{self.__class__.__name__.lower()}")

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        """Gateway identifier (e.g., 'stripe', 'razorpay')"""

    @abstractmethod
    def charge(self, request: ChargeRequest) -> ChargeOutcome:
        """
        Submit an off-session charge

        Args:
            request: Charge details including the per-attempt idempotency key

        Returns:
            ChargeOutcome for an accepted charge

        Raises:
            GatewayTransient: retryable provider or network failure
            GatewayDeclined: the payment method was declined
        """

    def validate_configuration(self) -> bool:
        """
        Validate gateway configuration (API keys, etc.)
        Override in subclasses for specific validation.
        """
        return True


# ===============================================================================
# GATEWAY FACTORY
# ===============================================================================


class PaymentGatewayFactory:
    """
    🏭 Factory for creating payment gateway instances

    Gateways are chosen per country by the Payment Orchestrator.
    """

    _gateways: ClassVar[dict[str, type[BasePaymentGateway]]] = {}

    @classmethod
    def register_gateway(cls, gateway_name: str, gateway_class: type[BasePaymentGateway]) -> None:
        """Register a payment gateway class"""
        cls._gateways[gateway_name] = gateway_class

    @classmethod
    def create_gateway(
        cls, gateway_name: str, options: dict[str, Any] | None = None, timeout_seconds: int | None = None
    ) -> BasePaymentGateway:
        """
        Create payment gateway instance

        Raises:
            ValueError: If gateway not found or not configured
        """
        if gateway_name not in cls._gateways:
            raise ValueError(f"Payment gateway '{gateway_name}' not registered")

        gateway = cls._gateways[gateway_name](options=options, timeout_seconds=timeout_seconds)

        # Validate configuration
        if not gateway.validate_configuration():
            raise ValueError(f"Payment gateway '{gateway_name}' not properly configured")

        logger.debug(f"✅ Created {gateway_name} payment gateway")
        return gateway

    @classmethod
    def list_available_gateways(cls) -> list[str]:
        """List all registered gateway names"""
        return list(cls._gateways.keys())
