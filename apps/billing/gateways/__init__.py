"""
Payment Gateway Implementations for the billing engine
Supports multiple payment providers with a unified interface.
"""

from .base import BasePaymentGateway, ChargeOutcome, ChargeRequest, PaymentGatewayFactory
from .razorpay_gateway import RazorpayGateway
from .stripe_gateway import StripeGateway

__all__ = [
    "BasePaymentGateway",
    "ChargeOutcome",
    "ChargeRequest",
    "PaymentGatewayFactory",
    "RazorpayGateway",
    "StripeGateway",
]
