"""
Billing models for the tenant billing engine.

This file serves as a re-export hub; models live in feature modules.
"""

from __future__ import annotations

# Feature-based model imports
from .currency_models import Currency
from .invoice_models import Invoice, InvoiceLine, InvoiceSequence
from .metering_models import UsageEvent, UsagePeriodCounter
from .payment_models import InvoiceChargeLease, PaymentAttempt
from .plan_models import (
    GATEWAY_CHOICES,
    USAGE_TYPE_CHOICES,
    CountryBillingConfig,
    PlanLocalPrice,
    PlanUsageLimit,
    SubscriptionPlan,
)
from .subscription_models import ALLOWED_TRANSITIONS, Subscription

__all__ = [
    "ALLOWED_TRANSITIONS",
    "GATEWAY_CHOICES",
    "USAGE_TYPE_CHOICES",
    "CountryBillingConfig",
    "Currency",
    "Invoice",
    "InvoiceChargeLease",
    "InvoiceLine",
    "InvoiceSequence",
    "PaymentAttempt",
    "PlanLocalPrice",
    "PlanUsageLimit",
    "Subscription",
    "SubscriptionPlan",
    "UsageEvent",
    "UsagePeriodCounter",
]
