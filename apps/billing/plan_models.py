"""
Plan catalog and country billing configuration.

Reference data consumed by the Pricing Resolver and the Usage Aggregator:
plans with their base price, per-country local price overrides, per-plan usage
allowances and the tax/gateway/exchange-rate configuration of each country.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from .config import MONEY_DECIMAL_PLACES, MONEY_MAX_DIGITS, RATE_DECIMAL_PLACES
from .currency_models import Currency

# ===============================================================================
# USAGE TYPES
# ===============================================================================

USAGE_TYPE_CHOICES: tuple[tuple[str, Any], ...] = (
    ("whatsapp_messages", _("WhatsApp Messages")),
    ("bookings", _("Bookings")),
    ("api_calls", _("API Calls")),
    ("leads", _("Leads")),
    ("properties", _("Properties")),
    ("listings", _("Listings")),
    ("site_visits", _("Site Visits")),
    ("tour_packages", _("Tour Packages")),
    ("tour_bookings", _("Tour Bookings")),
    ("travelers", _("Travelers")),
)

GATEWAY_CHOICES: tuple[tuple[str, Any], ...] = (
    ("stripe", _("Stripe")),
    ("razorpay", _("Razorpay")),
)


# ===============================================================================
# PLANS
# ===============================================================================


class SubscriptionPlan(models.Model):
    """A sellable plan. Prices are expressed in the plan's base currency."""

    TIER_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("free", _("Free")),
        ("starter", _("Starter")),
        ("pro", _("Pro")),
        ("enterprise", _("Enterprise")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.SlugField(max_length=50, unique=True)
    name = models.CharField(max_length=100)
    tier = models.CharField(max_length=20, choices=TIER_CHOICES, default="starter")

    base_price = models.DecimalField(
        max_digits=MONEY_MAX_DIGITS,
        decimal_places=MONEY_DECIMAL_PLACES,
        validators=[MinValueValidator(Decimal("0"))],
    )
    base_currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name="plans")
    billing_interval_months = models.PositiveSmallIntegerField(default=1)
    trial_days = models.PositiveSmallIntegerField(default=14)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscription_plans"
        verbose_name = _("Subscription Plan")
        verbose_name_plural = _("Subscription Plans")

    def __str__(self) -> str:
        return f"{self.name} ({self.base_price} {self.base_currency_id})"


class PlanLocalPrice(models.Model):
    """Country-specific price that overrides currency conversion"""

    plan = models.ForeignKey(SubscriptionPlan, on_delete=models.CASCADE, related_name="local_prices")
    country = models.CharField(max_length=2)
    local_price = models.DecimalField(
        max_digits=MONEY_MAX_DIGITS,
        decimal_places=MONEY_DECIMAL_PLACES,
        validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Price in the country's billing currency"),
    )

    class Meta:
        db_table = "plan_local_prices"
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.UniqueConstraint(fields=["plan", "country"], name="uniq_plan_local_price"),
        ]

    def __str__(self) -> str:
        return f"{self.plan.code}/{self.country}: {self.local_price}"


class PlanUsageLimit(models.Model):
    """
    Included allowance and overage pricing of one usage type on a plan.

    An empty ``business_type`` applies to every vertical and is used when no
    exact business type row exists. Rates are in the plan's base currency.
    Counters snapshot these values when they are created, so edits only
    affect periods that have not started metering yet.
    """

    plan = models.ForeignKey(SubscriptionPlan, on_delete=models.CASCADE, related_name="usage_limits")
    business_type = models.CharField(max_length=20, blank=True, default="")
    usage_type = models.CharField(max_length=40, choices=USAGE_TYPE_CHOICES)
    included_units = models.PositiveBigIntegerField(default=0)
    overage_rate = models.DecimalField(
        max_digits=MONEY_MAX_DIGITS,
        decimal_places=RATE_DECIMAL_PLACES,
        default=Decimal("0"),
        validators=[MinValueValidator(Decimal("0"))],
    )
    hard_limit = models.PositiveBigIntegerField(
        null=True, blank=True, help_text=_("Absolute ceiling per period; empty means unlimited")
    )
    is_enabled = models.BooleanField(default=True)

    class Meta:
        db_table = "plan_usage_limits"
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.UniqueConstraint(
                fields=["plan", "business_type", "usage_type"], name="uniq_plan_usage_limit"
            ),
        ]

    def __str__(self) -> str:
        scope = self.business_type or "*"
        return f"{self.plan.code}/{scope}/{self.usage_type}: {self.included_units} incl."


# ===============================================================================
# COUNTRY CONFIGURATION
# ===============================================================================


class CountryBillingConfig(models.Model):
    """
    Tax, currency, gateway and exchange-rate configuration of one country.

    ``gateway_config`` is free-form JSON kept per gateway, e.g.
    ``{"stripe": {"account": "acct_1"}, "razorpay": {"capture": true}}``. It is
    parsed into typed settings by the Pricing Resolver and rejected if malformed.
    """

    country = models.CharField(max_length=2, unique=True)
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name="country_configs")

    tax_name = models.CharField(max_length=30, default="VAT")
    tax_rate = models.DecimalField(
        max_digits=6,
        decimal_places=4,
        default=Decimal("0"),
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("1"))],
        help_text=_("Tax rate as a fraction: 0.1800 for 18%"),
    )

    primary_gateway = models.CharField(max_length=20, choices=GATEWAY_CHOICES, blank=True)
    secondary_gateway = models.CharField(max_length=20, choices=GATEWAY_CHOICES, blank=True)
    gateway_config = models.JSONField(default=dict, blank=True)

    exchange_rate = models.DecimalField(
        max_digits=18,
        decimal_places=8,
        default=Decimal("1"),
        help_text=_("Units of the country currency per unit of plan base currency"),
    )
    exchange_rate_updated_at = models.DateTimeField()

    payment_terms_days = models.PositiveSmallIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "country_billing_configs"
        verbose_name = _("Country Billing Configuration")

    def __str__(self) -> str:
        return f"{self.country} ({self.currency_id}, {self.tax_name} {self.tax_rate})"
