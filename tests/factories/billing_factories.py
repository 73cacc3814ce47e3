# ===============================================================================
# TEST FACTORIES FOR BILLING
# ===============================================================================

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from apps.billing.models import (
    CountryBillingConfig,
    Currency,
    Invoice,
    PlanUsageLimit,
    Subscription,
    SubscriptionPlan,
)
from apps.tenants.models import Tenant


def period_start() -> datetime:
    """Fixed period start used across billing tests (UTC midnight, 1 Jan 2026)"""
    return datetime(2026, 1, 1, tzinfo=UTC)


# ===============================================================================
# CATALOG
# ===============================================================================


def create_currency(code: str = "USD", decimals: int = 2) -> Currency:
    """Create (or reuse) a currency."""
    symbols = {"USD": "$", "INR": "₹", "GBP": "£"}
    currency, _created = Currency.objects.get_or_create(
        code=code, defaults={"name": code, "symbol": symbols.get(code, code), "decimals": decimals}
    )
    return currency


@dataclass
class CountryConfigRequest:
    """Parameter object for country billing configuration"""

    country: str = "US"
    currency: str = "USD"
    tax_name: str = "Sales Tax"
    tax_rate: Decimal = Decimal("0")
    primary_gateway: str = "stripe"
    secondary_gateway: str = ""
    gateway_config: dict[str, Any] = field(default_factory=dict)
    exchange_rate: Decimal = Decimal("1")
    payment_terms_days: int | None = None


def create_country_config(request: CountryConfigRequest | None = None) -> CountryBillingConfig:
    request = request or CountryConfigRequest()
    return CountryBillingConfig.objects.create(
        country=request.country,
        currency=create_currency(request.currency),
        tax_name=request.tax_name,
        tax_rate=request.tax_rate,
        primary_gateway=request.primary_gateway,
        secondary_gateway=request.secondary_gateway,
        gateway_config=request.gateway_config,
        exchange_rate=request.exchange_rate,
        exchange_rate_updated_at=timezone.now(),
        payment_terms_days=request.payment_terms_days,
    )


def create_plan(
    code: str = "starter", base_price: Decimal = Decimal("100.00"), currency: str = "USD", trial_days: int = 14
) -> SubscriptionPlan:
    return SubscriptionPlan.objects.create(
        code=code,
        name=code.title(),
        base_price=base_price,
        base_currency=create_currency(currency),
        trial_days=trial_days,
    )


def create_usage_limit(
    plan: SubscriptionPlan,
    usage_type: str = "whatsapp_messages",
    included_units: int = 1000,
    overage_rate: Decimal = Decimal("0.05"),
    hard_limit: int | None = None,
    business_type: str = "",
    is_enabled: bool = True,
) -> PlanUsageLimit:
    return PlanUsageLimit.objects.create(
        plan=plan,
        usage_type=usage_type,
        included_units=included_units,
        overage_rate=overage_rate,
        hard_limit=hard_limit,
        business_type=business_type,
        is_enabled=is_enabled,
    )


# ===============================================================================
# TENANTS & SUBSCRIPTIONS
# ===============================================================================


def create_tenant(slug: str = "acme", country: str = "US", business_type: str = "clinic") -> Tenant:
    return Tenant.objects.create(
        name=slug.title(), slug=slug, country=country, business_type=business_type, email=f"billing@{slug}.test"
    )


def create_subscription(
    tenant: Tenant,
    plan: SubscriptionPlan,
    status: str = "active",
    start: datetime | None = None,
    payment_method_ref: str = "pm_card_visa",
    gateway_customer_id: str = "cus_test_1",
    trial_ends_at: datetime | None = None,
) -> Subscription:
    """Create a subscription directly, bypassing the lifecycle manager."""
    start = start or period_start()
    end = trial_ends_at or start + relativedelta(months=plan.billing_interval_months)
    return Subscription.objects.create(
        tenant=tenant,
        plan=plan,
        status=status,
        current_period_start=start,
        current_period_end=end,
        trial_ends_at=trial_ends_at,
        payment_method_ref=payment_method_ref,
        gateway_customer_id=gateway_customer_id,
    )


def create_invoice(
    subscription: Subscription, total: Decimal = Decimal("100.00"), number: str = "INV-202601-000001"
) -> Invoice:
    """Create an open invoice with sensible defaults (no lines)."""
    start = subscription.current_period_start
    currency = CountryBillingConfig.objects.get(country=subscription.tenant.country).currency
    return Invoice.objects.create(
        tenant=subscription.tenant,
        subscription=subscription,
        number=number,
        sequence_number=int(number.rsplit("-", 1)[-1]),
        status="pending",
        period_start=start,
        period_end=subscription.current_period_end,
        country=subscription.tenant.country,
        currency=currency,
        subtotal=total,
        total_amount=total,
        due_date=timezone.now() + timedelta(days=7),
    )
