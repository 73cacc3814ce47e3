# ===============================================================================
# SEED BILLING CATALOG COMMAND - CURRENCIES, COUNTRIES, PLANS AND USAGE LIMITS
# ===============================================================================

from decimal import Decimal
from typing import Any

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from apps.billing.models import CountryBillingConfig, Currency, PlanLocalPrice, PlanUsageLimit, SubscriptionPlan

CURRENCIES = [
    {"code": "USD", "name": "US Dollar", "symbol": "$", "decimals": 2},
    {"code": "INR", "name": "Indian Rupee", "symbol": "₹", "decimals": 2},
    {"code": "GBP", "name": "Pound Sterling", "symbol": "£", "decimals": 2},
    {"code": "MYR", "name": "Malaysian Ringgit", "symbol": "RM", "decimals": 2},
]

COUNTRIES = [
    {
        "country": "US",
        "currency": "USD",
        "tax_name": "Sales Tax",
        "tax_rate": Decimal("0"),
        "primary_gateway": "stripe",
        "secondary_gateway": "",
        "exchange_rate": Decimal("1"),
    },
    {
        "country": "IN",
        "currency": "INR",
        "tax_name": "GST",
        "tax_rate": Decimal("0.18"),
        "primary_gateway": "razorpay",
        "secondary_gateway": "stripe",
        "exchange_rate": Decimal("83.00"),
    },
    {
        "country": "GB",
        "currency": "GBP",
        "tax_name": "VAT",
        "tax_rate": Decimal("0.20"),
        "primary_gateway": "stripe",
        "secondary_gateway": "",
        "exchange_rate": Decimal("0.79"),
    },
    {
        "country": "MY",
        "currency": "MYR",
        "tax_name": "SST",
        "tax_rate": Decimal("0.08"),
        "primary_gateway": "stripe",
        "secondary_gateway": "",
        "exchange_rate": Decimal("4.70"),
    },
]

# Monthly base prices in USD
PLANS = [
    {"code": "free", "name": "Free", "tier": "free", "base_price": Decimal("0"), "trial_days": 0},
    {"code": "starter", "name": "Starter", "tier": "starter", "base_price": Decimal("29"), "trial_days": 14},
    {"code": "pro", "name": "Pro", "tier": "pro", "base_price": Decimal("79"), "trial_days": 14},
    {"code": "enterprise", "name": "Enterprise", "tier": "enterprise", "base_price": Decimal("199"), "trial_days": 14},
]

# Regional price points instead of converted prices
LOCAL_PRICES = {
    ("starter", "IN"): Decimal("999"),
    ("pro", "IN"): Decimal("2499"),
    ("enterprise", "IN"): Decimal("7999"),
}

# (included units, overage rate in USD, hard limit)
DEFAULT_PLAN_LIMITS: dict[str, dict[str, tuple[int, str, int | None]]] = {
    "free": {
        "whatsapp_messages": (100, "0.05", 100),
        "leads": (50, "0.10", 50),
        "properties": (10, "0.25", 10),
        "listings": (10, "0.25", 10),
        "site_visits": (25, "0.15", 25),
        "tour_packages": (5, "0.50", 5),
        "tour_bookings": (20, "0.30", 20),
        "travelers": (50, "0.10", 50),
        "bookings": (50, "0.10", 50),
        "api_calls": (1000, "0.001", 1000),
    },
    "starter": {
        "whatsapp_messages": (500, "0.04", None),
        "leads": (200, "0.08", None),
        "properties": (50, "0.20", None),
        "listings": (50, "0.20", None),
        "site_visits": (100, "0.12", None),
        "tour_packages": (25, "0.40", None),
        "tour_bookings": (100, "0.25", None),
        "travelers": (250, "0.08", None),
        "bookings": (200, "0.08", None),
        "api_calls": (10000, "0.0008", None),
    },
    "pro": {
        "whatsapp_messages": (2000, "0.03", None),
        "leads": (1000, "0.05", None),
        "properties": (200, "0.15", None),
        "listings": (200, "0.15", None),
        "site_visits": (500, "0.10", None),
        "tour_packages": (100, "0.30", None),
        "tour_bookings": (500, "0.20", None),
        "travelers": (1000, "0.05", None),
        "bookings": (1000, "0.05", None),
        "api_calls": (50000, "0.0005", None),
    },
    "enterprise": {
        "whatsapp_messages": (10000, "0.02", None),
        "leads": (10000, "0.03", None),
        "properties": (1000, "0.10", None),
        "listings": (1000, "0.10", None),
        "site_visits": (5000, "0.05", None),
        "tour_packages": (500, "0.20", None),
        "tour_bookings": (5000, "0.10", None),
        "travelers": (10000, "0.03", None),
        "bookings": (10000, "0.03", None),
        "api_calls": (500000, "0.0002", None),
    },
}


class Command(BaseCommand):
    """💳 Seed currencies, billing countries, plans and default usage limits"""

    help = "Create or update the default billing catalog"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument(
            "--force",
            action="store_true",
            help="Overwrite existing plans and limits with the defaults",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        force = options.get("force", False)
        self.stdout.write("💳 Seeding billing catalog...")

        with transaction.atomic():
            for data in CURRENCIES:
                Currency.objects.update_or_create(code=data["code"], defaults=data)
            self.stdout.write(f"✅ {len(CURRENCIES)} currencies")

            now = timezone.now()
            for data in COUNTRIES:
                defaults = {**data, "currency_id": data["currency"], "exchange_rate_updated_at": now}
                defaults.pop("country")
                defaults.pop("currency")
                CountryBillingConfig.objects.update_or_create(country=data["country"], defaults=defaults)
            self.stdout.write(f"✅ {len(COUNTRIES)} billing countries")

            plans_created, limits_written = 0, 0
            for data in PLANS:
                plan, created = SubscriptionPlan.objects.get_or_create(
                    code=data["code"], defaults={**data, "base_currency_id": "USD"}
                )
                if not created and force:
                    for key, value in data.items():
                        setattr(plan, key, value)
                    plan.save()
                plans_created += int(created)

                for usage_type, (included, rate, hard_limit) in DEFAULT_PLAN_LIMITS[plan.code].items():
                    limit_defaults = {
                        "included_units": included,
                        "overage_rate": Decimal(rate),
                        "hard_limit": hard_limit,
                    }
                    if force:
                        PlanUsageLimit.objects.update_or_create(
                            plan=plan, business_type="", usage_type=usage_type, defaults=limit_defaults
                        )
                        limits_written += 1
                    else:
                        _limit, limit_created = PlanUsageLimit.objects.get_or_create(
                            plan=plan, business_type="", usage_type=usage_type, defaults=limit_defaults
                        )
                        limits_written += int(limit_created)
            self.stdout.write(f"✅ {plans_created} plans created, {limits_written} usage limits written")

            for (plan_code, country), price in LOCAL_PRICES.items():
                PlanLocalPrice.objects.update_or_create(
                    plan=SubscriptionPlan.objects.get(code=plan_code), country=country, defaults={"local_price": price}
                )
            self.stdout.write(f"✅ {len(LOCAL_PRICES)} local price overrides")

        self.stdout.write(self.style.SUCCESS("🎉 Billing catalog ready"))
