"""
Pricing Resolver for the billing engine.

Resolves what a tenant pays for a billing period: the plan in force, the
country's tax and gateway configuration, the local base price (override or
converted with the exchange-rate snapshot) and the local overage rates.

Resolution is deterministic for a given configuration snapshot. The snapshot
is returned with the price so the invoice can store it for audit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from django.utils import timezone

from .config import RATE_QUANTUM
from .exceptions import PricingUnresolved
from .models import (
    GATEWAY_CHOICES,
    CountryBillingConfig,
    PlanLocalPrice,
    PlanUsageLimit,
    Subscription,
    SubscriptionPlan,
)

logger = logging.getLogger(__name__)

KNOWN_GATEWAYS = frozenset(name for name, _label in GATEWAY_CHOICES)

# ===============================================================================
# TYPED CONFIGURATION
# ===============================================================================


@dataclass(frozen=True)
class GatewaySettings:
    """Typed view of one gateway entry of ``CountryBillingConfig.gateway_config``"""

    name: str
    options: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: int | None = None


@dataclass(frozen=True)
class CountryBillingProfile:
    """Parsed, validated country configuration"""

    country: str
    currency: str
    currency_decimals: int
    tax_name: str
    tax_rate: Decimal
    exchange_rate: Decimal
    exchange_rate_updated_at: datetime
    payment_terms_days: int | None
    gateways: tuple[GatewaySettings, ...]

    @property
    def primary_gateway(self) -> GatewaySettings | None:
        return self.gateways[0] if self.gateways else None

    @property
    def secondary_gateway(self) -> GatewaySettings | None:
        return self.gateways[1] if len(self.gateways) > 1 else None


def _parse_gateway(config: CountryBillingConfig, name: str, raw: Any) -> GatewaySettings | None:
    if name not in KNOWN_GATEWAYS:
        raise PricingUnresolved(f"Unknown gateway '{name}' for {config.country}", {"country": config.country})
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PricingUnresolved(
            f"Gateway config for '{name}' in {config.country} must be an object",
            {"country": config.country, "gateway": name},
        )
    if raw.get("enabled", True) is False:
        return None

    timeout = raw.get("timeout_seconds")
    if timeout is not None and (not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0):
        raise PricingUnresolved(
            f"Invalid timeout_seconds for '{name}' in {config.country}",
            {"country": config.country, "gateway": name},
        )
    options = {k: v for k, v in raw.items() if k not in ("enabled", "timeout_seconds")}
    return GatewaySettings(name=name, options=options, timeout_seconds=timeout)


def parse_country_config(config: CountryBillingConfig) -> CountryBillingProfile:
    """
    Parse a country row into a typed profile.

    Fails closed: any malformed value raises ``PricingUnresolved`` instead of
    falling back to a guessed tax rate or gateway.
    """
    if not config.is_active:
        raise PricingUnresolved(f"Country {config.country} is not enabled for billing", {"country": config.country})
    if not (Decimal("0") <= config.tax_rate <= Decimal("1")):
        raise PricingUnresolved(f"Tax rate {config.tax_rate} out of range for {config.country}")
    if config.exchange_rate is None or config.exchange_rate <= 0:
        raise PricingUnresolved(f"Missing exchange rate for {config.country}", {"country": config.country})

    raw_gateways = config.gateway_config or {}
    if not isinstance(raw_gateways, dict):
        raise PricingUnresolved(f"Gateway config for {config.country} must be an object", {"country": config.country})

    gateways: list[GatewaySettings] = []
    for name in (config.primary_gateway, config.secondary_gateway):
        if not name or any(g.name == name for g in gateways):
            continue
        parsed = _parse_gateway(config, name, raw_gateways.get(name))
        if parsed is not None:
            gateways.append(parsed)

    return CountryBillingProfile(
        country=config.country,
        currency=config.currency.code,
        currency_decimals=config.currency.decimals,
        tax_name=config.tax_name,
        tax_rate=config.tax_rate,
        exchange_rate=config.exchange_rate,
        exchange_rate_updated_at=config.exchange_rate_updated_at,
        payment_terms_days=config.payment_terms_days,
        gateways=tuple(gateways),
    )


# ===============================================================================
# RESOLUTION RESULT
# ===============================================================================


@dataclass(frozen=True)
class OverageRate:
    usage_type: str
    included_units: int
    overage_rate: Decimal  # local currency, per unit
    hard_limit: int | None
    is_enabled: bool = True


@dataclass(frozen=True)
class EffectivePrice:
    plan_id: str
    plan_code: str
    country: str
    currency: str
    base_price: Decimal
    tax_name: str
    tax_rate: Decimal
    overage_rates: tuple[OverageRate, ...]
    exchange_rate: Decimal
    exchange_rate_updated_at: datetime
    used_local_override: bool
    profile: CountryBillingProfile

    def overage_for(self, usage_type: str) -> OverageRate | None:
        for rate in self.overage_rates:
            if rate.usage_type == usage_type:
                return rate
        return None

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe snapshot stored on the invoice"""
        return {
            "plan_id": self.plan_id,
            "plan_code": self.plan_code,
            "country": self.country,
            "currency": self.currency,
            "base_price": str(self.base_price),
            "local_override": self.used_local_override,
            "tax_name": self.tax_name,
            "tax_rate": str(self.tax_rate),
            "exchange_rate": str(self.exchange_rate),
            "exchange_rate_updated_at": self.exchange_rate_updated_at.isoformat(),
            "overage_rates": {
                r.usage_type: {
                    "included_units": r.included_units,
                    "overage_rate": str(r.overage_rate),
                    "hard_limit": r.hard_limit,
                }
                for r in self.overage_rates
            },
        }


# ===============================================================================
# RESOLVER
# ===============================================================================


class PricingResolver:
    """Resolve a tenant's effective price from catalog and country config"""

    @staticmethod
    def resolve(tenant_id: Any, as_of: datetime | None = None) -> EffectivePrice:
        as_of = as_of or timezone.now()

        subscription = (
            Subscription.objects.select_related("tenant", "plan", "pending_plan").current_for(tenant_id)
        )
        if subscription is None:
            raise PricingUnresolved(f"Tenant {tenant_id} has no subscription", {"tenant_id": str(tenant_id)})

        plan = subscription.plan
        if subscription.pending_plan is not None and as_of >= subscription.current_period_end:
            plan = subscription.pending_plan

        return PricingResolver.resolve_for_plan(subscription.tenant, plan)

    @staticmethod
    def resolve_for_plan(tenant: Any, plan: SubscriptionPlan) -> EffectivePrice:
        if not plan.is_active:
            raise PricingUnresolved(f"Plan {plan.code} is not active", {"plan": plan.code})

        config = CountryBillingConfig.objects.select_related("currency").filter(country=tenant.country).first()
        if config is None:
            logger.error(f"❌ [Pricing] No billing configuration for country {tenant.country}")
            raise PricingUnresolved(
                f"No billing configuration for country {tenant.country}",
                {"tenant_id": str(tenant.id), "country": tenant.country},
            )
        profile = parse_country_config(config)

        # Same currency needs no conversion
        rate = Decimal("1") if plan.base_currency_id == profile.currency else profile.exchange_rate
        quantum = Decimal(1).scaleb(-profile.currency_decimals)

        override = PlanLocalPrice.objects.filter(plan=plan, country=profile.country).first()
        if override is not None:
            base_price = override.local_price.quantize(quantum, rounding=ROUND_HALF_UP)
        else:
            base_price = (plan.base_price * rate).quantize(quantum, rounding=ROUND_HALF_UP)

        overage_rates = tuple(
            OverageRate(
                usage_type=limit.usage_type,
                included_units=limit.included_units,
                overage_rate=(limit.overage_rate * rate).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP),
                hard_limit=limit.hard_limit,
                is_enabled=limit.is_enabled,
            )
            for limit in _limits_for_business_type(plan, tenant.business_type)
        )

        return EffectivePrice(
            plan_id=str(plan.id),
            plan_code=plan.code,
            country=profile.country,
            currency=profile.currency,
            base_price=base_price,
            tax_name=profile.tax_name,
            tax_rate=profile.tax_rate,
            overage_rates=overage_rates,
            exchange_rate=rate,
            exchange_rate_updated_at=profile.exchange_rate_updated_at,
            used_local_override=override is not None,
            profile=profile,
        )


def _limits_for_business_type(plan: SubscriptionPlan, business_type: str) -> list[PlanUsageLimit]:
    """Exact business type rows win over the catch-all (empty) rows"""
    chosen: dict[str, PlanUsageLimit] = {}
    for limit in PlanUsageLimit.objects.filter(plan=plan, business_type__in=("", business_type)):
        current = chosen.get(limit.usage_type)
        if current is None or (limit.business_type and not current.business_type):
            chosen[limit.usage_type] = limit
    return [chosen[k] for k in sorted(chosen)]
