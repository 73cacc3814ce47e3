"""
Django admin configuration for billing models.
Catalog models are editable; ledgers, invoices and payment attempts are read-only.
"""

from typing import Any

from django.contrib import admin
from django.http import HttpRequest

from .models import (
    CountryBillingConfig,
    Currency,
    Invoice,
    InvoiceLine,
    InvoiceSequence,
    PaymentAttempt,
    PlanLocalPrice,
    PlanUsageLimit,
    Subscription,
    SubscriptionPlan,
    UsageEvent,
    UsagePeriodCounter,
)


class ReadOnlyAdminMixin:
    """Ledger rows change only through the billing services"""

    def has_add_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False

    def has_change_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False

    def has_delete_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False


# ===============================================================================
# CATALOG ADMIN
# ===============================================================================


@admin.register(Currency)
class CurrencyAdmin(admin.ModelAdmin):
    """Currency management"""

    list_display = ["code", "name", "symbol", "decimals"]
    search_fields = ["code", "name"]
    ordering = ["code"]


class PlanUsageLimitInline(admin.TabularInline):
    model = PlanUsageLimit
    extra = 0


class PlanLocalPriceInline(admin.TabularInline):
    model = PlanLocalPrice
    extra = 0


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    """Plans with their usage limits and regional prices"""

    list_display = ["code", "name", "tier", "base_price", "base_currency", "trial_days", "is_active"]
    list_filter = ["tier", "is_active"]
    search_fields = ["code", "name"]
    inlines = [PlanUsageLimitInline, PlanLocalPriceInline]


@admin.register(CountryBillingConfig)
class CountryBillingConfigAdmin(admin.ModelAdmin):
    """Per-country currency, tax and gateway configuration"""

    list_display = [
        "country",
        "currency",
        "tax_name",
        "tax_rate",
        "primary_gateway",
        "secondary_gateway",
        "exchange_rate",
        "is_active",
    ]
    list_filter = ["is_active", "primary_gateway"]
    search_fields = ["country"]


# ===============================================================================
# SUBSCRIPTION ADMIN
# ===============================================================================


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Subscriptions; status changes go through the lifecycle manager"""

    list_display = [
        "tenant",
        "plan",
        "status",
        "current_period_start",
        "current_period_end",
        "payment_failure_count",
        "cancel_at_period_end",
    ]
    list_filter = ["status", "plan", "cancel_at_period_end"]
    search_fields = ["tenant__name", "tenant__slug", "gateway_customer_id"]
    readonly_fields = [
        "status",
        "current_period_start",
        "current_period_end",
        "payment_failure_count",
        "next_payment_at",
        "last_payment_at",
        "suspended_at",
        "cancelled_at",
        "cancellation_reason",
    ]


# ===============================================================================
# METERING ADMIN
# ===============================================================================


@admin.register(UsageEvent)
class UsageEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["tenant", "usage_type", "quantity", "occurred_at", "dedup_key"]
    list_filter = ["usage_type"]
    search_fields = ["tenant__slug", "dedup_key", "resource_ref"]
    date_hierarchy = "occurred_at"


@admin.register(UsagePeriodCounter)
class UsagePeriodCounterAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = [
        "tenant",
        "usage_type",
        "period_start",
        "used_units",
        "included_units",
        "overage_units",
        "overage_cost",
        "is_billed",
    ]
    list_filter = ["usage_type", "is_billed"]
    search_fields = ["tenant__slug"]


# ===============================================================================
# INVOICE & PAYMENT ADMIN
# ===============================================================================


class InvoiceLineInline(admin.TabularInline):
    model = InvoiceLine
    extra = 0
    can_delete = False
    readonly_fields = ["kind", "description", "usage_type", "quantity", "unit_price", "amount"]

    def has_add_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False


class PaymentAttemptInline(admin.TabularInline):
    model = PaymentAttempt
    extra = 0
    can_delete = False
    fields = ["attempt_number", "charge_round", "gateway", "is_fallback", "status", "error_code", "created_at"]
    readonly_fields = fields

    def has_add_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False


@admin.register(Invoice)
class InvoiceAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Issued invoices are immutable"""

    list_display = ["number", "tenant", "status", "total_amount", "currency", "amount_due", "due_date"]
    list_filter = ["status", "currency", "country"]
    search_fields = ["number", "tenant__name", "tenant__slug"]
    date_hierarchy = "issued_at"
    inlines = [InvoiceLineInline, PaymentAttemptInline]


@admin.register(InvoiceSequence)
class InvoiceSequenceAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["tenant", "last_value"]


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = [
        "invoice",
        "attempt_number",
        "charge_round",
        "gateway",
        "status",
        "amount",
        "requires_reconciliation",
        "created_at",
    ]
    list_filter = ["gateway", "status", "requires_reconciliation"]
    search_fields = ["invoice__number", "gateway_payment_id"]
