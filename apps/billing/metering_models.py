"""
Usage metering models for the billing engine.

- ``UsageEvent``: append-only ledger of billable actions, the source of truth.
- ``UsagePeriodCounter``: one mutable aggregate per tenant, usage type and
  billing period, incremented atomically and closed once when invoiced.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q, Sum
from django.utils.translation import gettext_lazy as _

from .config import MONEY_DECIMAL_PLACES, MONEY_MAX_DIGITS, RATE_DECIMAL_PLACES
from .currency_models import Currency
from .plan_models import USAGE_TYPE_CHOICES

# ===============================================================================
# USAGE EVENT LEDGER
# ===============================================================================


class UsageEventQuerySet(models.QuerySet["UsageEvent"]):
    def total_quantity(self) -> int:
        """Units recorded by the matching ledger rows"""
        return self.aggregate(total=Sum("quantity"))["total"] or 0


class UsageEvent(models.Model):
    """
    Immutable record of one billable action.

    Rows are written only together with the counter increment they caused, so
    a rejected event (quota) never appears here. ``dedup_key`` is optional;
    when present it makes ingestion idempotent per tenant and usage type.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey("tenants.Tenant", on_delete=models.PROTECT, related_name="usage_events")
    usage_type = models.CharField(max_length=40, choices=USAGE_TYPE_CHOICES)
    quantity = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    unit_cost = models.DecimalField(
        max_digits=MONEY_MAX_DIGITS, decimal_places=RATE_DECIMAL_PLACES, null=True, blank=True
    )
    occurred_at = models.DateTimeField()
    dedup_key = models.CharField(max_length=255, null=True, blank=True)
    resource_ref = models.CharField(max_length=255, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    counter = models.ForeignKey(
        "billing.UsagePeriodCounter", on_delete=models.PROTECT, related_name="events"
    )
    recorded_at = models.DateTimeField(auto_now_add=True)

    objects = UsageEventQuerySet.as_manager()

    class Meta:
        db_table = "usage_events"
        verbose_name = _("Usage Event")
        verbose_name_plural = _("Usage Events")
        indexes = (models.Index(fields=["tenant", "usage_type", "occurred_at"], name="usage_event_lookup_idx"),)
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.UniqueConstraint(
                fields=["tenant", "usage_type", "dedup_key"],
                condition=Q(dedup_key__isnull=False),
                name="uniq_usage_event_dedup_key",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.usage_type} x{self.quantity} @ {self.occurred_at:%Y-%m-%d %H:%M}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Usage events are append-only and cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> tuple[int, dict[str, int]]:
        raise ValueError("Usage events are append-only and cannot be deleted")


# ===============================================================================
# PERIOD COUNTERS
# ===============================================================================


class UsagePeriodCounter(models.Model):
    """
    Aggregated usage of one type for one tenant in one billing period.

    Allowance, ceiling and overage rate are snapshotted at creation so that
    catalog edits never rewrite a period already being metered. Increments go
    through ``UsageAggregator`` as a single conditional UPDATE.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey("tenants.Tenant", on_delete=models.PROTECT, related_name="usage_counters")
    usage_type = models.CharField(max_length=40, choices=USAGE_TYPE_CHOICES)
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()

    used_units = models.PositiveBigIntegerField(default=0)
    event_count = models.PositiveIntegerField(default=0)

    # Snapshot of the plan allowance
    included_units = models.PositiveBigIntegerField(default=0)
    hard_limit = models.PositiveBigIntegerField(null=True, blank=True)
    overage_rate = models.DecimalField(
        max_digits=MONEY_MAX_DIGITS,
        decimal_places=RATE_DECIMAL_PLACES,
        default=Decimal("0"),
        help_text=_("Per-unit overage price in the counter currency"),
    )
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name="+")
    is_enabled = models.BooleanField(default=True)

    overage_units = models.PositiveBigIntegerField(default=0)
    overage_cost = models.DecimalField(
        max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES, default=Decimal("0")
    )

    is_billed = models.BooleanField(default=False, db_index=True)
    billed_at = models.DateTimeField(null=True, blank=True)
    invoice = models.ForeignKey(
        "billing.Invoice", on_delete=models.PROTECT, null=True, blank=True, related_name="usage_counters"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "usage_period_counters"
        verbose_name = _("Usage Period Counter")
        verbose_name_plural = _("Usage Period Counters")
        indexes = (models.Index(fields=["tenant", "is_billed", "period_start"], name="usage_counter_unbilled_idx"),)
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.UniqueConstraint(
                fields=["tenant", "usage_type", "period_start"], name="uniq_usage_counter_period"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.usage_type}@{self.period_start:%Y-%m-%d}: {self.used_units}"

    @property
    def remaining_units(self) -> int | None:
        """Units left before the hard ceiling, None when unlimited"""
        if self.hard_limit is None:
            return None
        return max(0, self.hard_limit - self.used_units)
