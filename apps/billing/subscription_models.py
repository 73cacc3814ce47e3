"""
Subscription model for the billing engine.

One live subscription per tenant. The status field is only moved by
``SubscriptionLifecycleManager``; the transition table below is the single
place that defines which moves are legal.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, ClassVar

from dateutil.relativedelta import relativedelta
from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _

from .plan_models import SubscriptionPlan

# ===============================================================================
# STATE MACHINE
# ===============================================================================

# past_due <-> active is the only reversible pair; cancelled is terminal
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "trialing": frozenset({"active", "cancelled"}),
    "active": frozenset({"past_due", "cancelled"}),
    "past_due": frozenset({"active", "suspended", "cancelled"}),
    "suspended": frozenset({"cancelled"}),
    "cancelled": frozenset(),
}


class SubscriptionQuerySet(models.QuerySet["Subscription"]):
    def current_for(self, tenant_id: Any) -> Subscription | None:
        """The live subscription of a tenant, or its most recent cancelled one"""
        live = self.filter(tenant_id=tenant_id).exclude(status="cancelled").first()
        if live is not None:
            return live
        return self.filter(tenant_id=tenant_id).order_by("-created_at").first()


class Subscription(models.Model):
    """A tenant's subscription to a plan, billed per period in arrears"""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("trialing", _("Trialing")),
        ("active", _("Active")),
        ("past_due", _("Past Due")),
        ("suspended", _("Suspended")),
        ("cancelled", _("Cancelled")),
    )

    # Statuses whose periods roll over, get invoiced and accept usage
    BILLABLE_STATUSES: ClassVar[tuple[str, ...]] = ("trialing", "active", "past_due")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey("tenants.Tenant", on_delete=models.PROTECT, related_name="subscriptions")
    plan = models.ForeignKey(SubscriptionPlan, on_delete=models.PROTECT, related_name="subscriptions")
    pending_plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="pending_subscriptions",
        help_text=_("Plan that takes over at the next period boundary"),
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="trialing", db_index=True)

    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)

    # Dunning state
    payment_failure_count = models.PositiveIntegerField(default=0)
    next_payment_at = models.DateTimeField(
        null=True, blank=True, help_text=_("Deadline for settling the outstanding invoice")
    )
    last_payment_at = models.DateTimeField(null=True, blank=True)

    # Gateway references
    payment_method_ref = models.CharField(max_length=255, blank=True)
    gateway_customer_id = models.CharField(max_length=255, blank=True)

    suspended_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=100, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SubscriptionQuerySet.as_manager()

    class Meta:
        db_table = "subscriptions"
        verbose_name = _("Subscription")
        verbose_name_plural = _("Subscriptions")
        ordering = ("-created_at",)
        indexes = (
            models.Index(fields=["status", "current_period_end"], name="sub_status_period_end_idx"),
            models.Index(fields=["status", "next_payment_at"], name="sub_status_next_payment_idx"),
        )
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.CheckConstraint(
                condition=Q(current_period_end__gt=models.F("current_period_start")),
                name="subscription_period_ordered",
            ),
            # One live subscription per tenant; re-subscribing after cancellation creates a new row
            models.UniqueConstraint(
                fields=["tenant"], condition=~Q(status="cancelled"), name="uniq_live_subscription_per_tenant"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id} on {self.plan.code} ({self.status})"

    # ===============================================================================
    # STATE HELPERS
    # ===============================================================================

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    @property
    def is_terminal(self) -> bool:
        return self.status == "cancelled"

    @property
    def has_payment_method(self) -> bool:
        return bool(self.payment_method_ref)

    def is_trial_period(self, period_end: datetime) -> bool:
        """True if the period ending at ``period_end`` lies inside the trial"""
        return self.trial_ends_at is not None and period_end <= self.trial_ends_at

    def next_period_bounds(self) -> tuple[datetime, datetime]:
        """Bounds of the period following the current one"""
        plan = self.pending_plan or self.plan
        start = self.current_period_end
        return start, start + relativedelta(months=plan.billing_interval_months)
