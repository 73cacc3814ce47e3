"""
Subscription Lifecycle Manager for the billing engine.

Provides:
- Subscription start (with or without trial)
- Period rollover: invoice the ending period, advance to the next one
- Dunning transitions driven by payment outcomes and grace deadlines
- Plan changes at the next period boundary (no proration)
- Cancellation (immediate or at period end)

The status field moves only through ``_transition``, which enforces
``ALLOWED_TRANSITIONS`` and publishes the lifecycle events.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypedDict

from dateutil.relativedelta import relativedelta
from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.utils import timezone

from . import config as billing_config
from . import events
from .exceptions import BillingError, PricingUnresolved, SubscriptionStateError
from .invoice_service import InvoiceGenerator
from .models import Invoice, Subscription
from .pricing_service import PricingResolver

if TYPE_CHECKING:
    from apps.tenants.models import Tenant

    from .models import SubscriptionPlan

logger = logging.getLogger(__name__)

TICK_LOCK_KEY = "billing:tick:lock"


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


class TickReport(TypedDict):
    """Result of a billing tick."""

    skipped: bool
    rolled_over: int
    invoices_generated: list[str]
    activated: int
    suspended: int
    cancelled: int
    errors: list[str]


def _empty_report() -> TickReport:
    return TickReport(
        skipped=False,
        rolled_over=0,
        invoices_generated=[],
        activated=0,
        suspended=0,
        cancelled=0,
        errors=[],
    )


def _schedule_charge(invoice_id: Any) -> None:
    """Queue a charge once the invoice is committed"""
    from .tasks import charge_invoice_async  # noqa: PLC0415

    transaction.on_commit(lambda: charge_invoice_async(str(invoice_id)))


# ===============================================================================
# LIFECYCLE MANAGER
# ===============================================================================


class SubscriptionLifecycleManager:
    """Owns every subscription status change"""

    def __init__(self) -> None:
        self.invoices = InvoiceGenerator()

    # ===============================================================================
    # START / CHANGE / CANCEL
    # ===============================================================================

    def start_subscription(
        self,
        tenant: Tenant,
        plan: SubscriptionPlan,
        trial: bool = True,
        payment_method_ref: str = "",
        gateway_customer_id: str = "",
        now: datetime | None = None,
    ) -> Subscription:
        """
        Start a subscription for a tenant without a live one.

        A trial gets its own first period ending at ``trial_ends_at``; it is
        invoiced with a zero base charge plus any trial overage.
        """
        now = now or timezone.now()
        # Fail closed before anything is persisted
        PricingResolver.resolve_for_plan(tenant, plan)

        trial_days = plan.trial_days if trial else 0
        if trial_days:
            status = "trialing"
            trial_ends_at: datetime | None = now + timedelta(days=trial_days)
            period_end = trial_ends_at
        else:
            status = "active"
            trial_ends_at = None
            period_end = now + relativedelta(months=plan.billing_interval_months)

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    tenant=tenant,
                    plan=plan,
                    status=status,
                    current_period_start=now,
                    current_period_end=period_end,
                    trial_ends_at=trial_ends_at,
                    payment_method_ref=payment_method_ref,
                    gateway_customer_id=gateway_customer_id,
                )
        except IntegrityError as e:
            raise SubscriptionStateError(
                f"Tenant {tenant.id} already has a live subscription", {"tenant_id": str(tenant.id)}
            ) from e

        logger.info(f"✅ [Subscription] Started {plan.code} for tenant {tenant.id} ({status})")
        return subscription

    def change_plan(self, subscription_id: Any, new_plan: SubscriptionPlan) -> Subscription:
        """Schedule a plan change for the next period boundary"""
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().select_related("tenant", "plan").get(
                pk=subscription_id
            )
            if subscription.status not in Subscription.BILLABLE_STATUSES:
                raise SubscriptionStateError(
                    f"Cannot change plan of a {subscription.status} subscription",
                    {"subscription_id": str(subscription.id)},
                )
            PricingResolver.resolve_for_plan(subscription.tenant, new_plan)

            subscription.pending_plan = None if new_plan.pk == subscription.plan_id else new_plan
            subscription.save(update_fields=["pending_plan", "updated_at"])

        logger.info(
            f"🔄 [Subscription] {subscription.id} switches to {new_plan.code} at "
            f"{subscription.current_period_end:%Y-%m-%d}"
        )
        return subscription

    def cancel(self, subscription_id: Any, at_period_end: bool = False, reason: str = "") -> Subscription:
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
            if subscription.is_terminal:
                raise SubscriptionStateError(
                    f"Subscription {subscription.id} is already cancelled",
                    {"subscription_id": str(subscription.id)},
                )

            if at_period_end and subscription.status != "suspended":
                subscription.cancel_at_period_end = True
                subscription.cancellation_reason = reason
                subscription.save(update_fields=["cancel_at_period_end", "cancellation_reason", "updated_at"])
                logger.info(
                    f"⚠️ [Subscription] {subscription.id} will cancel at {subscription.current_period_end:%Y-%m-%d}"
                )
            else:
                self._transition(subscription, "cancelled", reason=reason or "cancelled")
        return subscription

    def update_payment_method(
        self, subscription_id: Any, payment_method_ref: str, gateway_customer_id: str = ""
    ) -> Subscription:
        """Store a new payment method and retry the open invoices with it"""
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
            if subscription.is_terminal:
                raise SubscriptionStateError(
                    "Cannot update the payment method of a cancelled subscription",
                    {"subscription_id": str(subscription.id)},
                )
            subscription.payment_method_ref = payment_method_ref
            if gateway_customer_id:
                subscription.gateway_customer_id = gateway_customer_id
            subscription.save(update_fields=["payment_method_ref", "gateway_customer_id", "updated_at"])

            if subscription.status in ("active", "past_due"):
                open_invoices = Invoice.objects.filter(
                    subscription=subscription, status__in=Invoice.OPEN_STATUSES
                ).values_list("id", flat=True)
                for invoice_id in open_invoices:
                    _schedule_charge(invoice_id)

        logger.info(f"💳 [Subscription] Payment method updated for {subscription.id}")
        return subscription

    # ===============================================================================
    # PAYMENT OUTCOMES
    # ===============================================================================

    def record_payment_success(self, subscription: Subscription, now: datetime | None = None) -> None:
        """Reset dunning after a settled invoice. Caller holds the row lock."""
        now = now or timezone.now()
        subscription.payment_failure_count = 0
        subscription.next_payment_at = None
        subscription.last_payment_at = now
        subscription.save(update_fields=["payment_failure_count", "next_payment_at", "last_payment_at", "updated_at"])

        if subscription.status == "past_due":
            self._transition(subscription, "active", now=now)
        elif subscription.status == "suspended":
            logger.warning(f"⚠️ [Subscription] Payment received while {subscription.id} is suspended")

    def record_payment_failure(
        self, subscription: Subscription, now: datetime | None = None, exhausted: bool = False
    ) -> None:
        """
        Count one failed charge round. Caller holds the row lock.

        The first failure opens the grace window; reaching the failure
        threshold or exhausting the retry cap suspends.
        """
        now = now or timezone.now()
        if subscription.status not in ("active", "past_due"):
            logger.info(f"⚠️ [Subscription] Ignoring payment failure for {subscription.status} {subscription.id}")
            return

        subscription.payment_failure_count += 1
        if subscription.next_payment_at is None:
            subscription.next_payment_at = now + timedelta(days=billing_config.get_grace_period_days())
        subscription.save(update_fields=["payment_failure_count", "next_payment_at", "updated_at"])

        if subscription.status == "active":
            self._transition(subscription, "past_due", now=now)

        if exhausted or subscription.payment_failure_count >= billing_config.get_suspend_after_failures():
            reason = "retries_exhausted" if exhausted else "payment_failures"
            self._transition(subscription, "suspended", reason=reason, now=now)

    def mark_cancelled_by_gateway(self, subscription: Subscription, reason: str = "gateway_cancelled") -> None:
        if subscription.is_terminal:
            return
        self._transition(subscription, "cancelled", reason=reason)

    # ===============================================================================
    # TICK
    # ===============================================================================

    def tick(self, now: datetime | None = None) -> TickReport:
        """
        Roll over every subscription whose period has ended and apply
        time-based transitions. Safe to run concurrently and repeatedly.
        """
        now = now or timezone.now()
        report = _empty_report()

        lock_timeout = billing_config.get_tick_interval_minutes() * 60
        if not cache.add(TICK_LOCK_KEY, now.isoformat(), timeout=lock_timeout):
            logger.info("🔄 [Billing Tick] Another tick is running, skipping")
            report["skipped"] = True
            return report

        try:
            due_ids = list(
                Subscription.objects.filter(current_period_end__lte=now)
                .exclude(status="cancelled")
                .values_list("id", flat=True)
            )
            for subscription_id in due_ids:
                self._process_period_end(subscription_id, now, report)

            self._suspend_expired_grace(now, report)
            self._cancel_long_suspended(now, report)
            self._cancel_expired_trials(now, report)
        finally:
            cache.delete(TICK_LOCK_KEY)

        logger.info(
            f"🔄 [Billing Tick] {report['rolled_over']} rolled over, {len(report['invoices_generated'])} invoices, "
            f"{report['suspended']} suspended, {report['cancelled']} cancelled, {len(report['errors'])} errors"
        )
        return report

    def _process_period_end(self, subscription_id: Any, now: datetime, report: TickReport) -> None:
        try:
            with transaction.atomic():
                subscription = (
                    Subscription.objects.select_for_update()
                    .select_related("tenant", "plan", "pending_plan")
                    .get(pk=subscription_id)
                )
                # Period advanced by a concurrent tick
                if subscription.current_period_end > now or subscription.is_terminal:
                    return

                if subscription.status == "suspended":
                    if subscription.cancel_at_period_end:
                        self._transition(subscription, "cancelled", reason=subscription.cancellation_reason, now=now)
                        report["cancelled"] += 1
                    return

                already_invoiced = Invoice.objects.filter(
                    subscription=subscription, period_start=subscription.current_period_start
                ).exists()
                invoice = self.invoices.generate(
                    subscription.id, subscription.current_period_start, subscription.current_period_end
                )
                if not already_invoiced:
                    report["invoices_generated"].append(invoice.number)
                    if invoice.is_open:
                        _schedule_charge(invoice.id)

                if subscription.cancel_at_period_end:
                    self._transition(
                        subscription, "cancelled", reason=subscription.cancellation_reason or "period_end", now=now
                    )
                    report["cancelled"] += 1
                    return

                if subscription.status == "trialing":
                    if not self._can_activate(subscription):
                        # Waits for a payment method until the trial grace runs out
                        return
                    self._transition(subscription, "active", now=now)
                    report["activated"] += 1

                self._advance_period(subscription)
                report["rolled_over"] += 1
        except PricingUnresolved as e:
            logger.critical(f"🔥 [Billing Tick] Pricing unresolved for subscription {subscription_id}: {e}")
            report["errors"].append(f"{subscription_id}: {e.message}")
        except BillingError as e:
            logger.error(f"❌ [Billing Tick] Rollover failed for subscription {subscription_id}: {e}")
            report["errors"].append(f"{subscription_id}: {e.message}")

    def _can_activate(self, subscription: Subscription) -> bool:
        if not subscription.has_payment_method:
            return False
        price = PricingResolver.resolve_for_plan(subscription.tenant, subscription.plan)
        return price.profile.primary_gateway is not None

    def _advance_period(self, subscription: Subscription) -> None:
        start, end = subscription.next_period_bounds()
        if subscription.pending_plan is not None:
            logger.info(f"🔄 [Subscription] {subscription.id} now on {subscription.pending_plan.code}")
            subscription.plan = subscription.pending_plan
            subscription.pending_plan = None
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.save(
            update_fields=["plan", "pending_plan", "current_period_start", "current_period_end", "updated_at"]
        )

    def _suspend_expired_grace(self, now: datetime, report: TickReport) -> None:
        candidates = Subscription.objects.filter(status="past_due", next_payment_at__lte=now).values_list(
            "id", flat=True
        )
        for subscription_id in list(candidates):
            with transaction.atomic():
                subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
                if subscription.status != "past_due" or subscription.next_payment_at is None:
                    continue
                if subscription.next_payment_at > now:
                    continue
                self._transition(subscription, "suspended", reason="grace_period_expired", now=now)
                report["suspended"] += 1

    def _cancel_long_suspended(self, now: datetime, report: TickReport) -> None:
        cutoff = now - timedelta(days=billing_config.get_suspension_cancel_days())
        candidates = Subscription.objects.filter(status="suspended", suspended_at__lte=cutoff).values_list(
            "id", flat=True
        )
        for subscription_id in list(candidates):
            with transaction.atomic():
                subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
                if subscription.status != "suspended":
                    continue
                self._transition(subscription, "cancelled", reason="suspension_expired", now=now)
                report["cancelled"] += 1

    def _cancel_expired_trials(self, now: datetime, report: TickReport) -> None:
        cutoff = now - timedelta(days=billing_config.get_trial_grace_days())
        candidates = Subscription.objects.filter(status="trialing", trial_ends_at__lte=cutoff).values_list(
            "id", flat=True
        )
        for subscription_id in list(candidates):
            with transaction.atomic():
                subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
                if subscription.status != "trialing":
                    continue
                self._transition(subscription, "cancelled", reason="trial_expired", now=now)
                report["cancelled"] += 1

    # ===============================================================================
    # TRANSITIONS
    # ===============================================================================

    def _transition(
        self, subscription: Subscription, new_status: str, reason: str = "", now: datetime | None = None
    ) -> None:
        if not subscription.can_transition_to(new_status):
            raise SubscriptionStateError(
                f"Invalid transition {subscription.status} -> {new_status}",
                {"subscription_id": str(subscription.id), "from": subscription.status, "to": new_status},
            )
        now = now or timezone.now()
        old_status = subscription.status
        subscription.status = new_status

        if new_status == "suspended":
            subscription.suspended_at = now
        elif new_status == "cancelled":
            subscription.cancelled_at = now
            subscription.cancellation_reason = reason or subscription.cancellation_reason
            subscription.cancel_at_period_end = False

        subscription.save()
        logger.info(f"🔄 [Subscription] {subscription.id}: {old_status} -> {new_status} {reason}".rstrip())

        if new_status == "suspended":
            events.publish(events.subscription_suspended, subscription=subscription, reason=reason)
        elif new_status == "cancelled":
            events.publish(
                events.subscription_cancelled, subscription=subscription, reason=subscription.cancellation_reason
            )
