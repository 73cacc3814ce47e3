# ===============================================================================
# SUBSCRIPTION LIFECYCLE TESTS
# ===============================================================================

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from dateutil.relativedelta import relativedelta
from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone

from apps.billing import events
from apps.billing.exceptions import PricingUnresolved, SubscriptionStateError
from apps.billing.models import CountryBillingConfig, Invoice, Subscription
from apps.billing.subscription_service import TICK_LOCK_KEY, SubscriptionLifecycleManager
from tests.factories.billing_factories import (
    create_country_config,
    create_invoice,
    create_plan,
    create_subscription,
    create_tenant,
    period_start,
)


class SubscriptionStartTestCase(TestCase):
    def setUp(self) -> None:
        create_country_config()
        self.plan = create_plan(trial_days=14)
        self.tenant = create_tenant()
        self.manager = SubscriptionLifecycleManager()

    def test_trial_start_uses_trial_end_as_first_period_end(self):
        subscription = self.manager.start_subscription(self.tenant, self.plan, now=period_start())

        self.assertEqual(subscription.status, "trialing")
        self.assertEqual(subscription.trial_ends_at, period_start() + timedelta(days=14))
        self.assertEqual(subscription.current_period_end, subscription.trial_ends_at)

    def test_start_without_trial_is_active_for_one_interval(self):
        subscription = self.manager.start_subscription(self.tenant, self.plan, trial=False, now=period_start())

        self.assertEqual(subscription.status, "active")
        self.assertIsNone(subscription.trial_ends_at)
        self.assertEqual(subscription.current_period_end, period_start() + relativedelta(months=1))

    def test_one_live_subscription_per_tenant(self):
        self.manager.start_subscription(self.tenant, self.plan)

        with self.assertRaises(SubscriptionStateError):
            self.manager.start_subscription(self.tenant, self.plan)

    def test_resubscribe_after_cancellation(self):
        first = self.manager.start_subscription(self.tenant, self.plan)
        self.manager.cancel(first.id)

        second = self.manager.start_subscription(self.tenant, self.plan)

        self.assertNotEqual(first.pk, second.pk)
        self.assertEqual(Subscription.objects.current_for(self.tenant.id).pk, second.pk)

    def test_start_fails_closed_without_country_config(self):
        tenant = create_tenant(slug="nowhere", country="ZZ")

        with self.assertRaises(PricingUnresolved):
            self.manager.start_subscription(tenant, self.plan)
        self.assertFalse(Subscription.objects.filter(tenant=tenant).exists())


class BillingTickTestCase(TestCase):
    """Period rollover driven by the scheduled tick"""

    def setUp(self) -> None:
        create_country_config()
        self.plan = create_plan(base_price=Decimal("100.00"))
        self.tenant = create_tenant()
        self.subscription = create_subscription(self.tenant, self.plan)
        self.manager = SubscriptionLifecycleManager()
        self.after_end = self.subscription.current_period_end + timedelta(hours=1)

    def test_two_ticks_produce_one_invoice(self):
        first = self.manager.tick(now=self.after_end)
        second = self.manager.tick(now=self.after_end)

        self.assertEqual(len(first["invoices_generated"]), 1)
        self.assertEqual(first["rolled_over"], 1)
        self.assertEqual(second["invoices_generated"], [])
        self.assertEqual(second["rolled_over"], 0)
        self.assertEqual(Invoice.objects.filter(subscription=self.subscription).count(), 1)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.current_period_start, period_start() + relativedelta(months=1))
        self.assertEqual(self.subscription.current_period_end, period_start() + relativedelta(months=2))

    def test_tick_before_period_end_does_nothing(self):
        report = self.manager.tick(now=self.subscription.current_period_end - timedelta(seconds=1))

        self.assertEqual(report["rolled_over"], 0)
        self.assertFalse(Invoice.objects.exists())

    def test_tick_skips_while_lock_is_held(self):
        cache.add(TICK_LOCK_KEY, "other-worker", timeout=60)

        report = self.manager.tick(now=self.after_end)

        self.assertTrue(report["skipped"])
        self.assertFalse(Invoice.objects.exists())

    @patch("apps.billing.tasks.charge_invoice_async")
    def test_new_invoice_is_queued_for_charge_after_commit(self, mock_charge):
        with self.captureOnCommitCallbacks(execute=True):
            self.manager.tick(now=self.after_end)

        invoice = Invoice.objects.get(subscription=self.subscription)
        mock_charge.assert_called_once_with(str(invoice.id))

    def test_pending_plan_takes_over_at_rollover(self):
        pro = create_plan(code="pro", base_price=Decimal("250.00"))
        self.manager.change_plan(self.subscription.id, pro)

        self.manager.tick(now=self.after_end)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.plan, pro)
        self.assertIsNone(self.subscription.pending_plan)
        # The finished period is billed on the old plan
        invoice = Invoice.objects.get(subscription=self.subscription)
        self.assertEqual(invoice.subtotal, Decimal("100.00"))

    def test_cancel_at_period_end_bills_final_period(self):
        self.manager.cancel(self.subscription.id, at_period_end=True, reason="customer_request")

        report = self.manager.tick(now=self.after_end)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "cancelled")
        self.assertEqual(self.subscription.cancellation_reason, "customer_request")
        self.assertEqual(report["cancelled"], 1)
        invoice = Invoice.objects.get(subscription=self.subscription)
        self.assertEqual(invoice.status, "pending")

    def test_suspended_subscription_does_not_roll_over(self):
        Subscription.objects.filter(pk=self.subscription.pk).update(status="suspended", suspended_at=timezone.now())

        report = self.manager.tick(now=self.after_end)

        self.assertEqual(report["rolled_over"], 0)
        self.assertFalse(Invoice.objects.exists())

    def test_pricing_error_is_reported_not_raised(self):
        CountryBillingConfig.objects.all().delete()

        report = self.manager.tick(now=self.after_end)

        self.assertEqual(len(report["errors"]), 1)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.current_period_start, period_start())


class TrialLifecycleTestCase(TestCase):
    def setUp(self) -> None:
        create_country_config()
        self.plan = create_plan(trial_days=14)
        self.tenant = create_tenant()
        self.manager = SubscriptionLifecycleManager()

    def test_trial_with_payment_method_activates(self):
        subscription = self.manager.start_subscription(
            self.tenant, self.plan, payment_method_ref="pm_card_visa", now=period_start()
        )
        trial_end = subscription.trial_ends_at

        report = self.manager.tick(now=trial_end + timedelta(hours=1))

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, "active")
        self.assertEqual(report["activated"], 1)
        self.assertEqual(subscription.current_period_start, trial_end)
        self.assertEqual(subscription.current_period_end, trial_end + relativedelta(months=1))
        trial_invoice = Invoice.objects.get(subscription=subscription)
        self.assertEqual(trial_invoice.status, "paid")
        self.assertEqual(trial_invoice.total_amount, Decimal("0"))

    def test_trial_without_payment_method_waits_then_cancels(self):
        subscription = self.manager.start_subscription(self.tenant, self.plan, now=period_start())
        trial_end = subscription.trial_ends_at

        self.manager.tick(now=trial_end + timedelta(hours=1))
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, "trialing")
        self.assertEqual(subscription.current_period_end, trial_end)

        report = self.manager.tick(now=trial_end + timedelta(days=3, hours=1))

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, "cancelled")
        self.assertEqual(subscription.cancellation_reason, "trial_expired")
        self.assertEqual(report["cancelled"], 1)
        self.assertEqual(Invoice.objects.filter(subscription=subscription).count(), 1)


class DunningTestCase(TestCase):
    """Failure-driven and time-driven dunning transitions"""

    def setUp(self) -> None:
        create_country_config()
        self.plan = create_plan()
        self.tenant = create_tenant()
        self.now = timezone.now()
        self.subscription = create_subscription(self.tenant, self.plan, start=self.now - timedelta(days=10))
        self.manager = SubscriptionLifecycleManager()

    def test_first_failure_moves_to_past_due_and_opens_grace(self):
        self.manager.record_payment_failure(self.subscription, now=self.now)

        self.assertEqual(self.subscription.status, "past_due")
        self.assertEqual(self.subscription.payment_failure_count, 1)
        self.assertEqual(self.subscription.next_payment_at, self.now + timedelta(days=7))

    def test_third_failure_suspends(self):
        receiver = MagicMock()
        events.subscription_suspended.connect(receiver, weak=False, dispatch_uid="test-suspended")
        self.addCleanup(events.subscription_suspended.disconnect, dispatch_uid="test-suspended")

        with self.captureOnCommitCallbacks(execute=True):
            for _ in range(3):
                self.manager.record_payment_failure(self.subscription, now=self.now)

        self.assertEqual(self.subscription.status, "suspended")
        self.assertIsNotNone(self.subscription.suspended_at)
        receiver.assert_called_once()
        self.assertEqual(receiver.call_args.kwargs["reason"], "payment_failures")

    def test_exhausted_retries_suspend_immediately(self):
        self.manager.record_payment_failure(self.subscription, now=self.now, exhausted=True)

        self.assertEqual(self.subscription.status, "suspended")

    def test_success_restores_past_due(self):
        self.manager.record_payment_failure(self.subscription, now=self.now)

        self.manager.record_payment_success(self.subscription, now=self.now)

        self.assertEqual(self.subscription.status, "active")
        self.assertEqual(self.subscription.payment_failure_count, 0)
        self.assertIsNone(self.subscription.next_payment_at)
        self.assertEqual(self.subscription.last_payment_at, self.now)

    def test_grace_expiry_suspends_on_tick(self):
        self.manager.record_payment_failure(self.subscription, now=self.now - timedelta(days=8))

        report = self.manager.tick(now=self.now)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "suspended")
        self.assertEqual(report["suspended"], 1)

    def test_long_suspension_cancels(self):
        Subscription.objects.filter(pk=self.subscription.pk).update(
            status="suspended", suspended_at=self.now - timedelta(days=31)
        )

        report = self.manager.tick(now=self.now)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "cancelled")
        self.assertEqual(self.subscription.cancellation_reason, "suspension_expired")
        self.assertEqual(report["cancelled"], 1)

    def test_suspended_cannot_reactivate(self):
        Subscription.objects.filter(pk=self.subscription.pk).update(status="suspended")
        self.subscription.refresh_from_db()

        with self.assertRaises(SubscriptionStateError):
            self.manager._transition(self.subscription, "active")

    def test_immediate_cancel(self):
        subscription = self.manager.cancel(self.subscription.id, reason="fraud")

        self.assertEqual(subscription.status, "cancelled")
        self.assertEqual(subscription.cancellation_reason, "fraud")
        self.assertIsNotNone(subscription.cancelled_at)
        self.assertFalse(Invoice.objects.exists())

    def test_cancelled_is_terminal(self):
        self.manager.cancel(self.subscription.id)

        with self.assertRaises(SubscriptionStateError):
            self.manager.cancel(self.subscription.id)

    @patch("apps.billing.tasks.charge_invoice_async")
    def test_new_payment_method_retries_open_invoices(self, mock_charge):
        self.manager.record_payment_failure(self.subscription, now=self.now)
        invoice = create_invoice(self.subscription)

        with self.captureOnCommitCallbacks(execute=True):
            self.manager.update_payment_method(self.subscription.id, "pm_new_card")

        mock_charge.assert_called_once_with(str(invoice.id))
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.payment_method_ref, "pm_new_card")
