# ===============================================================================
# CONCURRENT TICK AND CHARGE TESTS
# ===============================================================================
"""
Overlapping billing work must transition each subscription and charge each
invoice exactly once.

SQLite has no row locks, so the threaded cases run only on PostgreSQL
(``TEST_DB=postgres``); the interleaved cases replay the same overlap
deterministically on any database.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.db import connections
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature
from django.utils import timezone

from apps.billing.exceptions import ConcurrencyConflict
from apps.billing.models import Invoice, PaymentAttempt
from apps.billing.payment_service import PaymentOrchestrator
from apps.billing.subscription_service import SubscriptionLifecycleManager
from tests.factories.billing_factories import (
    create_country_config,
    create_invoice,
    create_plan,
    create_subscription,
    create_tenant,
)

CREATE_GATEWAY = "apps.billing.payment_service.PaymentGatewayFactory.create_gateway"
TICK_CACHE = "apps.billing.subscription_service.cache"
CHARGE_ASYNC = "apps.billing.tasks.charge_invoice_async"


def lost_tick_lock() -> MagicMock:
    """Cache whose tick lock every worker acquires, as after an eviction"""
    lock = MagicMock()
    lock.add.return_value = True
    return lock


def paid_charge(request):
    time.sleep(0.2)
    return {"status": "succeeded", "gateway_payment_id": "pi_once", "amount_minor": 10000, "raw_status": "succeeded"}


class OverlappingTickTestCase(TestCase):
    """A second tick runs between the first tick's listing and its rollover"""

    def setUp(self) -> None:
        create_country_config()
        self.tenant = create_tenant()
        self.subscription = create_subscription(self.tenant, create_plan(base_price=Decimal("100.00")))
        self.after_end = self.subscription.current_period_end + timedelta(hours=1)

    def test_overlapping_ticks_roll_over_once(self):
        process_period_end = SubscriptionLifecycleManager._process_period_end
        overlapped = threading.Event()
        inner_reports = []

        def overlap(manager, subscription_id, now, report):
            if not overlapped.is_set():
                overlapped.set()
                inner_reports.append(SubscriptionLifecycleManager().tick(now=now))
            return process_period_end(manager, subscription_id, now, report)

        with (
            patch(TICK_CACHE, lost_tick_lock()),
            patch.object(SubscriptionLifecycleManager, "_process_period_end", autospec=True, side_effect=overlap),
        ):
            outer = SubscriptionLifecycleManager().tick(now=self.after_end)

        self.assertEqual(inner_reports[0]["rolled_over"], 1)
        self.assertEqual(outer["rolled_over"], 0)
        self.assertEqual(outer["invoices_generated"], [])
        self.assertEqual(Invoice.objects.filter(subscription=self.subscription).count(), 1)

        self.subscription.refresh_from_db()
        self.assertGreater(self.subscription.current_period_end, self.after_end)


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentBillingTestCase(TransactionTestCase):
    """Real threads against a database with row locks"""

    def setUp(self) -> None:
        create_country_config()
        self.tenant = create_tenant()
        self.now = timezone.now()
        self.subscription = create_subscription(
            self.tenant, create_plan(base_price=Decimal("100.00")), start=self.now - timedelta(days=31)
        )

    def _run_twice(self, work):
        barrier = threading.Barrier(2)

        def worker():
            try:
                barrier.wait(timeout=5)
                return work()
            finally:
                connections.close_all()

        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [executor.submit(worker) for _ in range(2)]
            return [future.result(timeout=30) for future in futures]

    def test_concurrent_ticks_roll_over_once(self):
        after_end = self.subscription.current_period_end + timedelta(hours=1)

        with patch(TICK_CACHE, lost_tick_lock()), patch(CHARGE_ASYNC):
            reports = self._run_twice(lambda: SubscriptionLifecycleManager().tick(now=after_end))

        self.assertEqual(sum(report["rolled_over"] for report in reports), 1)
        self.assertEqual(sum(len(report["invoices_generated"]) for report in reports), 1)
        self.assertEqual(Invoice.objects.filter(subscription=self.subscription).count(), 1)

    def test_concurrent_charges_hit_the_gateway_once(self):
        invoice = create_invoice(self.subscription, total=Decimal("100.00"))
        gateway = MagicMock()
        gateway.charge.side_effect = paid_charge

        def charge():
            try:
                return PaymentOrchestrator().charge(invoice.id, now=self.now).status
            except ConcurrencyConflict:
                return "conflict"

        with patch(CREATE_GATEWAY, return_value=gateway):
            outcomes = sorted(self._run_twice(charge))

        self.assertIn(outcomes, (["conflict", "succeeded"], ["skipped", "succeeded"]))
        self.assertEqual(gateway.charge.call_count, 1)
        self.assertEqual(PaymentAttempt.objects.filter(invoice=invoice).count(), 1)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, "paid")
