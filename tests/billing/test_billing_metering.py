# ===============================================================================
# USAGE METERING TESTS
# ===============================================================================

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase

from apps.billing.exceptions import PricingUnresolved, QuotaExceeded, SubscriptionStateError
from apps.billing.metering_service import UsageAggregator, UsageEventData, emit
from apps.billing.models import UsageEvent, UsagePeriodCounter
from apps.billing.tasks import record_usage_event
from apps.common.types import ValidationError
from tests.factories.billing_factories import (
    create_country_config,
    create_plan,
    create_subscription,
    create_tenant,
    create_usage_limit,
    period_start,
)


class UsageAggregatorTestCase(TestCase):
    """Ledger append and counter increment"""

    def setUp(self) -> None:
        create_country_config()
        self.plan = create_plan()
        create_usage_limit(self.plan, "whatsapp_messages", included_units=1000, overage_rate=Decimal("0.05"))
        create_usage_limit(self.plan, "bookings", included_units=10, overage_rate=Decimal("1.00"), hard_limit=12)
        create_usage_limit(self.plan, "leads", included_units=0, is_enabled=False)
        self.tenant = create_tenant()
        self.subscription = create_subscription(self.tenant, self.plan)
        self.aggregator = UsageAggregator()
        self.when = period_start() + timedelta(days=3)

    def _event(self, usage_type: str = "whatsapp_messages", quantity: int = 1, **kwargs) -> UsageEventData:
        return UsageEventData(
            tenant_id=str(self.tenant.id), usage_type=usage_type, quantity=quantity, occurred_at=self.when, **kwargs
        )

    def test_overage_is_priced_at_close(self):
        """1200 messages against 1000 included at 0.05 costs 10.00"""
        ack = self.aggregator.record(self._event(quantity=1200))

        self.assertEqual(ack.used_units, 1200)
        self.assertEqual(ack.included_units, 1000)
        self.assertEqual(ack.overage_units, 200)
        self.assertIsNone(ack.remaining_units)

        counter = self.aggregator.close_period(self.tenant.id, "whatsapp_messages", period_start())
        self.assertTrue(counter.is_billed)
        self.assertEqual(counter.overage_units, 200)
        self.assertEqual(counter.overage_cost, Decimal("10.00"))

    def test_events_accumulate_in_one_counter(self):
        self.aggregator.record(self._event(quantity=300))
        self.aggregator.record(self._event(quantity=200))

        counter = UsagePeriodCounter.objects.get(tenant=self.tenant, usage_type="whatsapp_messages")
        self.assertEqual(counter.used_units, 500)
        self.assertEqual(counter.event_count, 2)
        self.assertEqual(counter.period_start, period_start())
        self.assertEqual(counter.period_end, self.subscription.current_period_end)
        self.assertEqual(UsageEvent.objects.filter(counter=counter).count(), 2)

    def test_dedup_key_counts_once(self):
        first = self.aggregator.record(self._event(quantity=5, dedup_key="msg-1"))
        second = self.aggregator.record(self._event(quantity=5, dedup_key="msg-1"))

        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(second.event_id, first.event_id)
        self.assertEqual(UsageEvent.objects.filter(tenant=self.tenant).count(), 1)
        counter = UsagePeriodCounter.objects.get(tenant=self.tenant, usage_type="whatsapp_messages")
        self.assertEqual(counter.used_units, 5)

    def test_events_without_dedup_key_always_count(self):
        self.aggregator.record(self._event(quantity=5))
        self.aggregator.record(self._event(quantity=5))

        counter = UsagePeriodCounter.objects.get(tenant=self.tenant, usage_type="whatsapp_messages")
        self.assertEqual(counter.used_units, 10)

    def test_hard_limit_rejects_without_counting(self):
        self.aggregator.record(self._event("bookings", quantity=10))

        with self.assertRaises(QuotaExceeded) as ctx:
            self.aggregator.record(self._event("bookings", quantity=3))

        self.assertEqual(ctx.exception.limit, 12)
        self.assertEqual(ctx.exception.used, 10)
        self.assertEqual(ctx.exception.requested, 3)
        counter = UsagePeriodCounter.objects.get(tenant=self.tenant, usage_type="bookings")
        self.assertEqual(counter.used_units, 10)
        self.assertEqual(UsageEvent.objects.filter(usage_type="bookings").count(), 1)

    def test_hard_limit_allows_exact_ceiling(self):
        self.aggregator.record(self._event("bookings", quantity=10))
        ack = self.aggregator.record(self._event("bookings", quantity=2))

        self.assertEqual(ack.used_units, 12)
        self.assertEqual(ack.remaining_units, 0)

    def test_disabled_usage_type_is_rejected(self):
        with self.assertRaises(QuotaExceeded) as ctx:
            self.aggregator.record(self._event("leads", quantity=1))

        self.assertEqual(ctx.exception.limit, 0)
        self.assertFalse(UsageEvent.objects.filter(usage_type="leads").exists())

    def test_unlimited_type_without_plan_limit_is_tracked_free(self):
        ack = self.aggregator.record(self._event("api_calls", quantity=50))

        self.assertEqual(ack.used_units, 50)
        counter = UsagePeriodCounter.objects.get(tenant=self.tenant, usage_type="api_calls")
        self.assertEqual(counter.overage_rate, Decimal("0"))
        self.assertIsNone(counter.hard_limit)

    def test_invalid_quantity_raises_validation_error(self):
        with self.assertRaises(ValidationError):
            self.aggregator.record(self._event(quantity=0))

    def test_unknown_usage_type_raises_validation_error(self):
        with self.assertRaises(ValidationError):
            self.aggregator.record(self._event("teleportations", quantity=1))

    def test_suspended_subscription_rejects_usage(self):
        self.subscription.status = "suspended"
        self.subscription.save()

        with self.assertRaises(SubscriptionStateError):
            self.aggregator.record(self._event(quantity=1))

    def test_tenant_without_subscription_is_unresolved(self):
        other = create_tenant(slug="other")

        with self.assertRaises(PricingUnresolved):
            self.aggregator.record(
                UsageEventData(tenant_id=str(other.id), usage_type="whatsapp_messages", quantity=1)
            )

    def test_close_period_is_idempotent(self):
        self.aggregator.record(self._event(quantity=1100))
        first = self.aggregator.close_period(self.tenant.id, "whatsapp_messages", period_start())
        second = self.aggregator.close_period(self.tenant.id, "whatsapp_messages", period_start())

        self.assertEqual(first.billed_at, second.billed_at)
        self.assertEqual(second.overage_cost, Decimal("5.00"))

    def test_close_matches_counter_against_ledger(self):
        self.aggregator.record(self._event(quantity=700))
        self.aggregator.record(self._event(quantity=500))
        counter = UsagePeriodCounter.objects.get(tenant=self.tenant, period_start=period_start())
        self.assertEqual(counter.events.total_quantity(), 1200)

        with self.assertNoLogs("apps.billing.metering_service", level="ERROR"):
            self.aggregator.close_period(self.tenant.id, "whatsapp_messages", period_start())

    def test_close_reports_counter_drift_and_bills_the_counter(self):
        self.aggregator.record(self._event(quantity=1100))
        UsagePeriodCounter.objects.filter(tenant=self.tenant, period_start=period_start()).update(used_units=1300)

        with self.assertLogs("apps.billing.metering_service", level="ERROR") as logs:
            counter = self.aggregator.close_period(self.tenant.id, "whatsapp_messages", period_start())

        self.assertIn("1300 counted, 1100 recorded", logs.output[0])
        self.assertEqual(counter.overage_units, 300)

    def test_late_event_after_close_goes_to_next_period(self):
        self.aggregator.record(self._event(quantity=10))
        self.aggregator.close_period(self.tenant.id, "whatsapp_messages", period_start())

        ack = self.aggregator.record(self._event(quantity=4))

        self.assertEqual(ack.period_start, self.subscription.current_period_end)
        self.assertEqual(ack.used_units, 4)
        closed = UsagePeriodCounter.objects.get(tenant=self.tenant, period_start=period_start())
        self.assertEqual(closed.used_units, 10)

    def test_ledger_rows_are_immutable(self):
        self.aggregator.record(self._event(quantity=1))
        event = UsageEvent.objects.get(tenant=self.tenant)

        with self.assertRaises(ValueError):
            event.save()
        with self.assertRaises(ValueError):
            event.delete()

    def test_usage_summary_reports_each_limit(self):
        self.aggregator.record(self._event("bookings", quantity=6))

        summary = {s.usage_type: s for s in self.aggregator.get_usage_summary(self.tenant.id, as_of=self.when)}

        self.assertEqual(summary["bookings"].used_units, 6)
        self.assertEqual(summary["bookings"].remaining_units, 6)
        self.assertEqual(summary["bookings"].percentage_used, Decimal("50.00"))
        self.assertEqual(summary["whatsapp_messages"].used_units, 0)
        self.assertFalse(summary["whatsapp_messages"].is_over_included)


class UsageEmitTestCase(TestCase):
    """Fire-and-forget entry point"""

    def setUp(self) -> None:
        create_country_config()
        plan = create_plan()
        create_usage_limit(plan, "bookings", included_units=1, hard_limit=1)
        self.tenant = create_tenant()
        create_subscription(self.tenant, plan)

    @patch("django_q.tasks.async_task")
    def test_emit_queues_event_with_dedup_key(self, mock_async_task):
        dedup_key = emit(self.tenant.id, "bookings", 1, resource_ref="booking-42")

        mock_async_task.assert_called_once()
        func, payload = mock_async_task.call_args.args
        self.assertEqual(func, "apps.billing.tasks.record_usage_event")
        self.assertEqual(payload["dedup_key"], dedup_key)
        self.assertEqual(payload["resource_ref"], "booking-42")

    @patch("django_q.tasks.async_task", side_effect=ConnectionError("broker down"))
    def test_emit_records_synchronously_when_queue_unavailable(self, _mock_async_task):
        dedup_key = emit(self.tenant.id, "bookings", 1)

        event = UsageEvent.objects.get(tenant=self.tenant)
        self.assertEqual(event.dedup_key, dedup_key)

    def test_queued_event_over_quota_is_dropped(self):
        payload = {"tenant_id": str(self.tenant.id), "usage_type": "bookings", "quantity": 1, "dedup_key": "a"}
        self.assertTrue(record_usage_event(payload)["success"])

        result = record_usage_event({**payload, "dedup_key": "b"})

        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "QUOTA_EXCEEDED")
        self.assertEqual(UsageEvent.objects.filter(tenant=self.tenant).count(), 1)

    def test_redelivered_queued_event_is_counted_once(self):
        payload = {"tenant_id": str(self.tenant.id), "usage_type": "bookings", "quantity": 1, "dedup_key": "same"}
        record_usage_event(payload)
        result = record_usage_event(payload)

        self.assertTrue(result["success"])
        self.assertTrue(result["duplicate"])
