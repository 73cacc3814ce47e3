# ===============================================================================
# PAYMENT ORCHESTRATOR TESTS
# ===============================================================================

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.test import TestCase, override_settings
from django.utils import timezone

from apps.billing import events
from apps.billing.exceptions import ConcurrencyConflict, GatewayDeclined, GatewayTransient, PricingUnresolved
from apps.billing.models import CountryBillingConfig, InvoiceChargeLease, PaymentAttempt, Subscription
from apps.billing.payment_service import PaymentOrchestrator, compute_next_retry
from apps.billing.tasks import charge_invoice
from apps.integrations.services import apply_webhook_effect
from apps.integrations.webhooks.base import PAYMENT_SUCCEEDED, NormalizedWebhookEvent
from tests.factories.billing_factories import (
    CountryConfigRequest,
    create_country_config,
    create_invoice,
    create_plan,
    create_subscription,
    create_tenant,
)

CREATE_GATEWAY = "apps.billing.payment_service.PaymentGatewayFactory.create_gateway"


def succeeded(payment_id: str = "pi_ok", amount_minor: int = 10000) -> dict:
    return {
        "status": "succeeded",
        "gateway_payment_id": payment_id,
        "amount_minor": amount_minor,
        "raw_status": "succeeded",
    }


def pending(payment_id: str = "pay_pending", amount_minor: int = 10000) -> dict:
    return {
        "status": "pending",
        "gateway_payment_id": payment_id,
        "amount_minor": amount_minor,
        "raw_status": "created",
    }


def gateway_returning(*results) -> MagicMock:
    """Gateway mock whose successive charges return outcomes or raise errors"""
    gateway = MagicMock()
    gateway.charge.side_effect = list(results)
    return gateway


class PaymentOrchestratorTestCase(TestCase):
    """Single-gateway charge rounds"""

    def setUp(self) -> None:
        create_country_config()
        self.plan = create_plan()
        self.tenant = create_tenant()
        self.now = timezone.now()
        self.subscription = create_subscription(self.tenant, self.plan, start=self.now - timedelta(days=31))
        self.invoice = create_invoice(self.subscription, total=Decimal("100.00"))
        self.orchestrator = PaymentOrchestrator()

    def test_successful_charge_pays_invoice(self):
        gateway = gateway_returning(succeeded())
        with patch(CREATE_GATEWAY, return_value=gateway):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "succeeded")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")
        self.assertEqual(self.invoice.amount_due, Decimal("0"))

        request = gateway.charge.call_args.args[0]
        self.assertEqual(request["amount_minor"], 10000)
        self.assertEqual(request["currency"], "USD")
        self.assertEqual(request["idempotency_key"], f"{self.invoice.id}-1")

        attempt = PaymentAttempt.objects.get(invoice=self.invoice)
        self.assertEqual(attempt.status, "succeeded")
        self.assertEqual(attempt.gateway_payment_id, "pi_ok")
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.last_payment_at, self.now)

    def test_transient_failure_then_retry_succeeds(self):
        """Attempt 1 transient: retry in 1h and past_due; attempt 2 pays and reactivates"""
        with patch(CREATE_GATEWAY, return_value=gateway_returning(GatewayTransient("timeout", "stripe", "Timeout"))):
            first = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(first.status, "failed")
        self.assertEqual(first.next_retry_at, self.now + timedelta(hours=1))
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "past_due")

        later = self.now + timedelta(hours=1, minutes=1)
        with patch(CREATE_GATEWAY, return_value=gateway_returning(succeeded())):
            results = self.orchestrator.retry_due_payments(now=later)

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].status, "succeeded")
        self.assertEqual(results[0].charge_round, 2)
        self.invoice.refresh_from_db()
        self.subscription.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")
        self.assertEqual(self.subscription.status, "active")
        self.assertEqual(
            list(PaymentAttempt.objects.filter(invoice=self.invoice).values_list("attempt_number", "status")),
            [(1, "failed"), (2, "succeeded")],
        )

    def test_retry_not_due_yet_is_left_alone(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(GatewayTransient("timeout", "stripe", "Timeout"))):
            self.orchestrator.charge(self.invoice.id, now=self.now)

        results = self.orchestrator.retry_due_payments(now=self.now + timedelta(minutes=30))

        self.assertEqual(results, [])

    def test_decline_is_not_retried_by_default(self):
        error = GatewayDeclined("Your card was declined", "stripe", "card_declined")
        with patch(CREATE_GATEWAY, return_value=gateway_returning(error)):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error_code, "card_declined")
        self.assertIsNone(result.next_retry_at)
        attempt = PaymentAttempt.objects.get(invoice=self.invoice)
        self.assertEqual(attempt.failure_kind, "declined")
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "past_due")

    def test_pending_outcome_waits_for_webhook(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending())):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "pending")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "pending")

        gateway = gateway_returning(succeeded())
        with patch(CREATE_GATEWAY, return_value=gateway):
            second = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(second.status, "skipped")
        gateway.charge.assert_not_called()

    def test_confirm_pending_attempt(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending())):
            self.orchestrator.charge(self.invoice.id, now=self.now)
        attempt = PaymentAttempt.objects.get(invoice=self.invoice)

        self.orchestrator.confirm_attempt(attempt)

        attempt.refresh_from_db()
        self.invoice.refresh_from_db()
        self.assertEqual(attempt.status, "succeeded")
        self.assertEqual(self.invoice.status, "paid")

    def test_paid_invoice_is_skipped(self):
        self.invoice.apply_payment(self.invoice.total_amount)

        with patch(CREATE_GATEWAY) as mock_create:
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "skipped")
        mock_create.assert_not_called()

    def test_missing_payment_method_records_declined_attempt(self):
        Subscription.objects.filter(pk=self.subscription.pk).update(payment_method_ref="")

        with patch(CREATE_GATEWAY) as mock_create:
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        mock_create.assert_not_called()
        self.assertEqual(result.error_code, "no_payment_method")
        self.assertEqual(PaymentAttempt.objects.get(invoice=self.invoice).failure_kind, "declined")

    def test_unconfigured_gateway_counts_as_transient(self):
        with patch(CREATE_GATEWAY, side_effect=ValueError("Payment gateway 'stripe' not properly configured")):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.error_code, "not_configured")
        self.assertIsNotNone(result.next_retry_at)

    def test_country_without_gateway_is_unresolved(self):
        CountryBillingConfig.objects.filter(country="US").update(primary_gateway="")

        with self.assertRaises(PricingUnresolved):
            self.orchestrator.charge(self.invoice.id, now=self.now)
        self.assertFalse(InvoiceChargeLease.objects.exists())

    def test_live_lease_blocks_second_worker(self):
        InvoiceChargeLease.objects.create(
            invoice=self.invoice, holder="other", acquired_at=self.now, expires_at=self.now + timedelta(minutes=5)
        )

        with patch(CREATE_GATEWAY) as mock_create:
            with self.assertRaises(ConcurrencyConflict):
                self.orchestrator.charge(self.invoice.id, now=self.now)
        mock_create.assert_not_called()

    def test_expired_lease_is_taken_over_and_released(self):
        InvoiceChargeLease.objects.create(
            invoice=self.invoice,
            holder="crashed",
            acquired_at=self.now - timedelta(minutes=10),
            expires_at=self.now - timedelta(minutes=5),
        )

        with patch(CREATE_GATEWAY, return_value=gateway_returning(succeeded())):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "succeeded")
        self.assertFalse(InvoiceChargeLease.objects.filter(invoice=self.invoice).exists())

    def test_payment_after_cancellation_needs_reconciliation(self):
        started = self.now - timedelta(minutes=5)
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending())):
            self.orchestrator.charge(self.invoice.id, now=started)
        attempt = PaymentAttempt.objects.get(invoice=self.invoice)
        self.orchestrator.lifecycle.cancel(self.subscription.id, reason="customer_request")

        receiver = MagicMock()
        events.payment_refund_required.connect(receiver, weak=False, dispatch_uid="test-refund-required")
        self.addCleanup(events.payment_refund_required.disconnect, dispatch_uid="test-refund-required")
        with self.captureOnCommitCallbacks(execute=True):
            self.orchestrator.confirm_attempt(attempt)

        attempt.refresh_from_db()
        self.invoice.refresh_from_db()
        self.assertEqual(attempt.status, "succeeded")
        self.assertTrue(attempt.requires_reconciliation)
        self.assertEqual(self.invoice.status, "pending")
        receiver.assert_called_once()

    def test_finalized_attempts_are_immutable(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(succeeded())):
            self.orchestrator.charge(self.invoice.id, now=self.now)
        attempt = PaymentAttempt.objects.get(invoice=self.invoice)

        attempt.error_message = "rewritten"
        with self.assertRaises(ValueError):
            attempt.save()
        with self.assertRaises(ValueError):
            attempt.delete()

    def test_charge_task_reports_outcome(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(succeeded())):
            result = charge_invoice(str(self.invoice.id))

        self.assertTrue(result["success"])
        self.assertEqual(result["status"], "succeeded")


class GatewayFallbackTestCase(TestCase):
    """Secondary gateway is used only after a transient primary failure"""

    def setUp(self) -> None:
        create_country_config(CountryConfigRequest(primary_gateway="stripe", secondary_gateway="razorpay"))
        self.tenant = create_tenant()
        self.subscription = create_subscription(self.tenant, create_plan(), start=timezone.now() - timedelta(days=31))
        self.invoice = create_invoice(self.subscription)
        self.now = timezone.now()
        self.stripe = MagicMock()
        self.razorpay = MagicMock()

    def _create(self, name, **kwargs):
        return {"stripe": self.stripe, "razorpay": self.razorpay}[name]

    def test_transient_primary_falls_back_to_secondary(self):
        self.stripe.charge.side_effect = GatewayTransient("503", "stripe", "APIError")
        self.razorpay.charge.return_value = succeeded("pay_fallback")

        with patch(CREATE_GATEWAY, side_effect=self._create):
            result = PaymentOrchestrator().charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "succeeded")
        attempts = list(PaymentAttempt.objects.filter(invoice=self.invoice))
        self.assertEqual([a.gateway for a in attempts], ["stripe", "razorpay"])
        self.assertEqual([a.charge_round for a in attempts], [1, 1])
        self.assertFalse(attempts[0].is_fallback)
        self.assertTrue(attempts[1].is_fallback)
        self.assertEqual(attempts[0].failure_kind, "transient")
        self.assertEqual(self.razorpay.charge.call_args.args[0]["idempotency_key"], f"{self.invoice.id}-2")

    def test_decline_does_not_fall_back(self):
        self.stripe.charge.side_effect = GatewayDeclined("declined", "stripe", "insufficient_funds")

        with patch(CREATE_GATEWAY, side_effect=self._create):
            result = PaymentOrchestrator().charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "failed")
        self.razorpay.charge.assert_not_called()
        self.assertEqual(PaymentAttempt.objects.filter(invoice=self.invoice).count(), 1)

    def test_both_gateways_transient_schedules_retry(self):
        self.stripe.charge.side_effect = GatewayTransient("503", "stripe", "APIError")
        self.razorpay.charge.side_effect = GatewayTransient("timeout", "razorpay", "Timeout")

        with patch(CREATE_GATEWAY, side_effect=self._create):
            result = PaymentOrchestrator().charge(self.invoice.id, now=self.now)

        self.assertEqual(result.next_retry_at, self.now + timedelta(hours=1))
        attempts = list(PaymentAttempt.objects.filter(invoice=self.invoice))
        self.assertIsNone(attempts[0].next_retry_at)
        self.assertEqual(attempts[1].next_retry_at, self.now + timedelta(hours=1))


class RetryScheduleTestCase(TestCase):
    def setUp(self) -> None:
        self.now = timezone.now()

    def test_backoff_schedule(self):
        self.assertEqual(compute_next_retry(1, declined=False, now=self.now), self.now + timedelta(hours=1))
        self.assertEqual(compute_next_retry(2, declined=False, now=self.now), self.now + timedelta(hours=6))
        self.assertEqual(compute_next_retry(3, declined=False, now=self.now), self.now + timedelta(hours=24))

    def test_round_cap_stops_retries(self):
        self.assertIsNone(compute_next_retry(4, declined=False, now=self.now))

    def test_declines_follow_policy(self):
        self.assertIsNone(compute_next_retry(1, declined=True, now=self.now))

        with override_settings(BILLING_RETRY_DECLINED_PAYMENTS=True):
            self.assertEqual(compute_next_retry(1, declined=True, now=self.now), self.now + timedelta(hours=1))

    @override_settings(BILLING_PAYMENT_RETRY_HOURS=("soon",))
    def test_invalid_schedule_falls_back_to_default(self):
        self.assertEqual(compute_next_retry(2, declined=False, now=self.now), self.now + timedelta(hours=6))


class PendingTimeoutTestCase(TestCase):
    """Charges the gateway never confirms fall back into the retry schedule"""

    def setUp(self) -> None:
        create_country_config()
        self.tenant = create_tenant()
        self.now = timezone.now()
        self.subscription = create_subscription(self.tenant, create_plan(), start=self.now - timedelta(days=31))
        self.invoice = create_invoice(self.subscription, total=Decimal("100.00"))
        self.orchestrator = PaymentOrchestrator()

    def test_unconfirmed_charge_expires_into_dunning(self):
        gateway = gateway_returning(pending(), succeeded())
        expired_at = self.now + timedelta(days=2)

        with patch(CREATE_GATEWAY, return_value=gateway):
            self.orchestrator.charge(self.invoice.id, now=self.now)
            self.assertEqual(self.orchestrator.retry_due_payments(now=expired_at), [])

            attempt = PaymentAttempt.objects.get(invoice=self.invoice)
            self.assertEqual(attempt.status, "failed")
            self.assertEqual(attempt.failure_kind, "transient")
            self.assertEqual(attempt.error_code, "confirmation_timeout")
            self.assertEqual(attempt.next_retry_at, expired_at + timedelta(hours=1))
            self.subscription.refresh_from_db()
            self.assertEqual(self.subscription.status, "past_due")
            self.assertEqual(self.subscription.next_payment_at, expired_at + timedelta(days=7))

            results = self.orchestrator.retry_due_payments(now=expired_at + timedelta(hours=2))

        self.assertEqual(gateway.charge.call_count, 2)
        self.assertEqual([r.status for r in results], ["succeeded"])
        self.assertEqual(results[0].charge_round, 2)
        self.invoice.refresh_from_db()
        self.subscription.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")
        self.assertEqual(self.subscription.status, "active")

    def test_recent_pending_charge_is_left_alone(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending())):
            self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(self.orchestrator.expire_pending_attempts(now=self.now + timedelta(hours=23)), 0)
        self.assertEqual(PaymentAttempt.objects.get(invoice=self.invoice).status, "pending")

    @override_settings(BILLING_PENDING_ATTEMPT_TIMEOUT=30)
    def test_timeout_is_configurable(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending())):
            self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(self.orchestrator.expire_pending_attempts(now=self.now + timedelta(minutes=31)), 1)

    def test_success_after_expiry_is_recorded_as_external_payment(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending("pay_late"))):
            self.orchestrator.charge(self.invoice.id, now=self.now)
        self.orchestrator.expire_pending_attempts(now=self.now + timedelta(days=2))

        attempt = self.orchestrator.record_external_success(
            self.invoice.id, gateway="stripe", gateway_payment_id="pay_late", amount=Decimal("100.00")
        )

        self.assertEqual(attempt.attempt_number, 2)
        self.assertEqual(attempt.status, "succeeded")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")


class WebhookInterleavingTestCase(TestCase):
    """The gateway's webhook is applied before the synchronous charge call returns"""

    def setUp(self) -> None:
        create_country_config()
        self.tenant = create_tenant()
        self.now = timezone.now()
        self.subscription = create_subscription(self.tenant, create_plan(), start=self.now - timedelta(days=31))
        self.invoice = create_invoice(self.subscription, total=Decimal("100.00"))
        self.orchestrator = PaymentOrchestrator()

    def _webhook_then(self, outcome: dict) -> MagicMock:
        """Gateway mock that delivers the success webhook mid-call, then returns ``outcome``"""

        def charge(request):
            apply_webhook_effect(
                NormalizedWebhookEvent(
                    gateway="stripe",
                    event_id="evt_race",
                    event_type="payment_intent.succeeded",
                    kind=PAYMENT_SUCCEEDED,
                    gateway_payment_id=outcome["gateway_payment_id"],
                    invoice_id=request["invoice_id"],
                    amount_minor=10000,
                    currency="USD",
                )
            )
            return outcome

        gateway = MagicMock()
        gateway.charge.side_effect = charge
        return gateway

    def _refund_receiver(self) -> MagicMock:
        receiver = MagicMock()
        events.payment_refund_required.connect(receiver, weak=False, dispatch_uid="test-interleaving-refund")
        self.addCleanup(events.payment_refund_required.disconnect, dispatch_uid="test-interleaving-refund")
        return receiver

    def test_succeeded_result_after_webhook_is_not_recorded_twice(self):
        receiver = self._refund_receiver()

        with self.captureOnCommitCallbacks(execute=True):
            with patch(CREATE_GATEWAY, return_value=self._webhook_then(succeeded("pi_race"))):
                result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "succeeded")
        self.assertFalse(result.requires_reconciliation)
        attempts = PaymentAttempt.objects.filter(invoice=self.invoice)
        self.assertEqual(
            list(attempts.values_list("attempt_number", "status", "gateway_payment_id")), [(1, "succeeded", "pi_race")]
        )
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")
        self.assertEqual(self.invoice.amount_paid, Decimal("100.00"))
        receiver.assert_not_called()

    def test_pending_result_after_webhook_keeps_the_confirmed_attempt(self):
        with patch(CREATE_GATEWAY, return_value=self._webhook_then(pending("pi_race"))):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "succeeded")
        self.assertEqual(PaymentAttempt.objects.filter(invoice=self.invoice).count(), 1)
        self.assertFalse(PaymentAttempt.objects.filter(status="pending").exists())

    def test_webhook_after_pending_result_confirms_it(self):
        """The handler looked the payment up before the pending row was written"""
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending("pi_slow"))):
            self.orchestrator.charge(self.invoice.id, now=self.now)

        attempt = self.orchestrator.record_external_success(
            self.invoice.id, gateway="stripe", gateway_payment_id="pi_slow", amount=Decimal("100.00")
        )

        self.assertEqual(attempt.attempt_number, 1)
        self.assertEqual(PaymentAttempt.objects.get(invoice=self.invoice).status, "succeeded")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")

    def test_second_worker_is_refused_while_charge_is_in_flight(self):
        def charge_again(request):
            with self.assertRaises(ConcurrencyConflict):
                PaymentOrchestrator().charge(self.invoice.id, now=self.now)
            return succeeded()

        gateway = MagicMock()
        gateway.charge.side_effect = charge_again
        with patch(CREATE_GATEWAY, return_value=gateway):
            result = self.orchestrator.charge(self.invoice.id, now=self.now)

        self.assertEqual(result.status, "succeeded")
        self.assertEqual(gateway.charge.call_count, 1)
        self.assertEqual(PaymentAttempt.objects.filter(invoice=self.invoice).count(), 1)


class PartialPaymentTestCase(TestCase):
    def setUp(self) -> None:
        create_country_config()
        self.tenant = create_tenant()
        self.now = timezone.now()
        self.subscription = create_subscription(self.tenant, create_plan(), start=self.now - timedelta(days=31))
        self.invoice = create_invoice(self.subscription, total=Decimal("100.00"))
        self.orchestrator = PaymentOrchestrator()

    def test_partial_payment_schedules_charge_for_balance(self):
        gateway = gateway_returning(succeeded("pi_part", amount_minor=4000), succeeded("pi_rest", amount_minor=6000))

        with patch(CREATE_GATEWAY, return_value=gateway):
            first = self.orchestrator.charge(self.invoice.id, now=self.now)
            self.invoice.refresh_from_db()
            self.assertEqual(self.invoice.status, "partial")
            self.assertEqual(self.invoice.amount_due, Decimal("60.00"))
            self.assertEqual(first.next_retry_at, self.now + timedelta(hours=1))

            results = self.orchestrator.retry_due_payments(now=self.now + timedelta(hours=1, minutes=1))

        self.assertEqual(len(results), 1)
        self.assertEqual(gateway.charge.call_args.args[0]["amount_minor"], 6000)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, "paid")

    def test_partial_confirmation_schedules_charge_for_balance(self):
        with patch(CREATE_GATEWAY, return_value=gateway_returning(pending())):
            self.orchestrator.charge(self.invoice.id, now=self.now)
        attempt = PaymentAttempt.objects.get(invoice=self.invoice)

        self.orchestrator.confirm_attempt(attempt, amount=Decimal("25.00"), now=self.now)

        attempt.refresh_from_db()
        self.assertEqual(attempt.next_retry_at, self.now + timedelta(hours=1))
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.amount_due, Decimal("75.00"))
