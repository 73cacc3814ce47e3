# ===============================================================================
# PAYMENT GATEWAY ADAPTER TESTS
# ===============================================================================

from unittest.mock import MagicMock

import requests
import stripe
from django.test import TestCase, override_settings

from apps.billing.exceptions import GatewayDeclined, GatewayTransient
from apps.billing.gateways import ChargeRequest, PaymentGatewayFactory, RazorpayGateway, StripeGateway


def charge_request() -> ChargeRequest:
    return ChargeRequest(
        invoice_id="7d4f0f1e-3c55-4c53-9f59-7a1b2b3c4d5e",
        invoice_number="INV-202601-000001",
        attempt_number=1,
        amount_minor=11800,
        currency="USD",
        customer_id="cus_123",
        payment_method_ref="pm_123",
        email="billing@acme.test",
        idempotency_key="7d4f0f1e-1",
    )


class StripeGatewayTestCase(TestCase):
    def setUp(self) -> None:
        self.gateway = StripeGateway(options={"statement_descriptor_suffix": "ACME"})
        self.gateway._client = MagicMock()
        self.create = self.gateway._client.payment_intents.create

    def _intent(self, status: str) -> MagicMock:
        intent = MagicMock()
        intent.id = "pi_123"
        intent.status = status
        intent.amount = 11800
        intent.amount_received = 11800 if status == "succeeded" else 0
        return intent

    def test_succeeded_intent(self):
        self.create.return_value = self._intent("succeeded")

        outcome = self.gateway.charge(charge_request())

        self.assertEqual(outcome["status"], "succeeded")
        self.assertEqual(outcome["gateway_payment_id"], "pi_123")
        self.assertEqual(outcome["amount_minor"], 11800)
        params = self.create.call_args.kwargs["params"]
        self.assertEqual(params["currency"], "usd")
        self.assertTrue(params["off_session"])
        self.assertEqual(params["statement_descriptor_suffix"], "ACME")
        self.assertEqual(self.create.call_args.kwargs["options"], {"idempotency_key": "7d4f0f1e-1"})

    def test_processing_intent_is_pending(self):
        self.create.return_value = self._intent("processing")

        outcome = self.gateway.charge(charge_request())

        self.assertEqual(outcome["status"], "pending")
        self.assertEqual(outcome["amount_minor"], 11800)

    def test_action_required_is_declined(self):
        self.create.return_value = self._intent("requires_action")

        with self.assertRaises(GatewayDeclined) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "requires_action")

    def test_card_error_is_declined(self):
        self.create.side_effect = stripe.CardError("Your card was declined.", None, "card_declined")

        with self.assertRaises(GatewayDeclined) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "card_declined")
        self.assertEqual(ctx.exception.gateway, "stripe")

    def test_connection_error_is_transient(self):
        self.create.side_effect = stripe.APIConnectionError("Network unreachable")

        with self.assertRaises(GatewayTransient) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "APIConnectionError")

    def test_authentication_error_is_transient(self):
        self.create.side_effect = stripe.AuthenticationError("Invalid API Key provided")

        with self.assertRaises(GatewayTransient):
            self.gateway.charge(charge_request())


class RazorpayGatewayTestCase(TestCase):
    def setUp(self) -> None:
        self.gateway = RazorpayGateway(options={"contact": "+919999999999"})
        self.gateway._session = MagicMock()
        self.post = self.gateway._session.post

    def _response(self, status_code: int, body: dict) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = body
        response.text = str(body)
        return response

    def test_recurring_payment_is_pending(self):
        self.post.side_effect = [
            self._response(200, {"id": "order_1"}),
            self._response(200, {"razorpay_payment_id": "pay_1", "status": "created"}),
        ]

        outcome = self.gateway.charge(charge_request())

        self.assertEqual(outcome["status"], "pending")
        self.assertEqual(outcome["gateway_payment_id"], "pay_1")
        payment_body = self.post.call_args_list[1].kwargs["json"]
        self.assertEqual(payment_body["order_id"], "order_1")
        self.assertEqual(payment_body["token"], "pm_123")
        self.assertEqual(payment_body["notes"]["invoice_id"], "7d4f0f1e-3c55-4c53-9f59-7a1b2b3c4d5e")

    def test_timeout_is_transient(self):
        self.post.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(GatewayTransient) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "Timeout")

    def test_server_error_is_transient(self):
        self.post.return_value = self._response(503, {"error": {"code": "SERVER_ERROR", "description": "down"}})

        with self.assertRaises(GatewayTransient) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "SERVER_ERROR")

    def test_customer_decline(self):
        self.post.side_effect = [
            self._response(200, {"id": "order_1"}),
            self._response(
                400,
                {
                    "error": {
                        "code": "BAD_REQUEST_ERROR",
                        "description": "Payment failed due to insufficient balance",
                        "source": "customer",
                        "reason": "insufficient_balance",
                    }
                },
            ),
        ]

        with self.assertRaises(GatewayDeclined) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "insufficient_balance")

    def test_rejected_request_is_transient(self):
        self.post.return_value = self._response(
            400, {"error": {"code": "BAD_REQUEST_ERROR", "description": "order amount invalid", "source": "business"}}
        )

        with self.assertRaises(GatewayTransient) as ctx:
            self.gateway.charge(charge_request())
        self.assertEqual(ctx.exception.code, "BAD_REQUEST_ERROR")


class PaymentGatewayFactoryTestCase(TestCase):
    def test_registered_gateways(self):
        self.assertIn("stripe", PaymentGatewayFactory.list_available_gateways())
        self.assertIn("razorpay", PaymentGatewayFactory.list_available_gateways())

    def test_unknown_gateway(self):
        with self.assertRaises(ValueError):
            PaymentGatewayFactory.create_gateway("paypal")

    @override_settings(STRIPE_SECRET_KEY="")
    def test_unconfigured_gateway(self):
        with self.assertRaises(ValueError):
            PaymentGatewayFactory.create_gateway("stripe")

    def test_timeout_from_country_config(self):
        gateway = PaymentGatewayFactory.create_gateway("razorpay", options={}, timeout_seconds=5)

        self.assertEqual(gateway.timeout_seconds, 5)
