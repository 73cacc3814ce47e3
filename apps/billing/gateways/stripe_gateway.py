"""
Stripe Payment Gateway for the billing engine
Off-session PaymentIntent charges of saved payment methods.
"""

from __future__ import annotations

import logging
from typing import Any

import stripe
from django.conf import settings

from apps.billing.exceptions import GatewayDeclined, GatewayTransient

from .base import BasePaymentGateway, ChargeOutcome, ChargeRequest, PaymentGatewayFactory

logger = logging.getLogger(__name__)

# PaymentIntent statuses that mean the customer must act: a decline for off-session billing
_ACTION_REQUIRED_STATUSES = frozenset({"requires_action", "requires_payment_method", "requires_confirmation"})

# Option keys copied from the country gateway config into the PaymentIntent
_PASSTHROUGH_OPTIONS = ("statement_descriptor_suffix", "on_behalf_of")


# ===============================================================================
# STRIPE GATEWAY IMPLEMENTATION
# ===============================================================================


class StripeGateway(BasePaymentGateway):
    """
    💳 Stripe payment gateway implementation

    Charges are confirmed synchronously (``confirm=True``); a ``processing``
    intent is reported as pending and settled by the ``payment_intent.*``
    webhooks. Each attempt carries its own idempotency key so a network retry
    inside one attempt never double-charges.
    """

    def __init__(self, options: dict[str, Any] | None = None, timeout_seconds: int | None = None) -> None:
        super().__init__(options=options, timeout_seconds=timeout_seconds)
        self._client = stripe.StripeClient(
            api_key=getattr(settings, "STRIPE_SECRET_KEY", "") or "",
            http_client=stripe.RequestsClient(timeout=self.timeout_seconds),
            max_network_retries=0,
        )

    @property
    def gateway_name(self) -> str:
        return "stripe"

    def validate_configuration(self) -> bool:
        if not getattr(settings, "STRIPE_SECRET_KEY", None):
            self.logger.error("❌ Stripe secret key not configured")
            return False
        return True

    def charge(self, request: ChargeRequest) -> ChargeOutcome:
        params: dict[str, Any] = {
            "amount": request["amount_minor"],
            "currency": request["currency"].lower(),
            "customer": request["customer_id"],
            "payment_method": request["payment_method_ref"],
            "off_session": True,
            "confirm": True,
            "description": f"Invoice {request['invoice_number']}",
            "metadata": {
                "invoice_id": request["invoice_id"],
                "attempt_number": str(request["attempt_number"]),
            },
        }
        for key in _PASSTHROUGH_OPTIONS:
            if key in self.options:
                params[key] = self.options[key]

        try:
            intent = self._client.payment_intents.create(
                params=params, options={"idempotency_key": request["idempotency_key"]}
            )
        except stripe.CardError as e:
            code = e.code or "card_declined"
            self.logger.warning(f"❌ Stripe declined invoice {request['invoice_number']}: {code}")
            raise GatewayDeclined(e.user_message or str(e), gateway=self.gateway_name, code=code) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            self.logger.warning(f"🔄 Stripe unavailable for invoice {request['invoice_number']}: {e}")
            raise GatewayTransient(str(e), gateway=self.gateway_name, code=type(e).__name__) from e
        except stripe.StripeError as e:
            # Authentication and request errors are provider-side, not the card's fault
            self.logger.error(f"🔥 Stripe error for invoice {request['invoice_number']}: {e}")
            code = getattr(e, "code", None) or "stripe_error"
            raise GatewayTransient(str(e), gateway=self.gateway_name, code=code) from e

        if intent.status in _ACTION_REQUIRED_STATUSES:
            raise GatewayDeclined(
                f"Payment requires customer action ({intent.status})", gateway=self.gateway_name, code=intent.status
            )

        status = "succeeded" if intent.status == "succeeded" else "pending"
        self.logger.info(f"💳 Stripe PaymentIntent {intent.id} {intent.status} for {request['invoice_number']}")
        return ChargeOutcome(
            status=status,
            gateway_payment_id=intent.id,
            amount_minor=int(intent.amount_received or intent.amount),
            raw_status=intent.status,
        )


# Register Stripe gateway with factory
PaymentGatewayFactory.register_gateway("stripe", StripeGateway)
