import logging
from typing import Any

import stripe
from django.conf import settings

from .base import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    REFUND_COMPLETED,
    SUBSCRIPTION_CANCELLED,
    BaseWebhookProcessor,
    NormalizedWebhookEvent,
)

logger = logging.getLogger(__name__)

# Stripe's default replay window for signed payloads
STRIPE_SIGNATURE_TOLERANCE_SECONDS = 300


# ===============================================================================
# STRIPE WEBHOOK PROCESSOR
# ===============================================================================


class StripeWebhookProcessor(BaseWebhookProcessor):
    """
    💳 Stripe webhook processor

    Handles Stripe events:
    - payment_intent.succeeded → confirm the charge attempt, pay the invoice
    - payment_intent.payment_failed → fail the pending attempt
    - customer.subscription.deleted → cancel the tenant's subscription
    - charge.refunded → record the refund on the invoice
    """

    gateway_name = "stripe"

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        """🔐 Verify the Stripe-Signature header with the SDK (fails closed without a secret)"""
        webhook_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        if not webhook_secret or not signature:
            return False

        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature, webhook_secret, tolerance=STRIPE_SIGNATURE_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, ValueError, UnicodeDecodeError):
            return False
        return True

    def parse_event(self, payload: dict[str, Any]) -> NormalizedWebhookEvent:
        """🎯 Map a Stripe event to the billing event it represents"""
        event_type = payload["type"]
        obj = payload.get("data", {}).get("object", {})
        metadata = obj.get("metadata") or {}
        base = {"gateway": self.gateway_name, "event_id": payload["id"], "event_type": event_type}

        if event_type == "payment_intent.succeeded":
            return NormalizedWebhookEvent(
                **base,
                kind=PAYMENT_SUCCEEDED,
                gateway_payment_id=obj["id"],
                invoice_id=metadata.get("invoice_id", ""),
                amount_minor=obj.get("amount_received", obj.get("amount")),
                currency=(obj.get("currency") or "").upper(),
                customer_ref=obj.get("customer") or "",
            )

        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return NormalizedWebhookEvent(
                **base,
                kind=PAYMENT_FAILED,
                gateway_payment_id=obj["id"],
                invoice_id=metadata.get("invoice_id", ""),
                error_code=last_error.get("decline_code") or last_error.get("code") or "payment_failed",
                error_message=last_error.get("message", ""),
            )

        if event_type == "customer.subscription.deleted":
            return NormalizedWebhookEvent(**base, kind=SUBSCRIPTION_CANCELLED, customer_ref=obj.get("customer") or "")

        if event_type == "charge.refunded":
            return NormalizedWebhookEvent(
                **base,
                kind=REFUND_COMPLETED,
                gateway_payment_id=obj.get("payment_intent") or obj["id"],
                invoice_id=metadata.get("invoice_id", ""),
                amount_minor=obj.get("amount_refunded"),
                amount_is_cumulative=True,
                currency=(obj.get("currency") or "").upper(),
            )

        return NormalizedWebhookEvent(**base)
