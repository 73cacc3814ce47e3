"""Integration service layer.

Applies normalized gateway webhook events to billing state. Every function
here runs inside the webhook's processing transaction: an exception rolls the
effects back and leaves the webhook row ``failed`` for replay.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from apps.billing.models import Invoice, PaymentAttempt, Subscription
from apps.billing.payment_service import PaymentOrchestrator
from apps.billing.subscription_service import SubscriptionLifecycleManager
from apps.common.types import IntegrationError

from .webhooks.base import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    REFUND_COMPLETED,
    SUBSCRIPTION_CANCELLED,
    NormalizedWebhookEvent,
)

logger = logging.getLogger(__name__)


def apply_webhook_effect(event: NormalizedWebhookEvent) -> str:
    """🎯 Route a billing-relevant webhook event to its handler"""
    handlers = {
        PAYMENT_SUCCEEDED: _handle_payment_succeeded,
        PAYMENT_FAILED: _handle_payment_failed,
        SUBSCRIPTION_CANCELLED: _handle_subscription_cancelled,
        REFUND_COMPLETED: _handle_refund_completed,
    }
    handler = handlers.get(event.kind)
    if handler is None:
        raise IntegrationError(f"No handler for webhook kind '{event.kind}'")
    return handler(event)


# ===============================================================================
# PAYMENTS
# ===============================================================================


def _handle_payment_succeeded(event: NormalizedWebhookEvent) -> str:
    attempt = _find_attempt(event)
    if attempt is not None:
        if attempt.status == "succeeded":
            return f"Payment {event.gateway_payment_id} already confirmed"
        if attempt.status == "pending":
            amount = _amount_for(attempt.invoice, event)
            PaymentOrchestrator().confirm_attempt(attempt, amount=amount)
            return f"Payment {event.gateway_payment_id} confirmed"

    # Charged without a usable pending attempt, e.g. our side timed out mid-call
    invoice = attempt.invoice if attempt is not None else _find_invoice(event)
    if invoice is None:
        logger.warning(f"⚠️ [Webhook] Payment not found (external): {event.gateway}:{event.gateway_payment_id}")
        return f"Payment not found (external): {event.gateway_payment_id}"

    amount = _amount_for(invoice, event)
    if amount is None:
        raise IntegrationError(f"Payment {event.gateway_payment_id} has no amount")
    PaymentOrchestrator().record_external_success(
        invoice.id, gateway=event.gateway, gateway_payment_id=event.gateway_payment_id, amount=amount
    )
    return f"External payment {event.gateway_payment_id} recorded on {invoice.number}"


def _handle_payment_failed(event: NormalizedWebhookEvent) -> str:
    attempt = _find_attempt(event)
    if attempt is None:
        logger.warning(f"⚠️ [Webhook] Failed payment not found: {event.gateway}:{event.gateway_payment_id}")
        return f"Payment not found (external): {event.gateway_payment_id}"
    if attempt.status != "pending":
        return f"Payment {event.gateway_payment_id} already {attempt.status}"

    PaymentOrchestrator().fail_attempt(attempt, event.error_code, event.error_message)
    return f"Payment {event.gateway_payment_id} failed: {event.error_code}"


def _handle_refund_completed(event: NormalizedWebhookEvent) -> str:
    attempt = _find_attempt(event)
    invoice = attempt.invoice if attempt is not None else _find_invoice(event)
    if invoice is None:
        logger.warning(f"⚠️ [Webhook] Refund for unknown payment {event.gateway}:{event.gateway_payment_id}")
        return f"Refund for unknown payment {event.gateway_payment_id}"

    invoice = Invoice.objects.select_for_update().select_related("currency").get(pk=invoice.pk)
    amount = _amount_for(invoice, event)
    if amount is None:
        raise IntegrationError(f"Refund for {event.gateway_payment_id} has no amount")
    if event.amount_is_cumulative:
        amount = amount - invoice.amount_refunded

    if amount <= 0:
        return f"Refund for {invoice.number} already recorded"
    if invoice.status not in ("paid", "partial", "refunded"):
        logger.warning(f"⚠️ [Webhook] Refund on {invoice.status} invoice {invoice.number} not recorded")
        return f"Refund on {invoice.status} invoice {invoice.number} ignored"

    invoice.record_refund(amount)
    logger.info(f"💸 [Webhook] Refund of {amount} {invoice.currency_id} recorded on {invoice.number}")
    return f"Refund recorded on {invoice.number}"


# ===============================================================================
# SUBSCRIPTIONS
# ===============================================================================


def _handle_subscription_cancelled(event: NormalizedWebhookEvent) -> str:
    if not event.customer_ref:
        raise IntegrationError("Subscription cancellation without a customer reference")

    subscription = (
        Subscription.objects.select_for_update()
        .filter(gateway_customer_id=event.customer_ref)
        .exclude(status="cancelled")
        .first()
    )
    if subscription is None:
        logger.info(f"ℹ️ [Webhook] No live subscription for {event.gateway} customer {event.customer_ref}")
        return f"No live subscription for customer {event.customer_ref}"

    SubscriptionLifecycleManager().mark_cancelled_by_gateway(subscription, reason=f"{event.gateway}_cancelled")
    return f"Subscription {subscription.id} cancelled"


# ===============================================================================
# LOOKUPS
# ===============================================================================


def _find_attempt(event: NormalizedWebhookEvent) -> PaymentAttempt | None:
    if not event.gateway_payment_id:
        return None
    return (
        PaymentAttempt.objects.select_related("invoice", "invoice__currency")
        .filter(gateway=event.gateway, gateway_payment_id=event.gateway_payment_id)
        .order_by("-attempt_number")
        .first()
    )


def _find_invoice(event: NormalizedWebhookEvent) -> Invoice | None:
    if not event.invoice_id:
        return None
    try:
        invoice_id = uuid.UUID(event.invoice_id)
    except ValueError:
        logger.warning(f"⚠️ [Webhook] Invalid invoice reference '{event.invoice_id}' in {event.event_id}")
        return None
    return Invoice.objects.select_related("currency").filter(pk=invoice_id).first()


def _amount_for(invoice: Invoice, event: NormalizedWebhookEvent) -> Decimal | None:
    """Event amount in the invoice currency, None when the event carries none"""
    if event.amount_minor is None:
        return None
    if event.currency and event.currency != invoice.currency_id:
        raise IntegrationError(
            f"Currency mismatch for {event.gateway_payment_id}: {event.currency} != {invoice.currency_id}"
        )
    return invoice.currency.from_minor_units(int(event.amount_minor))
