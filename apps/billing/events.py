"""
Domain events published by the billing engine.

Notification and CRM modules subscribe to these signals; the engine itself
never contacts customers. Events are dispatched only after the surrounding
transaction commits, so receivers always observe persisted state.
"""

from __future__ import annotations

import logging
from typing import Any

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

# ===============================================================================
# SIGNALS
# ===============================================================================

# invoice=Invoice
invoice_generated = Signal()
# invoice=Invoice, amount=Decimal
invoice_paid = Signal()
# invoice=Invoice, attempt=PaymentAttempt, will_retry=bool
payment_failed = Signal()
# attempt=PaymentAttempt, reason=str
payment_refund_required = Signal()
# subscription=Subscription, reason=str
subscription_suspended = Signal()
# subscription=Subscription, reason=str
subscription_cancelled = Signal()

EVENT_NAMES: dict[Signal, str] = {
    invoice_generated: "invoice.generated",
    invoice_paid: "invoice.paid",
    payment_failed: "payment.failed",
    payment_refund_required: "payment.refund_required",
    subscription_suspended: "subscription.suspended",
    subscription_cancelled: "subscription.cancelled",
}


def publish(signal: Signal, **payload: Any) -> None:
    """Send ``signal`` once the current transaction commits"""
    name = EVENT_NAMES.get(signal, "unknown")

    def _send() -> None:
        logger.info(f"📣 [Billing Events] {name}")
        for receiver, response in signal.send_robust(sender=name, **payload):
            if isinstance(response, Exception):
                logger.error(f"🔥 [Billing Events] Receiver {receiver!r} failed for {name}: {response}")

    transaction.on_commit(_send)
