"""Billing background tasks.

This module contains Django-Q2 tasks for usage recording, the billing tick,
invoice charging, payment retries and the overdue sweep.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django_q.tasks import async_task

from apps.common.types import ValidationError

from . import config as billing_config
from .exceptions import BillingError, ConcurrencyConflict, QuotaExceeded

logger = logging.getLogger(__name__)


# ===============================================================================
# METERING
# ===============================================================================


def record_usage_event(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Record a usage event queued by ``emit``.

    Redelivery is harmless: the payload carries the dedup key assigned at emit time.
    """
    from .metering_service import UsageAggregator, UsageEventData  # noqa: PLC0415

    occurred_at: datetime | None = None
    if payload.get("occurred_at"):
        occurred_at = parse_datetime(payload["occurred_at"])

    try:
        ack = UsageAggregator().record(
            UsageEventData(
                tenant_id=payload["tenant_id"],
                usage_type=payload["usage_type"],
                quantity=int(payload["quantity"]),
                occurred_at=occurred_at,
                dedup_key=payload.get("dedup_key"),
                resource_ref=payload.get("resource_ref", ""),
            )
        )
    except QuotaExceeded as e:
        logger.warning(f"⚠️ [Metering] Queued event rejected for tenant {payload.get('tenant_id')}: {e}")
        return {"success": False, "error": e.error_code, "context": e.context}
    except (BillingError, ValidationError) as e:
        logger.error(f"❌ [Metering] Could not record queued event {payload.get('dedup_key')}: {e}")
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "event_id": ack.event_id,
        "duplicate": ack.duplicate,
        "used_units": ack.used_units,
    }


# ===============================================================================
# BILLING TICK
# ===============================================================================


def run_billing_tick() -> dict[str, Any]:
    """Scheduled period rollover and time-based lifecycle transitions"""
    from .subscription_service import SubscriptionLifecycleManager  # noqa: PLC0415

    report = SubscriptionLifecycleManager().tick(timezone.now())
    return {"success": not report["errors"], **report}


def mark_overdue_invoices_task() -> dict[str, Any]:
    from .invoice_service import InvoiceGenerator  # noqa: PLC0415

    count = InvoiceGenerator().mark_overdue_invoices(timezone.now())
    return {"success": True, "marked_overdue": count}


# ===============================================================================
# PAYMENTS
# ===============================================================================


def charge_invoice(invoice_id: str) -> dict[str, Any]:
    """
    Run one charge round for an invoice.

    Args:
        invoice_id: Invoice UUID to charge

    Returns:
        Dictionary with the charge outcome
    """
    from .payment_service import PaymentOrchestrator  # noqa: PLC0415

    logger.info(f"💳 [Payment] Charging invoice {invoice_id}")
    try:
        result = PaymentOrchestrator().charge(invoice_id)
    except ConcurrencyConflict:
        return {"success": True, "invoice_id": invoice_id, "status": "in_progress"}
    except BillingError as e:
        logger.error(f"❌ [Payment] Charge of invoice {invoice_id} aborted: {e}")
        return {"success": False, "invoice_id": invoice_id, "error": e.to_dict()}

    return {
        "success": result.status in ("succeeded", "pending", "skipped"),
        "invoice_id": invoice_id,
        "status": result.status,
        "charge_round": result.charge_round,
        "next_retry_at": result.next_retry_at.isoformat() if result.next_retry_at else None,
    }


def retry_due_payments_task() -> dict[str, Any]:
    from .payment_service import PaymentOrchestrator  # noqa: PLC0415

    results = PaymentOrchestrator().retry_due_payments(timezone.now())
    return {
        "success": True,
        "retried": len(results),
        "succeeded": sum(1 for r in results if r.status == "succeeded"),
    }


# ===============================================================================
# WEBHOOKS
# ===============================================================================


def replay_failed_webhooks_task() -> dict[str, Any]:
    from apps.integrations.webhooks.base import process_pending_webhooks, replay_failed_webhooks  # noqa: PLC0415

    replayed = replay_failed_webhooks()
    stale = process_pending_webhooks()
    return {"success": True, "replayed": replayed, "pending_processed": stale}


# ===============================================================================
# ASYNC WRAPPER FUNCTIONS
# ===============================================================================


def charge_invoice_async(invoice_id: str) -> str:
    """Queue invoice charge task."""
    return async_task("apps.billing.tasks.charge_invoice", invoice_id, timeout=billing_config.TASK_TIMEOUT_DEFAULT)


# ===============================================================================
# SCHEDULES
# ===============================================================================


def register_scheduled_tasks() -> None:
    """
    Register all billing schedules with Django-Q.

    Called from the ``setup_billing_schedules`` management command.
    """
    from django_q.models import Schedule  # noqa: PLC0415

    schedules = [
        {
            "name": "Billing Tick",
            "func": "apps.billing.tasks.run_billing_tick",
            "schedule_type": Schedule.MINUTES,
            "minutes": billing_config.get_tick_interval_minutes(),
        },
        {
            "name": "Retry Due Payments",
            "func": "apps.billing.tasks.retry_due_payments_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": 15,
        },
        {
            "name": "Mark Overdue Invoices",
            "func": "apps.billing.tasks.mark_overdue_invoices_task",
            "schedule_type": Schedule.HOURLY,
        },
        {
            "name": "Replay Failed Webhooks",
            "func": "apps.billing.tasks.replay_failed_webhooks_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": 5,
        },
    ]

    for config in schedules:
        Schedule.objects.update_or_create(
            name=config["name"],
            defaults={
                "func": config["func"],
                "schedule_type": config["schedule_type"],
                "minutes": config.get("minutes"),
            },
        )
        logger.info(f"✅ [Billing] Registered scheduled task: {config['name']}")
