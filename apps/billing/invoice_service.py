"""
Invoice Generator for the billing engine.

Turns a finished subscription period into exactly one invoice:
- base plan charge in the tenant's local currency (zero inside a trial)
- one overage line per usage type that went past its included units
- country tax on the subtotal
- per-tenant sequential invoice number

Generation is idempotent per (subscription, period_start). The usage counters
billed by an invoice are closed in the same transaction, so usage can never be
invoiced twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import config as billing_config
from . import events
from .exceptions import InvoiceNumberCollision, PricingUnresolved
from .metering_service import UsageAggregator
from .models import Currency, Invoice, InvoiceLine, InvoiceSequence, Subscription, UsagePeriodCounter
from .pricing_service import EffectivePrice, PricingResolver

logger = logging.getLogger(__name__)


class InvoiceGenerator:
    """Generate, age and cancel subscription invoices"""

    def __init__(self) -> None:
        self.aggregator = UsageAggregator()

    def generate(self, subscription_id: Any, period_start: datetime, period_end: datetime) -> Invoice:
        """
        Return the invoice for ``[period_start, period_end)``, creating it if needed.

        Raises:
            PricingUnresolved: tenant configuration is missing or invalid
            InvoiceNumberCollision: the generated number is already taken
        """
        existing = Invoice.objects.filter(subscription_id=subscription_id, period_start=period_start).first()
        if existing is not None:
            logger.debug(f"🧾 [Invoice] {existing.number} already covers {period_start:%Y-%m-%d}")
            return existing

        try:
            with transaction.atomic():
                subscription = (
                    Subscription.objects.select_for_update()
                    .select_related("tenant", "plan")
                    .get(pk=subscription_id)
                )
                # Re-check under the subscription lock
                existing = Invoice.objects.filter(subscription=subscription, period_start=period_start).first()
                if existing is not None:
                    return existing
                invoice = self._build(subscription, period_start, period_end)
        except IntegrityError as e:
            winner = Invoice.objects.filter(subscription_id=subscription_id, period_start=period_start).first()
            if winner is not None:
                logger.info(f"🧾 [Invoice] Concurrent generation resolved to {winner.number}")
                return winner
            raise InvoiceNumberCollision(
                f"Invoice number collision for subscription {subscription_id}",
                {"subscription_id": str(subscription_id), "period_start": period_start.isoformat()},
            ) from e

        logger.info(
            f"✅ [Invoice] Generated {invoice.number} for tenant {invoice.tenant_id}: "
            f"{invoice.total_amount} {invoice.currency_id} ({invoice.status})"
        )
        return invoice

    def _build(self, subscription: Subscription, period_start: datetime, period_end: datetime) -> Invoice:
        tenant = subscription.tenant
        price = PricingResolver.resolve_for_plan(tenant, subscription.plan)
        currency = Currency.objects.get(code=price.currency)
        now = timezone.now()

        is_trial = subscription.is_trial_period(period_end)
        base_amount = Decimal("0") if is_trial else currency.quantize(price.base_price)

        counters = list(
            UsagePeriodCounter.objects.select_for_update()
            .filter(
                tenant=tenant,
                is_billed=False,
                period_start__gte=period_start,
                period_start__lt=period_end,
            )
            .order_by("usage_type")
        )

        lines: list[InvoiceLine] = [
            InvoiceLine(
                kind="subscription",
                description=f"{subscription.plan.name} ({period_start:%Y-%m-%d} - {period_end:%Y-%m-%d})"
                + (" - trial" if is_trial else ""),
                quantity=1,
                unit_price=base_amount,
                amount=base_amount,
            )
        ]
        usage_total = Decimal("0")
        for counter in counters:
            if counter.currency_id != currency.code:
                raise PricingUnresolved(
                    f"Usage counter {counter.id} is in {counter.currency_id}, invoice currency is {currency.code}",
                    {"tenant_id": str(tenant.id), "usage_type": counter.usage_type},
                )
            overage_units = max(0, counter.used_units - counter.included_units)
            if overage_units == 0:
                continue
            amount = currency.quantize(overage_units * counter.overage_rate)
            usage_total += amount
            lines.append(
                InvoiceLine(
                    kind="usage",
                    description=f"{counter.get_usage_type_display()} overage ({overage_units} units)",
                    usage_type=counter.usage_type,
                    quantity=overage_units,
                    unit_price=counter.overage_rate,
                    amount=amount,
                )
            )

        subtotal = base_amount + usage_total
        tax_amount = currency.quantize(subtotal * price.tax_rate)
        total = subtotal + tax_amount

        sequence, _created = InvoiceSequence.objects.get_or_create(tenant=tenant)
        sequence_number = sequence.next_value()
        number = format_invoice_number(period_start, sequence_number)
        if Invoice.objects.filter(tenant=tenant, number=number).exists():
            logger.critical(f"🔥 [Invoice] Number {number} already issued for tenant {tenant.id}")
            raise InvoiceNumberCollision(
                f"Invoice number {number} already exists", {"tenant_id": str(tenant.id), "number": number}
            )

        terms_days = price.profile.payment_terms_days or billing_config.get_default_payment_terms_days()
        is_settled = total == 0

        invoice = Invoice.objects.create(
            tenant=tenant,
            subscription=subscription,
            number=number,
            sequence_number=sequence_number,
            status="paid" if is_settled else "pending",
            period_start=period_start,
            period_end=period_end,
            country=price.country,
            currency=currency,
            subtotal=subtotal,
            tax_name=price.tax_name,
            tax_rate=price.tax_rate,
            tax_amount=tax_amount,
            total_amount=total,
            exchange_rate=price.exchange_rate,
            exchange_rate_updated_at=price.exchange_rate_updated_at,
            pricing_snapshot=_snapshot(price, is_trial),
            issued_at=now,
            due_date=now + timedelta(days=terms_days),
            paid_at=now if is_settled else None,
        )
        for line in lines:
            line.invoice = invoice
        InvoiceLine.objects.bulk_create(lines)

        for counter in counters:
            self.aggregator.close_period(tenant.id, counter.usage_type, counter.period_start, invoice=invoice)

        events.publish(events.invoice_generated, invoice=invoice)
        if is_settled:
            events.publish(events.invoice_paid, invoice=invoice, amount=Decimal("0"))
        return invoice

    # ===============================================================================
    # AGING & CANCELLATION
    # ===============================================================================

    def mark_overdue_invoices(self, now: datetime | None = None) -> int:
        """Move open invoices past their due date to overdue"""
        now = now or timezone.now()
        count = 0
        for invoice in Invoice.objects.filter(status__in=("pending", "partial"), due_date__lt=now):
            invoice.mark_overdue()
            count += 1
        if count:
            logger.info(f"⚠️ [Invoice] Marked {count} invoices overdue")
        return count

    def cancel_invoice(self, invoice_id: Any) -> Invoice:
        """Cancel an unpaid invoice; its usage stays billed so it is never re-invoiced"""
        with transaction.atomic():
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
            invoice.cancel()
        logger.info(f"🧾 [Invoice] Cancelled {invoice.number}")
        return invoice


def format_invoice_number(period_start: datetime, sequence_number: int) -> str:
    return f"{billing_config.get_invoice_prefix()}-{period_start:%Y%m}-{sequence_number:06d}"


def _snapshot(price: EffectivePrice, is_trial: bool) -> dict[str, Any]:
    snapshot = price.snapshot()
    snapshot["trial"] = is_trial
    return snapshot
