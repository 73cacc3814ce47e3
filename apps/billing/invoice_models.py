"""
Invoice models for the billing engine.

An invoice covers one subscription billing period. Its amounts are frozen at
generation time together with the pricing snapshot they were derived from;
afterwards only payment and refund transitions may touch it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from django.db import models, transaction
from django.db.models import F
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .config import MONEY_DECIMAL_PLACES, MONEY_MAX_DIGITS, RATE_DECIMAL_PLACES
from .currency_models import Currency
from .exceptions import InvoiceStateError

# ===============================================================================
# INVOICE SEQUENCING
# ===============================================================================


class InvoiceSequence(models.Model):
    """Per-tenant invoice number sequence"""

    tenant = models.OneToOneField("tenants.Tenant", on_delete=models.PROTECT, related_name="invoice_sequence")
    last_value = models.BigIntegerField(default=0)

    class Meta:
        db_table = "invoice_sequences"
        verbose_name = _("Invoice Sequence")
        verbose_name_plural = _("Invoice Sequences")

    def __str__(self) -> str:
        return f"{self.tenant_id}: {self.last_value}"

    def next_value(self) -> int:
        """Increment atomically and return the new value"""
        with transaction.atomic():
            # Atomic increment using F() expression to prevent race conditions
            InvoiceSequence.objects.filter(pk=self.pk).update(last_value=F("last_value") + 1)
            self.refresh_from_db(fields=["last_value"])
            return self.last_value


# ===============================================================================
# INVOICE
# ===============================================================================


def _money_field(**kwargs: Any) -> models.DecimalField:
    return models.DecimalField(
        max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES, default=Decimal("0"), **kwargs
    )


class Invoice(models.Model):
    """Subscription invoice for one billing period"""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("Pending")),
        ("paid", _("Paid")),
        ("partial", _("Partially Paid")),
        ("overdue", _("Overdue")),
        ("cancelled", _("Cancelled")),
        ("refunded", _("Refunded")),
    )

    # Statuses that still expect money
    OPEN_STATUSES: ClassVar[tuple[str, ...]] = ("pending", "partial", "overdue")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey("tenants.Tenant", on_delete=models.PROTECT, related_name="invoices")
    subscription = models.ForeignKey(
        "billing.Subscription", on_delete=models.PROTECT, related_name="invoices"
    )
    number = models.CharField(max_length=64)
    sequence_number = models.BigIntegerField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending", db_index=True)

    period_start = models.DateTimeField()
    period_end = models.DateTimeField()

    country = models.CharField(max_length=2)
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name="+")

    subtotal = _money_field()
    tax_name = models.CharField(max_length=30, blank=True)
    tax_rate = models.DecimalField(max_digits=6, decimal_places=4, default=Decimal("0"))
    tax_amount = _money_field()
    total_amount = _money_field()
    amount_paid = _money_field()
    amount_refunded = _money_field()
    amount_due = _money_field()

    # Pricing snapshot used to compute the amounts
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=8, default=Decimal("1"))
    exchange_rate_updated_at = models.DateTimeField(null=True, blank=True)
    pricing_snapshot = models.JSONField(default=dict, blank=True)

    issued_at = models.DateTimeField(default=timezone.now)
    due_date = models.DateTimeField()
    paid_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    _original_status: str | None = None

    class Meta:
        db_table = "invoices"
        verbose_name = _("Invoice")
        verbose_name_plural = _("Invoices")
        ordering = ("-period_start",)
        indexes = (
            models.Index(fields=["tenant", "-period_start"], name="invoice_tenant_period_idx"),
            models.Index(fields=["status", "due_date"], name="invoice_status_due_idx"),
        )
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.UniqueConstraint(fields=["subscription", "period_start"], name="uniq_invoice_period"),
            models.UniqueConstraint(fields=["tenant", "number"], name="uniq_invoice_number_per_tenant"),
        ]

    def __str__(self) -> str:
        return f"{self.number} ({self.status}) {self.total_amount} {self.currency_id}"

    @classmethod
    def from_db(cls, db: str | None, field_names: Any, values: Any) -> Invoice:
        instance = super().from_db(db, field_names, values)
        instance._original_status = instance.status
        return instance

    def save(self, *args: Any, **kwargs: Any) -> None:
        if self._original_status == "paid" and self.status not in ("paid", "refunded"):
            raise InvoiceStateError(
                f"Invoice {self.number} is paid and can only move to refunded",
                {"invoice_id": str(self.id), "status": self.status},
            )
        # amount_due is derived, never set independently
        self.amount_due = self.total_amount - self.amount_paid
        super().save(*args, **kwargs)
        self._original_status = self.status

    # ===============================================================================
    # STATUS TRANSITIONS
    # ===============================================================================

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES

    def apply_payment(self, amount: Decimal, paid_at: datetime | None = None) -> None:
        """Register a confirmed payment; full settlement marks the invoice paid"""
        if not self.is_open:
            raise InvoiceStateError(
                f"Cannot apply payment to {self.status} invoice {self.number}",
                {"invoice_id": str(self.id), "status": self.status},
            )
        if amount <= 0:
            raise InvoiceStateError("Payment amount must be positive", {"amount": str(amount)})

        self.amount_paid = self.currency.quantize(self.amount_paid + amount)
        if self.amount_paid >= self.total_amount:
            self.status = "paid"
            self.paid_at = paid_at or timezone.now()
        else:
            self.status = "partial"
        self.save()

    def mark_overdue(self) -> None:
        if self.status not in ("pending", "partial"):
            raise InvoiceStateError(f"Cannot mark {self.status} invoice overdue", {"invoice_id": str(self.id)})
        self.status = "overdue"
        self.save(update_fields=["status", "amount_due", "updated_at"])

    def cancel(self) -> None:
        if self.status not in ("pending", "overdue") or self.amount_paid > 0:
            raise InvoiceStateError(
                f"Only unpaid invoices can be cancelled ({self.number} is {self.status})",
                {"invoice_id": str(self.id)},
            )
        self.status = "cancelled"
        self.cancelled_at = timezone.now()
        self.save(update_fields=["status", "cancelled_at", "amount_due", "updated_at"])

    def record_refund(self, amount: Decimal) -> None:
        """Register a completed refund; a full refund moves the invoice to refunded"""
        if self.status not in ("paid", "partial", "refunded"):
            raise InvoiceStateError(f"Cannot refund {self.status} invoice {self.number}", {"invoice_id": str(self.id)})

        self.amount_refunded = self.currency.quantize(min(self.amount_paid, self.amount_refunded + amount))
        if self.amount_refunded >= self.amount_paid:
            self.status = "refunded"
            self.refunded_at = timezone.now()
        self.save()


class InvoiceLine(models.Model):
    """Line detail behind an invoice subtotal"""

    KIND_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("subscription", _("Subscription")),
        ("usage", _("Usage Overage")),
    )

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="lines")
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    description = models.CharField(max_length=255)
    usage_type = models.CharField(max_length=40, blank=True)
    quantity = models.BigIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=MONEY_MAX_DIGITS, decimal_places=RATE_DECIMAL_PLACES)
    amount = _money_field()

    class Meta:
        db_table = "invoice_lines"
        verbose_name = _("Invoice Line")
        verbose_name_plural = _("Invoice Lines")

    def __str__(self) -> str:
        return f"{self.description}: {self.amount}"
