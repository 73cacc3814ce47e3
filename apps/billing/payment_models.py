"""
Payment models for the billing engine.

``PaymentAttempt`` is the append-only history of gateway charges. An attempt is
written once with its outcome; a ``pending`` attempt (gateway still processing)
is finalized exactly once by a corroborating webhook and then frozen.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, ClassVar

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .config import MONEY_DECIMAL_PLACES, MONEY_MAX_DIGITS
from .currency_models import Currency
from .plan_models import GATEWAY_CHOICES

# ===============================================================================
# PAYMENT ATTEMPTS
# ===============================================================================


class PaymentAttempt(models.Model):
    """One charge submitted to one gateway for one invoice"""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("Pending Confirmation")),
        ("succeeded", _("Succeeded")),
        ("failed", _("Failed")),
    )

    FAILURE_KIND_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("transient", _("Gateway / Network")),
        ("declined", _("Declined")),
    )

    TERMINAL_STATUSES: ClassVar[tuple[str, ...]] = ("succeeded", "failed")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey("billing.Invoice", on_delete=models.PROTECT, related_name="payment_attempts")
    tenant = models.ForeignKey("tenants.Tenant", on_delete=models.PROTECT, related_name="payment_attempts")

    attempt_number = models.PositiveIntegerField()
    charge_round = models.PositiveIntegerField(help_text=_("Dunning round; a fallback shares its round"))
    gateway = models.CharField(max_length=20, choices=GATEWAY_CHOICES)
    is_fallback = models.BooleanField(default=False)

    amount = models.DecimalField(max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES)
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name="+")

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, db_index=True)
    failure_kind = models.CharField(max_length=20, choices=FAILURE_KIND_CHOICES, blank=True)
    error_code = models.CharField(max_length=100, blank=True)
    error_message = models.TextField(blank=True)
    gateway_payment_id = models.CharField(max_length=255, blank=True, db_index=True)

    next_retry_at = models.DateTimeField(null=True, blank=True)
    requires_reconciliation = models.BooleanField(
        default=False, help_text=_("Money collected after cancellation, needs a refund decision")
    )

    created_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)

    _original_status: str | None = None

    class Meta:
        db_table = "payment_attempts"
        verbose_name = _("Payment Attempt")
        verbose_name_plural = _("Payment Attempts")
        ordering = ("invoice", "attempt_number")
        indexes = (models.Index(fields=["status", "next_retry_at"], name="payment_attempt_retry_idx"),)
        constraints: ClassVar[list[models.BaseConstraint]] = [
            models.UniqueConstraint(fields=["invoice", "attempt_number"], name="uniq_payment_attempt_number"),
        ]

    def __str__(self) -> str:
        return f"Attempt #{self.attempt_number} {self.gateway} {self.status} ({self.invoice_id})"

    @classmethod
    def from_db(cls, db: str | None, field_names: Any, values: Any) -> PaymentAttempt:
        instance = super().from_db(db, field_names, values)
        instance._original_status = instance.status
        return instance

    def save(self, *args: Any, **kwargs: Any) -> None:
        if self._original_status in self.TERMINAL_STATUSES:
            raise ValueError(f"Payment attempt {self.id} is {self._original_status} and immutable")
        super().save(*args, **kwargs)
        self._original_status = self.status

    def delete(self, *args: Any, **kwargs: Any) -> tuple[int, dict[str, int]]:
        raise ValueError("Payment attempts are append-only and cannot be deleted")

    def confirm(self, completed_at: datetime | None = None) -> None:
        """Finalize a pending attempt as succeeded"""
        self.status = "succeeded"
        self.completed_at = completed_at or timezone.now()
        self.save()

    def fail(self, error_code: str, error_message: str = "", failure_kind: str = "declined") -> None:
        """Finalize a pending attempt as failed"""
        self.status = "failed"
        self.failure_kind = failure_kind
        self.error_code = error_code[:100]
        self.error_message = error_message
        self.completed_at = timezone.now()
        self.save()


# ===============================================================================
# CHARGE LEASE
# ===============================================================================


class InvoiceChargeLease(models.Model):
    """Exclusive, time-bounded right to submit charges for one invoice"""

    invoice = models.OneToOneField("billing.Invoice", on_delete=models.CASCADE, related_name="charge_lease")
    holder = models.CharField(max_length=64)
    acquired_at = models.DateTimeField()
    expires_at = models.DateTimeField()

    class Meta:
        db_table = "invoice_charge_leases"

    def __str__(self) -> str:
        return f"{self.invoice_id} held by {self.holder} until {self.expires_at:%H:%M:%S}"
