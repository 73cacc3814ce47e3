"""
Currency models for the billing engine.
Every money amount is quantized to the scale of the currency it is expressed in.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.db import models
from django.utils.translation import gettext_lazy as _

# ===============================================================================
# CURRENCY
# ===============================================================================


class Currency(models.Model):
    """Currency definitions with decimal precision"""

    code = models.CharField(max_length=3, primary_key=True)  # 'USD', 'INR'
    name = models.CharField(max_length=50, default="")
    symbol = models.CharField(max_length=10)
    decimals = models.SmallIntegerField(default=2)

    class Meta:
        db_table = "currency"
        verbose_name = _("Currency")
        verbose_name_plural = _("Currencies")

    def __str__(self) -> str:
        return f"{self.code} ({self.symbol})"

    @property
    def quantum(self) -> Decimal:
        """Smallest unit of the currency: Decimal('0.01') for 2 decimals"""
        return Decimal(1).scaleb(-self.decimals)

    def quantize(self, amount: Decimal) -> Decimal:
        """Round an amount to this currency's scale (half-up, never float)"""
        return Decimal(amount).quantize(self.quantum, rounding=ROUND_HALF_UP)

    def to_minor_units(self, amount: Decimal) -> int:
        """Convert to the integer minor unit gateways expect (cents, paise)"""
        return int((self.quantize(amount) * (Decimal(10) ** self.decimals)).to_integral_value())

    def from_minor_units(self, value: int) -> Decimal:
        return self.quantize(Decimal(value) / (Decimal(10) ** self.decimals))
