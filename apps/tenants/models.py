"""
Tenant reference model consumed by the billing engine.
"""

from __future__ import annotations

import uuid
from typing import ClassVar

from django.db import models
from django.utils.translation import gettext_lazy as _


class Tenant(models.Model):
    """A business using the platform. Billing reads, never writes, this row."""

    BUSINESS_TYPE_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("clinic", _("Clinic")),
        ("salon", _("Salon")),
        ("coworking", _("Coworking")),
        ("real_estate", _("Real Estate")),
        ("tourism", _("Tourism")),
        ("education", _("Education")),
        ("logistics", _("Logistics")),
        ("legal", _("Legal")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("active", _("Active")),
        ("suspended", _("Suspended")),
        ("closed", _("Closed")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=100, unique=True)
    business_type = models.CharField(max_length=20, choices=BUSINESS_TYPE_CHOICES)
    country = models.CharField(max_length=2, help_text=_("ISO 3166-1 alpha-2 country code"))
    email = models.EmailField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "tenants"
        verbose_name = _("Tenant")
        verbose_name_plural = _("Tenants")
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["country"], name="tenant_country_idx"),
            models.Index(fields=["business_type"], name="tenant_business_type_idx"),
        )

    def __str__(self) -> str:
        return f"{self.name} ({self.country})"
