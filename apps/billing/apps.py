"""
Django app configuration for Billing app
"""

import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.billing"
    verbose_name = "💳 Billing"

    def ready(self) -> None:
        """Register payment gateways with the factory when Django starts."""
        from apps.billing import gateways  # noqa: F401, PLC0415

        logger.debug("✅ [Billing] Gateways registered")
