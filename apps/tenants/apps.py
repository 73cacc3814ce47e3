from django.apps import AppConfig
from django.utils.translation import gettext_lazy as _


class TenantsConfig(AppConfig):
    """
    🏢 Tenant reference data

    Billing needs a tenant's country and business type; everything else
    about tenants lives in the platform modules.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.tenants"
    verbose_name = _("🏢 Tenants")
