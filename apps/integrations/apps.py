from django.apps import AppConfig
from django.utils.translation import gettext_lazy as _


class IntegrationsConfig(AppConfig):
    """
    🔌 Payment gateway webhooks

    Handles:
    - Webhook deduplication per gateway event
    - Stripe and Razorpay signature verification
    - Replay of failed and interrupted webhook processing
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.integrations"
    verbose_name = _("🔌 Integrations")
