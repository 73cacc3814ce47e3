from django.contrib import admin
from django.utils.translation import gettext_lazy as _

from .models import WebhookEvent

# ===============================================================================
# WEBHOOK EVENT ADMINISTRATION
# ===============================================================================


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """🔄 Webhook event administration with deduplication tracking"""

    list_display = ["received_at", "gateway", "event_type", "status", "retry_count", "next_retry_at"]
    list_filter = ["gateway", "status", "event_type"]
    search_fields = ["event_id", "event_type", "error_message"]
    readonly_fields = [
        "id",
        "gateway",
        "event_id",
        "event_type",
        "received_at",
        "processed_at",
        "payload",
        "signature_hash",
        "retry_count",
    ]
    ordering = ["-received_at"]
    actions = ["replay_now"]

    @admin.action(description=_("🔄 Replay selected failed webhooks now"))
    def replay_now(self, request, queryset):  # type: ignore[no-untyped-def]
        from .webhooks.base import get_webhook_processor  # noqa: PLC0415

        replayed = 0
        for webhook_event in queryset.filter(status__in=["failed", "pending"]):
            processor = get_webhook_processor(webhook_event.gateway)
            if processor is not None and processor.apply(webhook_event).is_ok():
                replayed += 1
        self.message_user(request, f"Replayed {replayed} webhook(s)")
