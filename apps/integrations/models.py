import hashlib
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, ClassVar

from django.db import models
from django.db.models.query import QuerySet
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

# Backoff between processing attempts of a failed webhook: 5m, 15m, 1h, 2h, 6h
WEBHOOK_RETRY_DELAYS = (300, 900, 3600, 7200, 21600)

# ===============================================================================
# WEBHOOK DEDUPLICATION SYSTEM
# ===============================================================================


class WebhookEvent(models.Model):
    """
    🔄 Payment gateway webhook deduplication and tracking

    One row per (gateway, event_id). The row is inserted as ``pending`` before
    any effect is applied, so a crash leaves it behind for the replay job and a
    redelivered event is recognised as a duplicate.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("⏳ Pending")),
        ("processed", _("✅ Processed")),
        ("failed", _("❌ Failed")),
        ("skipped", _("⏭️ Skipped")),  # Irrelevant event type
    )

    GATEWAY_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("stripe", _("💳 Stripe")),
        ("razorpay", _("💳 Razorpay")),
    )

    # Core identification
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    gateway = models.CharField(max_length=20, choices=GATEWAY_CHOICES, help_text=_("Gateway that sent the webhook"))
    event_id = models.CharField(max_length=255, help_text=_("Unique event ID from the gateway"))
    event_type = models.CharField(
        max_length=100, help_text=_("Gateway event type (e.g., 'payment_intent.succeeded', 'payment.captured')")
    )

    # Processing status
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending", db_index=True)

    # Timing
    received_at = models.DateTimeField(default=timezone.now, help_text=_("When webhook was received by our system"))
    processed_at = models.DateTimeField(null=True, blank=True, help_text=_("When webhook processing completed"))

    # Data storage
    payload = models.JSONField(help_text=_("Complete webhook payload from the gateway"))
    signature_hash = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text=_("SHA-256 hash of webhook signature for verification tracking"),
    )

    # Error handling
    error_message = models.TextField(blank=True, help_text=_("Error details if processing failed"))
    retry_count = models.PositiveIntegerField(default=0, help_text=_("Number of failed processing attempts"))
    next_retry_at = models.DateTimeField(
        null=True, blank=True, help_text=_("When to retry processing (for failed webhooks)")
    )

    # Audit trail
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "webhook_events"
        verbose_name = _("🔄 Webhook Event")
        verbose_name_plural = _("🔄 Webhook Events")
        constraints: ClassVar[list[models.BaseConstraint]] = [
            # Prevent duplicate processing
            models.UniqueConstraint(fields=["gateway", "event_id"], name="uniq_webhook_gateway_event"),
        ]
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["status", "received_at"], name="webhook_pending_idx"),
            models.Index(fields=["status", "next_retry_at"], name="webhook_retry_idx"),
            models.Index(fields=["gateway", "event_type", "received_at"], name="webhook_gateway_type_idx"),
        )
        ordering: ClassVar[tuple[str, ...]] = ("-received_at",)

    def __str__(self) -> str:
        return f"🔄 {self.get_gateway_display()} | {self.event_type} | {self.status}"

    @staticmethod
    def hash_signature(signature: str | None) -> str:
        """Only a hash of the signature is stored. Empty/None -> empty string."""
        if not signature:
            return ""
        return hashlib.sha256(signature.encode()).hexdigest()

    def mark_processed(self, save: bool = True) -> None:
        """✅ Mark webhook as successfully processed"""
        self.status = "processed"
        self.processed_at = timezone.now()
        self.next_retry_at = None
        if save:
            self.save(update_fields=["status", "processed_at", "next_retry_at", "updated_at"])

    def mark_failed(self, error_message: str, save: bool = True) -> None:
        """❌ Mark webhook as failed; schedules a retry until the backoff runs out"""
        self.status = "failed"
        self.error_message = error_message
        self.retry_count += 1
        self.processed_at = timezone.now()

        if self.retry_count <= len(WEBHOOK_RETRY_DELAYS):
            base_delay = WEBHOOK_RETRY_DELAYS[self.retry_count - 1]
            # Jitter (80% - 120%) spreads retries of a burst of failures
            jitter_factor = secrets.SystemRandom().uniform(0.8, 1.2)
            self.next_retry_at = timezone.now() + timedelta(seconds=int(base_delay * jitter_factor))
        else:
            # Out of automatic retries, stays failed for manual review
            self.next_retry_at = None

        if save:
            self.save(
                update_fields=["status", "error_message", "retry_count", "processed_at", "next_retry_at", "updated_at"]
            )

    def mark_skipped(self, reason: str = "Irrelevant event type", save: bool = True) -> None:
        """⏭️ Mark webhook as skipped (no billing effect)"""
        self.status = "skipped"
        self.error_message = reason
        self.processed_at = timezone.now()
        if save:
            self.save(update_fields=["status", "error_message", "processed_at", "updated_at"])

    @classmethod
    def get_pending_webhooks(
        cls, received_before: datetime | None = None, gateway: str | None = None, limit: int = 100
    ) -> QuerySet["WebhookEvent"]:
        """📋 Pending webhooks left behind by an interrupted ingestion"""
        queryset = cls.objects.filter(status="pending").order_by("received_at")
        if received_before is not None:
            queryset = queryset.filter(received_at__lt=received_before)
        if gateway:
            queryset = queryset.filter(gateway=gateway)
        return queryset[:limit]

    @classmethod
    def get_failed_webhooks_for_retry(
        cls, now: datetime | None = None, gateway: str | None = None
    ) -> QuerySet["WebhookEvent"]:
        """🔄 Failed webhooks ready for retry"""
        now = now or timezone.now()
        queryset = cls.objects.filter(status="failed", next_retry_at__isnull=False, next_retry_at__lte=now).order_by(
            "next_retry_at"
        )
        if gateway:
            queryset = queryset.filter(gateway=gateway)
        return queryset
