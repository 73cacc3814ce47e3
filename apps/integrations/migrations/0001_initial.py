import uuid

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "gateway",
                    models.CharField(
                        choices=[("stripe", "💳 Stripe"), ("razorpay", "💳 Razorpay")],
                        help_text="Gateway that sent the webhook",
                        max_length=20,
                    ),
                ),
                ("event_id", models.CharField(help_text="Unique event ID from the gateway", max_length=255)),
                (
                    "event_type",
                    models.CharField(
                        help_text="Gateway event type (e.g., 'payment_intent.succeeded', 'payment.captured')",
                        max_length=100,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "⏳ Pending"),
                            ("processed", "✅ Processed"),
                            ("failed", "❌ Failed"),
                            ("skipped", "⏭️ Skipped"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "received_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now, help_text="When webhook was received by our system"
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(blank=True, help_text="When webhook processing completed", null=True),
                ),
                ("payload", models.JSONField(help_text="Complete webhook payload from the gateway")),
                (
                    "signature_hash",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="SHA-256 hash of webhook signature for verification tracking",
                        max_length=64,
                    ),
                ),
                ("error_message", models.TextField(blank=True, help_text="Error details if processing failed")),
                (
                    "retry_count",
                    models.PositiveIntegerField(default=0, help_text="Number of failed processing attempts"),
                ),
                (
                    "next_retry_at",
                    models.DateTimeField(
                        blank=True, help_text="When to retry processing (for failed webhooks)", null=True
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "🔄 Webhook Event",
                "verbose_name_plural": "🔄 Webhook Events",
                "db_table": "webhook_events",
                "ordering": ("-received_at",),
                "indexes": [
                    models.Index(fields=["status", "received_at"], name="webhook_pending_idx"),
                    models.Index(fields=["status", "next_retry_at"], name="webhook_retry_idx"),
                    models.Index(fields=["gateway", "event_type", "received_at"], name="webhook_gateway_type_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("gateway", "event_id"), name="uniq_webhook_gateway_event"),
                ],
            },
        ),
    ]
