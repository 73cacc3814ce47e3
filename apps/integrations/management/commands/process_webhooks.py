from datetime import timedelta
from typing import Any

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.integrations.models import WebhookEvent
from apps.integrations.webhooks.base import process_pending_webhooks, replay_failed_webhooks

RETENTION_DAYS = 90


class Command(BaseCommand):
    """
    🔄 Process webhook queue and replay failed webhooks

    Usage:
    python manage.py process_webhooks --pending --retry --gateway stripe --limit 50

    Options:
    --pending: Process webhooks left pending by an interrupted ingestion
    --retry: Replay failed webhooks whose retry time has come
    --gateway: Filter by gateway (stripe, razorpay)
    --limit: Limit number of pending webhooks to process (default: 100)
    --cleanup: Delete processed/skipped webhooks older than the retention window
    --stats: Show webhook processing statistics
    """

    help = "🔄 Process webhook queue and replay failed webhooks"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument("--pending", action="store_true", help="Process pending webhooks")
        parser.add_argument("--retry", action="store_true", help="Replay failed webhooks")
        parser.add_argument("--gateway", type=str, help="Filter by gateway (stripe, razorpay)")
        parser.add_argument("--limit", type=int, default=100, help="Limit pending webhooks to process (default: 100)")
        parser.add_argument(
            "--cleanup", action="store_true", help=f"Delete processed webhooks older than {RETENTION_DAYS} days"
        )
        parser.add_argument("--stats", action="store_true", help="Show webhook processing statistics")

    def handle(self, *args: Any, **options: Any) -> None:
        """🎯 Main command handler"""
        self.stdout.write(self.style.SUCCESS("🔄 Starting webhook processing..."))

        gateway = options.get("gateway")
        limit = options.get("limit", 100)

        if options["stats"]:
            self.show_stats()

        if options["pending"]:
            self.process_pending(gateway, limit)

        if options["retry"]:
            self.retry_failed(gateway)

        if options["cleanup"]:
            self.cleanup_old_webhooks()

        if not any([options["pending"], options["retry"], options["cleanup"], options["stats"]]):
            # Default: process pending and replay failed
            self.process_pending(gateway, limit)
            self.retry_failed(gateway)

        self.stdout.write(self.style.SUCCESS("✅ Webhook processing completed!"))

    def process_pending(self, gateway: str | None = None, limit: int = 100) -> None:
        self.stdout.write(f"📋 Processing pending webhooks (gateway: {gateway or 'all'}, limit: {limit})")
        stats = process_pending_webhooks(gateway=gateway, limit=limit)

        self.stdout.write(f"  ✅ Processed: {stats['processed']}")
        self.stdout.write(f"  ❌ Failed: {stats['failed']}")
        self.stdout.write(f"  ⏭️ Skipped: {stats['skipped']}")
        if stats["failed"] > 0:
            failed = stats["failed"]
            self.stdout.write(self.style.WARNING(f"⚠️ {failed} webhooks failed - they will be retried later"))

    def retry_failed(self, gateway: str | None = None) -> None:
        self.stdout.write(f"🔄 Replaying failed webhooks (gateway: {gateway or 'all'})")
        stats = replay_failed_webhooks(gateway=gateway)

        self.stdout.write(f"  ✅ Retried successfully: {stats['retried']}")
        self.stdout.write(f"  ❌ Failed again: {stats['failed']}")
        exhausted = WebhookEvent.objects.filter(status="failed", next_retry_at__isnull=True).count()
        if exhausted:
            self.stdout.write(self.style.WARNING(f"  🛑 Awaiting manual review (retries exhausted): {exhausted}"))

    def cleanup_old_webhooks(self) -> None:
        """🗑️ Clean up old processed webhooks; failed ones are kept for analysis"""
        cutoff_date = timezone.now() - timedelta(days=RETENTION_DAYS)
        deleted, _ = WebhookEvent.objects.filter(
            status__in=["processed", "skipped"], processed_at__lt=cutoff_date
        ).delete()
        if deleted:
            self.stdout.write(f"  🗑️ Deleted {deleted} old webhook records")
        else:
            self.stdout.write("  ℹ️ No old webhooks to clean up")

    def show_stats(self) -> None:
        """📊 Show webhook statistics"""
        self.stdout.write("📊 Webhook Processing Statistics")
        self.stdout.write("=" * 50)

        for gateway, _label in WebhookEvent.GATEWAY_CHOICES:
            events = WebhookEvent.objects.filter(gateway=gateway)
            total = events.count()
            if not total:
                continue
            counts = {status: events.filter(status=status).count() for status, _ in WebhookEvent.STATUS_CHOICES}
            self.stdout.write(
                f"  {gateway}: {total} total | ⏳ {counts['pending']} | ✅ {counts['processed']} "
                f"| ❌ {counts['failed']} | ⏭️ {counts['skipped']}"
            )

        due = WebhookEvent.objects.filter(status="failed", next_retry_at__lte=timezone.now()).count()
        if due:
            self.stdout.write(self.style.WARNING(f"\n⚠️ {due} failed webhooks ready for retry"))
