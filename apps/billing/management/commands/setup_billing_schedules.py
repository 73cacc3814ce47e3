from typing import Any

from django.core.management.base import BaseCommand

from apps.billing.tasks import register_scheduled_tasks


class Command(BaseCommand):
    """⏰ Register the billing tick, payment retries and webhook replay with Django-Q"""

    help = "Register (or update) the recurring billing schedules"

    def handle(self, *args: Any, **options: Any) -> None:
        self.stdout.write("⏰ Registering billing schedules...")
        register_scheduled_tasks()
        self.stdout.write(self.style.SUCCESS("✅ Billing schedules registered"))
