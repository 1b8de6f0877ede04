"""
Django management command to register the billing django-q schedules
"""

from typing import Any

from django.core.management.base import BaseCommand

from apps.billing.tasks import setup_billing_scheduled_tasks


class Command(BaseCommand):
    """⏰ Register billing scheduled tasks with django-q"""

    help = "Register retry, dunning, plan change, cancellation and reconciliation schedules"

    def handle(self, *args: Any, **options: Any) -> None:
        self.stdout.write(self.style.SUCCESS("🚀 Setting up billing schedules..."))
        results = setup_billing_scheduled_tasks()
        for name, status in results.items():
            style = self.style.SUCCESS if status == "created" else self.style.WARNING
            self.stdout.write(style(f"  {name}: {status}"))
