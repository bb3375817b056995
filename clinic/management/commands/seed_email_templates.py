from django.core.management.base import BaseCommand

from clinic.services.email_templates import seed_defaults


class Command(BaseCommand):
    help = "Install the default system email templates (idempotent)."

    def handle(self, *args, **options):
        created = seed_defaults()
        self.stdout.write(self.style.SUCCESS(f"Installed {created} email templates"))
