from django.core.management.base import BaseCommand
from django.utils.dateparse import parse_date

from clinic.services.billing import mark_overdue


class Command(BaseCommand):
    help = "Mark SENT and PARTIAL invoices past their due date as OVERDUE."

    def add_arguments(self, parser):
        parser.add_argument("--date", help="Reference date (YYYY-MM-DD), defaults to today")

    def handle(self, *args, **options):
        today = parse_date(options["date"]) if options.get("date") else None
        count = mark_overdue(today)
        self.stdout.write(self.style.SUCCESS(f"Marked {count} invoices overdue"))
