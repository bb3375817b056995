import logging
import time

from django.core.management.base import BaseCommand
from django.db import close_old_connections

from clinic.services.campaign_sender import process_scheduled_campaigns, resume_sending_campaigns

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Send scheduled email campaigns that are due. Run from cron, or with --loop as a worker."

    def add_arguments(self, parser):
        parser.add_argument("--loop", action="store_true", help="Keep polling instead of running once")
        parser.add_argument("--interval", type=float, default=60.0, help="Seconds between polls with --loop")
        parser.add_argument("--resume", action="store_true",
                            help="Also process campaigns left in the sending state")

    def handle(self, *args, **options):
        if options["resume"]:
            resumed = resume_sending_campaigns()
            if resumed:
                self.stdout.write(f"Resumed campaigns: {', '.join(map(str, resumed))}")

        while True:
            close_old_connections()
            due = process_scheduled_campaigns()
            if due:
                self.stdout.write(self.style.SUCCESS(f"Processed campaigns: {', '.join(map(str, due))}"))
            if not options["loop"]:
                break
            try:
                time.sleep(options["interval"])
            except KeyboardInterrupt:
                logger.info("Campaign worker stopped")
                break
