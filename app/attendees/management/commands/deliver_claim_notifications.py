from django.core.management.base import BaseCommand

from attendees.services.notifications import ClaimEventEmitter


class Command(BaseCommand):
    help = "Redeliver ClaimRecorded notifications that have not reached the indexer yet"

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=None)

    def handle(self, *args, **options):
        delivered = ClaimEventEmitter().deliver_pending(limit=options["limit"])
        self.stdout.write(self.style.SUCCESS(f"Delivered {delivered} claim notifications"))
