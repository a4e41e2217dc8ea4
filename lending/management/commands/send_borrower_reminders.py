from django.core.management.base import BaseCommand
from django.utils import timezone

from lending.reminders import send_overdue_digest, sweep_due_reminders


class Command(BaseCommand):
    help = 'Send due-soon, due-today and overdue reminders plus the operator overdue digest'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='Show reminders without sending or stamping them')

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        now = timezone.now()

        events = sweep_due_reminders(now, dry_run=dry_run)
        for event in events:
            self.stdout.write(f'{event.event_type}: {event.transaction.transaction_id} '
                              f'({event.transaction.borrower_name})')

        summary = send_overdue_digest(timezone.localdate(now), dry_run=dry_run)
        if summary:
            self.stdout.write(f'Overdue digest: {summary["count"]} loan(s), '
                              f'average {summary["average_days_overdue"]} day(s) late')

        prefix = 'Dry run: would send' if dry_run else 'Sent'
        self.stdout.write(self.style.SUCCESS(f'{prefix} {len(events)} reminder(s)'))
