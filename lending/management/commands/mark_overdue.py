from django.core.management.base import BaseCommand
from django.utils import timezone

from lending.circulation import sweep_overdue


class Command(BaseCommand):
    help = 'Mark borrowed items past their expected return date as overdue'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='List loans that would be marked without changing them')

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        today = timezone.localdate()
        loans = sweep_overdue(today, dry_run=dry_run)

        for loan in loans:
            self.stdout.write(
                f'{"Would mark" if dry_run else "Marked"} {loan.transaction_id} overdue: '
                f'{loan.borrower_name}, {loan.item_name} x{loan.quantity}, due {loan.expected_return_date}'
            )

        if dry_run:
            self.stdout.write(self.style.WARNING(f'Dry run: {len(loans)} loan(s) would be marked overdue'))
        else:
            self.stdout.write(self.style.SUCCESS(f'{len(loans)} loan(s) marked overdue'))
