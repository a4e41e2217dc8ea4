from django.core.management.base import BaseCommand
from django.utils import timezone

from lending.reminders import sweep_archive_expirations


class Command(BaseCommand):
    help = 'Permanently delete archived records whose retention period has ended'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='List records that would be deleted')

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        purged = sweep_archive_expirations(timezone.now(), dry_run=dry_run)

        for entry in purged:
            self.stdout.write(
                f'{"Would delete" if dry_run else "Deleted"} {entry.entity_type} #{entry.entity.pk} '
                f'"{entry.label}" (archived {entry.archived_at:%Y-%m-%d}, due {entry.auto_delete_at:%Y-%m-%d})'
            )

        if not purged:
            self.stdout.write('No archived records are due for deletion')
        elif dry_run:
            self.stdout.write(self.style.WARNING(f'Dry run: {len(purged)} record(s) would be deleted'))
        else:
            self.stdout.write(self.style.SUCCESS(f'{len(purged)} archived record(s) deleted'))
