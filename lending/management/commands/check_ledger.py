from django.core.management.base import BaseCommand, CommandError

from lending.ledger import check_ledger


class Command(BaseCommand):
    help = 'Verify available + reserved == total for every stock unit'

    def handle(self, *args, **options):
        audits = check_ledger()
        broken = [audit for audit in audits if not audit.balanced]

        for audit in broken:
            self.stderr.write(self.style.ERROR(
                f'{audit.stock_unit.display_id} {audit.stock_unit.name}: total={audit.total_quantity} '
                f'available={audit.available_quantity} reserved={audit.reserved_quantity}'
            ))

        if broken:
            raise CommandError(f'{len(broken)} of {len(audits)} stock unit(s) are out of balance')
        self.stdout.write(self.style.SUCCESS(f'All {len(audits)} stock unit(s) balanced'))
