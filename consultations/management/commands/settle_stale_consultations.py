"""
Django management command to settle consultations whose call webhook never arrived.

Usage:
    python manage.py settle_stale_consultations
"""

from django.core.management.base import BaseCommand
from consultations.cleanup.stale_orders import settle_stale_orders


class Command(BaseCommand):
    help = 'Settle CONNECTED consultations that ran past their paid duration'

    def handle(self, *args, **options):
        """Execute the stale-order sweep."""
        import sys
        import traceback
        from django.utils import timezone

        try:
            self.stdout.write(f'[{timezone.now()}] Starting stale consultation sweep...')
            result = settle_stale_orders()
            self.stdout.write(
                self.style.SUCCESS(
                    f'[{timezone.now()}] Sweep completed: '
                    f'{result["orders_checked"]} orders checked, '
                    f'{result["orders_completed"]} charged, '
                    f'{result["orders_zero_charge"]} closed without charge, '
                    f'{result["orders_skipped"]} already settled, '
                    f'{result["orders_failed"]} failed'
                )
            )
        except Exception as e:
            error_msg = f'[{timezone.now()}] ERROR in settle_stale_consultations: {str(e)}'
            self.stderr.write(error_msg)
            self.stderr.write(traceback.format_exc())
            sys.exit(1)
