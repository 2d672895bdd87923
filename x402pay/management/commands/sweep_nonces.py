import time

from django.core.management.base import BaseCommand, CommandError
from loguru import logger

from x402pay import services


class Command(BaseCommand):
    help = 'Finish confirmed settlements and delete expired, never-settled nonces on a fixed interval.'

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true', help='Run a single sweep and exit.')
        parser.add_argument(
            '--interval',
            type=int,
            default=None,
            help='Seconds between sweeps (defaults to X402_CLEANUP_INTERVAL_SECONDS).',
        )

    def handle(self, *args, **options):
        controller = services.get_controller()
        interval = options['interval'] or controller.config.cleanup_interval_seconds

        while True:
            reconciled = controller.reconcile_settlements()
            if reconciled.ok:
                if reconciled.value:
                    self.stdout.write(f'reconciled {reconciled.value} confirmed settlements')
            elif options['once']:
                raise CommandError(reconciled.detail)
            else:
                logger.error('reconcile error: {}', reconciled.detail)

            result = controller.sweep_expired()
            if result.ok:
                self.stdout.write(f'cleaned {result.value} expired nonces')
            elif options['once']:
                raise CommandError(result.detail)
            else:
                logger.error('cleanup error: {}', result.detail)

            if options['once']:
                return
            time.sleep(interval)
