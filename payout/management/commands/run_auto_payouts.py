from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from payout.services.errors import PayoutConfigurationError
from payout.services.scheduler import AutoSettlementScheduler


class Command(BaseCommand):
    help = "Settle due vendors into payout batches. Runs one sweep with --once, otherwise keeps sweeping on the configured interval."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
        parser.add_argument("--interval-hours", type=float, default=None, help="Override PAYOUT_SCHEDULER_INTERVAL_HOURS")

    def handle(self, *args, **options):
        interval = options.get("interval_hours")
        if interval is not None and interval <= 0:
            raise CommandError("--interval-hours must be positive")

        try:
            scheduler = AutoSettlementScheduler(interval_hours=interval)
        except PayoutConfigurationError as exc:
            raise CommandError(str(exc))

        if options["once"]:
            report = scheduler.run_sweep()
            for outcome in report.outcomes:
                line = f"{outcome.vendor_code}: created={len(outcome.created)} skipped={len(outcome.skipped)} errors={len(outcome.errors)}"
                self.stdout.write(line)
            self.stdout.write(
                f"Vendors={report.vendors_processed} Batches={len(report.batches_created)} Failed={len(report.failed_vendors)}"
            )
            return

        self.stdout.write(f"Auto settlement scheduler running every {scheduler.interval_hours}h (Ctrl+C to stop)")
        try:
            scheduler.run_forever()
        except KeyboardInterrupt:
            scheduler.stop()
            self.stdout.write("Stopped")
