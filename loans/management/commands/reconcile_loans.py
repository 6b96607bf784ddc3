"""
Mark past-due installments as Overdue and refresh loan status.

Usage:
    python manage.py reconcile_loans                 # single pass
    python manage.py reconcile_loans --loop          # repeat every LOANS_SWEEP_INTERVAL_SECONDS
    python manage.py reconcile_loans --every 600     # repeat every 600 seconds
"""
import time

from django.core.management.base import BaseCommand, CommandError

from loans.conf import sweep_interval_seconds
from loans.services import sweep_overdue


class Command(BaseCommand):
    help = "Reconcile overdue installments across all loans"

    def add_arguments(self, parser):
        parser.add_argument(
            "--loop",
            action="store_true",
            help="Keep running, one sweep per LOANS_SWEEP_INTERVAL_SECONDS",
        )
        parser.add_argument(
            "--every",
            type=int,
            default=None,
            help="Keep running, one sweep every N seconds",
        )

    def handle(self, *args, **options):
        interval = options["every"]
        if interval is not None and interval <= 0:
            raise CommandError("--every must be a positive number of seconds.")
        if interval is None and options["loop"]:
            interval = sweep_interval_seconds()
        if interval is None:
            self.run_once()
            return

        self.stdout.write(f"Reconciling every {interval}s, Ctrl+C to stop")
        try:
            while True:
                self.run_once()
                time.sleep(interval)
        except KeyboardInterrupt:
            self.stdout.write("Stopped.")

    def run_once(self):
        report = sweep_overdue()
        if report is None:
            self.stdout.write(self.style.WARNING("Another sweep is running, skipped."))
            return
        style = self.style.ERROR if report.failures else self.style.SUCCESS
        self.stdout.write(
            style(
                f"{report.loans_checked} loans checked, "
                f"{report.installments_marked} installments marked overdue, "
                f"{len(report.failures)} failures"
            )
        )
