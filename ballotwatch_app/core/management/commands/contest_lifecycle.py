import logging
import signal
import threading
from typing import override

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db import close_old_connections
from django.utils import timezone

from core.elections_lifecycle import LifecycleScheduler, TickReport, record_scheduler_heartbeat
from core.models import Contest

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Advance contests by wall-clock time: activate contests whose start has passed, "
        "complete contests whose end has passed, and publish their announcements."
    )

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--loop",
            action="store_true",
            help="Keep running, one tick every --interval seconds, until interrupted.",
        )
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Seconds between ticks in --loop mode (default: CONTEST_LIFECYCLE_TICK_SECONDS).",
        )
        parser.add_argument(
            "--max-ticks",
            type=int,
            default=None,
            help="Stop after this many ticks in --loop mode.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show which contests are due without mutating data or publishing announcements.",
        )

    @override
    def handle(self, *args, **options) -> None:
        loop: bool = bool(options.get("loop"))
        dry_run: bool = bool(options.get("dry_run"))
        interval = options.get("interval")
        interval = float(settings.CONTEST_LIFECYCLE_TICK_SECONDS if interval is None else interval)
        max_ticks: int | None = options.get("max_ticks")
        self.verbosity = int(options.get("verbosity", 1))

        if interval <= 0:
            raise CommandError("--interval must be positive")

        if dry_run:
            self._report_due()
            return

        scheduler = LifecycleScheduler()
        if not loop:
            self._write_report(self._tick(scheduler))
            return

        stop = threading.Event()
        self._install_signal_handlers(stop)
        logger.info("Contest lifecycle loop started interval=%s", interval)

        ticks = 0
        while not stop.is_set():
            # Ticks run sequentially; a slow tick delays the next one instead of overlapping it.
            try:
                self._write_report(self._tick(scheduler))
            except Exception:
                # No heartbeat for this tick; the next one starts from a fresh connection.
                logger.exception("Contest lifecycle tick failed; continuing")
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            stop.wait(interval)

        logger.info("Contest lifecycle loop stopped ticks=%s", ticks)

    def _tick(self, scheduler: LifecycleScheduler) -> TickReport:
        close_old_connections()
        now = timezone.now()
        report = scheduler.tick(now)
        record_scheduler_heartbeat(now)
        return report

    def _install_signal_handlers(self, stop: threading.Event) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _request_stop(signum, _frame) -> None:
            logger.info("Contest lifecycle loop received signal=%s; stopping", signum)
            stop.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)

    def _write_report(self, report: TickReport) -> None:
        if not (report.activated or report.completed or report.announced or report.failed) and self.verbosity < 2:
            return
        self.stdout.write(
            f"activated={len(report.activated)} completed={len(report.completed)} "
            f"announced={len(report.announced)} failed={len(report.failed)}"
        )
        if report.failed:
            self.stderr.write(f"Failed contests: {', '.join(str(cid) for cid in report.failed)}")

    def _report_due(self) -> None:
        now = timezone.now()
        activatable = list(Contest.objects.due_for_activation(now=now).order_by("start_at", "id"))
        due = list(Contest.objects.due_for_completion(now=now).order_by("end_at", "id"))
        unannounced = list(
            Contest.objects.filter(
                status=Contest.Status.completed,
                completed_at__isnull=False,
                completion_announced_at__isnull=True,
            ).order_by("completed_at", "id")
        )

        if not (activatable or due or unannounced):
            self.stdout.write("No contests are due.")
            return

        for contest in activatable:
            self.stdout.write(f"[dry-run] Would activate contest {contest.pk} ({contest.title}).")
        for contest in due:
            self.stdout.write(f"[dry-run] Would complete contest {contest.pk} ({contest.title}).")
        for contest in unannounced:
            self.stdout.write(f"[dry-run] Would announce completion of contest {contest.pk} ({contest.title}).")
