import datetime
from io import StringIO
from unittest.mock import patch

from django.core.cache import cache
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from core.elections_lifecycle import LifecycleScheduler, TickReport, scheduler_heartbeat_age_seconds
from core.models import Announcement, Contest
from core.tests.utils_test_data import make_contest


class ContestLifecycleCommandTests(TestCase):
    def setUp(self) -> None:
        cache.clear()

    def tearDown(self) -> None:
        cache.clear()

    def test_single_tick_completes_due_contest(self) -> None:
        contest = make_contest()
        out = StringIO()

        call_command("contest_lifecycle", stdout=out)

        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.completed)
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)
        self.assertIn("completed=1", out.getvalue())
        self.assertIsNotNone(scheduler_heartbeat_age_seconds())

    def test_quiet_when_nothing_is_due(self) -> None:
        out = StringIO()

        call_command("contest_lifecycle", stdout=out)

        self.assertEqual(out.getvalue(), "")

    def test_dry_run_does_not_mutate(self) -> None:
        contest = make_contest(title="Secretary")
        out = StringIO()

        call_command("contest_lifecycle", "--dry-run", stdout=out)

        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.active)
        self.assertFalse(Announcement.objects.exists())
        self.assertIn(f"[dry-run] Would complete contest {contest.pk} (Secretary).", out.getvalue())

    def test_dry_run_with_nothing_due(self) -> None:
        out = StringIO()

        call_command("contest_lifecycle", "--dry-run", stdout=out)

        self.assertIn("No contests are due.", out.getvalue())

    def test_loop_runs_sequential_ticks_until_max(self) -> None:
        now = timezone.now()
        upcoming = make_contest(
            status=Contest.Status.upcoming,
            start_at=now - datetime.timedelta(minutes=1),
            end_at=now + datetime.timedelta(days=1),
        )
        expired = make_contest()
        out = StringIO()

        with (
            patch("core.management.commands.contest_lifecycle.signal.signal") as mocked_signal,
            patch.object(LifecycleScheduler, "tick", autospec=True) as mocked_tick,
        ):
            mocked_tick.side_effect = lambda _self, tick_now: TickReport(now=tick_now)
            call_command("contest_lifecycle", "--loop", "--interval", "0.01", "--max-ticks", "3", stdout=out)

        self.assertEqual(mocked_tick.call_count, 3)
        self.assertEqual(mocked_signal.call_count, 2)
        upcoming.refresh_from_db()
        expired.refresh_from_db()
        self.assertEqual(upcoming.status, Contest.Status.upcoming)
        self.assertEqual(expired.status, Contest.Status.active)

    def test_loop_performs_real_transitions(self) -> None:
        contest = make_contest()

        with patch("core.management.commands.contest_lifecycle.signal.signal"):
            call_command("contest_lifecycle", "--loop", "--interval", "0.01", "--max-ticks", "2", stdout=StringIO())

        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.completed)
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)

    def test_loop_survives_a_failing_tick(self) -> None:
        calls: list[datetime.datetime] = []

        def _tick(_self, tick_now):
            calls.append(tick_now)
            if len(calls) == 1:
                raise DatabaseError("relation does not exist")
            return TickReport(now=tick_now)

        with (
            patch("core.management.commands.contest_lifecycle.signal.signal"),
            patch.object(LifecycleScheduler, "tick", autospec=True, side_effect=_tick),
            self.assertLogs("core.management.commands.contest_lifecycle", level="ERROR") as logs,
        ):
            call_command("contest_lifecycle", "--loop", "--interval", "0.01", "--max-ticks", "3", stdout=StringIO())

        self.assertEqual(len(calls), 3)
        self.assertIn("Contest lifecycle tick failed", "\n".join(logs.output))
        self.assertIsNotNone(scheduler_heartbeat_age_seconds())

    def test_failed_tick_does_not_record_heartbeat(self) -> None:
        with (
            patch("core.management.commands.contest_lifecycle.signal.signal"),
            patch.object(LifecycleScheduler, "tick", autospec=True, side_effect=DatabaseError("boom")),
            self.assertLogs("core.management.commands.contest_lifecycle", level="ERROR"),
        ):
            call_command("contest_lifecycle", "--loop", "--interval", "0.01", "--max-ticks", "1", stdout=StringIO())

        self.assertIsNone(scheduler_heartbeat_age_seconds())

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(CommandError):
            call_command("contest_lifecycle", "--interval", "0")
