import datetime
from unittest.mock import Mock, patch

from django.test import TestCase, override_settings
from django.utils import timezone

from core.elections_exceptions import InvalidTransitionError
from core.elections_lifecycle import LifecycleScheduler, completion_event_key
from core.models import Announcement, AuditLogEntry, Contest
from core.stores import DatabaseNotificationSink, DjangoContestStore, NotificationFailedError, StoreUnavailableError
from core.tests.utils_test_data import make_contest


class LifecycleTickCompletionTests(TestCase):
    def test_expired_contest_is_completed_once_with_one_high_announcement(self) -> None:
        contest = make_contest(title="Treasurer")
        now = timezone.now()
        scheduler = LifecycleScheduler()

        report = scheduler.tick(now)

        self.assertEqual(report.completed, [contest.pk])
        self.assertEqual(report.announced, [contest.pk])
        self.assertTrue(report.ok)

        for offset in (5, 10, 15):
            later = scheduler.tick(now + datetime.timedelta(seconds=offset))
            self.assertEqual(later.completed, [])
            self.assertEqual(later.announced, [])

        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.completed)
        self.assertEqual(contest.completed_at, now)
        self.assertIsNotNone(contest.completion_announced_at)

        announcements = list(Announcement.objects.filter(contest=contest))
        self.assertEqual(len(announcements), 1)
        self.assertEqual(announcements[0].priority, Announcement.Priority.high)
        self.assertEqual(announcements[0].title, "Election Completed: Treasurer")
        self.assertIn("Treasurer", announcements[0].content)
        self.assertEqual(announcements[0].target_audience, ["all"])
        self.assertEqual(announcements[0].event_key, completion_event_key(contest))
        self.assertEqual(announcements[0].expires_at, now + datetime.timedelta(days=2))

    def test_completion_is_audit_logged(self) -> None:
        contest = make_contest()

        LifecycleScheduler().tick(timezone.now())

        entry = AuditLogEntry.objects.get(contest=contest, event_type="contest_completed")
        self.assertTrue(entry.is_public)
        self.assertEqual(entry.payload["previous_status"], "active")

    def test_overlapping_tick_during_slow_completion_does_not_duplicate(self) -> None:
        contest = make_contest()
        now = timezone.now()
        store = DjangoContestStore()
        scheduler = LifecycleScheduler(contests=store)
        original_complete = store.complete
        inner_reports = []

        def slow_complete(contest_id: int, *, now: datetime.datetime) -> Contest:
            # A second tick fires while the first completion is still running.
            inner_reports.append(scheduler.tick(now + datetime.timedelta(seconds=5)))
            return original_complete(contest_id, now=now)

        with patch.object(store, "complete", side_effect=slow_complete):
            outer = scheduler.tick(now)

        self.assertEqual(outer.completed, [contest.pk])
        self.assertEqual(len(inner_reports), 1)
        self.assertEqual(inner_reports[0].completed, [])
        self.assertEqual(inner_reports[0].skipped, [contest.pk])
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)

    def test_paused_contest_past_its_end_is_completed(self) -> None:
        contest = make_contest(status=Contest.Status.paused)

        report = LifecycleScheduler().tick(timezone.now())

        self.assertEqual(report.completed, [contest.pk])

    def test_contest_without_end_is_never_completed(self) -> None:
        contest = make_contest(end_at=None)

        report = LifecycleScheduler().tick(timezone.now() + datetime.timedelta(days=365))

        self.assertEqual(report.completed, [])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.active)

    def test_terminal_contests_are_ignored(self) -> None:
        make_contest(status=Contest.Status.cancelled)

        report = LifecycleScheduler().tick(timezone.now())

        self.assertEqual(report.completed, [])
        self.assertFalse(Announcement.objects.exists())

    def test_future_end_is_not_completed(self) -> None:
        make_contest(end_at=timezone.now() + datetime.timedelta(hours=1))

        report = LifecycleScheduler().tick(timezone.now())

        self.assertEqual(report.completed, [])


class LifecycleTickFailureTests(TestCase):
    def test_failed_completion_releases_claim_and_next_tick_retries(self) -> None:
        contest = make_contest()
        now = timezone.now()
        store = DjangoContestStore()
        scheduler = LifecycleScheduler(contests=store)

        with patch.object(store, "complete", side_effect=StoreUnavailableError("db timeout")):
            with self.assertLogs("core.elections_lifecycle", level="ERROR"):
                first = scheduler.tick(now)

        self.assertEqual(first.failed, [contest.pk])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.active)
        self.assertIsNone(contest.completing_since)
        self.assertFalse(Announcement.objects.exists())

        second = scheduler.tick(now + datetime.timedelta(seconds=5))

        self.assertEqual(second.completed, [contest.pk])
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)

    def test_publish_failure_keeps_completion_and_retries_only_the_announcement(self) -> None:
        contest = make_contest()
        now = timezone.now()
        store = DjangoContestStore()
        failing_sink = Mock()
        failing_sink.publish.side_effect = NotificationFailedError("sink down")

        with self.assertLogs("core.elections_lifecycle", level="ERROR"):
            first = LifecycleScheduler(contests=store, notifications=failing_sink).tick(now)

        self.assertEqual(first.completed, [contest.pk])
        self.assertEqual(first.failed, [contest.pk])
        self.assertEqual(first.announced, [])
        failing_sink.publish.assert_called_once()

        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.completed)
        self.assertIsNone(contest.completion_announced_at)
        self.assertIsNone(contest.completing_since)

        second = LifecycleScheduler(contests=store, notifications=DatabaseNotificationSink()).tick(
            now + datetime.timedelta(seconds=5)
        )

        self.assertEqual(second.completed, [])
        self.assertEqual(second.announced, [contest.pk])
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)
        self.assertEqual(
            AuditLogEntry.objects.filter(contest=contest, event_type="contest_completed").count(),
            1,
        )

    def test_one_failing_contest_does_not_block_the_others(self) -> None:
        broken = make_contest(title="Broken")
        healthy = make_contest(title="Healthy")
        store = DjangoContestStore()
        original_complete = store.complete

        def flaky(contest_id: int, *, now: datetime.datetime) -> Contest:
            if contest_id == broken.pk:
                raise StoreUnavailableError("statement timeout")
            return original_complete(contest_id, now=now)

        with patch.object(store, "complete", side_effect=flaky):
            with self.assertLogs("core.elections_lifecycle", level="ERROR"):
                report = LifecycleScheduler(contests=store).tick(timezone.now())

        self.assertEqual(report.failed, [broken.pk])
        self.assertEqual(report.completed, [healthy.pk])
        self.assertEqual(Announcement.objects.filter(contest=healthy).count(), 1)
        self.assertFalse(Announcement.objects.filter(contest=broken).exists())

    def test_listing_failure_is_logged_and_tick_returns(self) -> None:
        store = Mock(spec=DjangoContestStore)
        store.list_activatable_contests.side_effect = StoreUnavailableError("down")
        store.list_due_contests.side_effect = StoreUnavailableError("down")
        store.list_unannounced_completions.side_effect = StoreUnavailableError("down")

        with self.assertLogs("core.elections_lifecycle", level="WARNING") as captured:
            report = LifecycleScheduler(contests=store).tick(timezone.now())

        self.assertEqual(report.completed, [])
        self.assertEqual(len(captured.records), 3)


@override_settings(CONTEST_COMPLETION_CLAIM_TTL_SECONDS=300)
class LifecycleTickClaimTests(TestCase):
    def test_fresh_claim_held_elsewhere_is_skipped(self) -> None:
        now = timezone.now()
        contest = make_contest(completing_since=now - datetime.timedelta(seconds=10))

        report = LifecycleScheduler().tick(now)

        self.assertEqual(report.skipped, [contest.pk])
        self.assertEqual(report.completed, [])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.active)

    def test_stale_claim_from_crashed_process_is_taken_over(self) -> None:
        now = timezone.now()
        contest = make_contest(completing_since=now - datetime.timedelta(hours=1))

        report = LifecycleScheduler().tick(now)

        self.assertEqual(report.completed, [contest.pk])
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)

    def test_crash_after_completion_before_announcement_is_recovered_once(self) -> None:
        now = timezone.now()
        contest = make_contest(
            status=Contest.Status.completed,
            completed_at=now - datetime.timedelta(hours=1),
            completing_since=now - datetime.timedelta(hours=1),
        )

        first = LifecycleScheduler().tick(now)
        second = LifecycleScheduler().tick(now + datetime.timedelta(seconds=5))

        self.assertEqual(first.announced, [contest.pk])
        self.assertEqual(second.announced, [])
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)

    def test_republishing_same_event_key_does_not_duplicate(self) -> None:
        now = timezone.now()
        contest = make_contest()
        LifecycleScheduler().tick(now)

        # Simulate a crash between publish and mark_announced.
        Contest.objects.filter(pk=contest.pk).update(completion_announced_at=None, completing_since=None)
        report = LifecycleScheduler().tick(now + datetime.timedelta(seconds=5))

        self.assertEqual(report.announced, [contest.pk])
        self.assertEqual(Announcement.objects.filter(contest=contest).count(), 1)


class LifecycleTickActivationTests(TestCase):
    def test_upcoming_contest_is_activated_and_announced_once(self) -> None:
        now = timezone.now()
        contest = make_contest(
            status=Contest.Status.upcoming,
            start_at=now - datetime.timedelta(minutes=1),
            end_at=now + datetime.timedelta(days=1),
        )

        first = LifecycleScheduler().tick(now)
        second = LifecycleScheduler().tick(now + datetime.timedelta(seconds=5))

        self.assertEqual(first.activated, [contest.pk])
        self.assertEqual(second.activated, [])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.active)

        announcement = Announcement.objects.get(contest=contest)
        self.assertEqual(announcement.priority, Announcement.Priority.high)
        self.assertEqual(announcement.target_audience, ["hasNotVoted"])
        self.assertIn("is now ACTIVE", announcement.title)
        self.assertTrue(
            AuditLogEntry.objects.filter(contest=contest, event_type="contest_activated").exists()
        )

    def test_upcoming_contest_not_yet_started_stays_upcoming(self) -> None:
        now = timezone.now()
        contest = make_contest(
            status=Contest.Status.upcoming,
            start_at=now + datetime.timedelta(hours=1),
            end_at=now + datetime.timedelta(days=1),
        )

        report = LifecycleScheduler().tick(now)

        self.assertEqual(report.activated, [])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.upcoming)

    def test_upcoming_contest_whose_window_already_passed_is_activated_then_completed(self) -> None:
        contest = make_contest(status=Contest.Status.upcoming)

        report = LifecycleScheduler().tick(timezone.now())

        self.assertEqual(report.activated, [contest.pk])
        self.assertEqual(report.completed, [contest.pk])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.completed)
        self.assertEqual(
            list(
                AuditLogEntry.objects.filter(contest=contest)
                .order_by("id")
                .values_list("event_type", flat=True)
            ),
            ["contest_activated", "contest_completed"],
        )
        # Only the completion is announced.
        self.assertEqual(
            list(Announcement.objects.filter(contest=contest).values_list("title", flat=True)),
            ["Election Completed: Board Chair"],
        )

    def test_activation_announcement_failure_does_not_undo_activation(self) -> None:
        now = timezone.now()
        contest = make_contest(
            status=Contest.Status.upcoming,
            start_at=now - datetime.timedelta(minutes=1),
            end_at=now + datetime.timedelta(days=1),
        )
        sink = Mock()
        sink.publish.side_effect = NotificationFailedError("sink down")

        with self.assertLogs("core.elections_lifecycle", level="ERROR"):
            report = LifecycleScheduler(notifications=sink).tick(now)

        self.assertEqual(report.activated, [contest.pk])
        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.active)


class ContestStoreCompleteTests(TestCase):
    def test_complete_is_idempotent(self) -> None:
        contest = make_contest()
        store = DjangoContestStore()
        now = timezone.now()

        first = store.complete(contest.pk, now=now)
        second = store.complete(contest.pk, now=now + datetime.timedelta(minutes=1))

        self.assertEqual(first.status, Contest.Status.completed)
        self.assertEqual(second.status, Contest.Status.completed)
        self.assertEqual(second.completed_at, now)
        self.assertEqual(
            AuditLogEntry.objects.filter(contest=contest, event_type="contest_completed").count(),
            1,
        )

    def test_claim_is_exclusive(self) -> None:
        contest = make_contest()
        store = DjangoContestStore()
        now = timezone.now()
        stale_before = now - datetime.timedelta(minutes=5)

        self.assertTrue(store.claim_completion(contest.pk, now=now, stale_before=stale_before))
        self.assertFalse(store.claim_completion(contest.pk, now=now, stale_before=stale_before))

        store.release_completion(contest.pk)
        self.assertTrue(store.claim_completion(contest.pk, now=now, stale_before=stale_before))

    def test_complete_rejects_upcoming_contest(self) -> None:
        contest = make_contest(status=Contest.Status.upcoming)

        with self.assertRaises(InvalidTransitionError):
            DjangoContestStore().complete(contest.pk, now=timezone.now())

        contest.refresh_from_db()
        self.assertEqual(contest.status, Contest.Status.upcoming)

    def test_complete_rejects_cancelled_contest(self) -> None:
        contest = make_contest(status=Contest.Status.cancelled)

        with self.assertRaises(InvalidTransitionError):
            DjangoContestStore().complete(contest.pk, now=timezone.now())
