"""Contest lifecycle: scheduled transitions and administrator actions.

The scheduler is the only component that mutates contest state on its own.
Each tick activates contests whose start has passed, completes contests whose
end has passed, and retries completion announcements that failed earlier.

Exactly-once completion relies on the persisted ``Contest.completing_since``
claim: a contest is only processed by the caller whose compare-and-set on that
column succeeded. The claim is released when completion fails so the next tick
retries, and kept after success. Claims older than
``CONTEST_COMPLETION_CLAIM_TTL_SECONDS`` are treated as abandoned by a crashed
process and may be taken over.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.core.cache import cache
from django.db import transaction
from django.utils import timezone

from core.elections_exceptions import ElectionError, InvalidTransitionError
from core.models import Announcement, AuditLogEntry, Ballot, Candidate, Contest
from core.stores import (
    AnnouncementDraft,
    ContestStore,
    DatabaseNotificationSink,
    DjangoContestStore,
    NotificationSink,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

SCHEDULER_HEARTBEAT_CACHE_KEY = "contest_lifecycle_heartbeat"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    Contest.Status.upcoming: frozenset({Contest.Status.active, Contest.Status.cancelled}),
    Contest.Status.active: frozenset({Contest.Status.paused, Contest.Status.completed, Contest.Status.cancelled}),
    Contest.Status.paused: frozenset({Contest.Status.active, Contest.Status.completed, Contest.Status.cancelled}),
    Contest.Status.completed: frozenset(),
    Contest.Status.cancelled: frozenset(),
}


def validate_transition(*, current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(f"cannot move a contest from {current} to {target}")


def _format_datetime_in_timezone(*, dt: datetime.datetime | None, tz_name: str | None = None) -> str:
    if dt is None:
        return ""

    value = dt
    if timezone.is_naive(value):
        value = timezone.make_aware(value, timezone=datetime.UTC)

    name = tz_name or settings.TIME_ZONE
    try:
        value = value.astimezone(ZoneInfo(str(name)))
    except (ZoneInfoNotFoundError, ValueError):
        name = "UTC"
        value = value.astimezone(datetime.UTC)

    return f"{value.strftime('%Y-%m-%d %H:%M')} ({name})"


def _announcement_expiry(now: datetime.datetime) -> datetime.datetime:
    return now + datetime.timedelta(days=settings.CONTEST_ANNOUNCEMENT_EXPIRY_DAYS)


def completion_event_key(contest: Contest) -> str:
    # One key per expiry event: reopening with a new end yields a new key.
    end = contest.end_at.isoformat() if contest.end_at else "none"
    return f"contest:{contest.pk}:completed:{end}"


def activation_event_key(contest: Contest) -> str:
    return f"contest:{contest.pk}:activated:{contest.start_at.isoformat()}"


def completion_announcement(*, contest: Contest, completed_at: datetime.datetime) -> AnnouncementDraft:
    description = f" Description: {contest.description}" if contest.description else ""
    return AnnouncementDraft(
        title=f"Election Completed: {contest.title}",
        body=(
            f'The election "{contest.title}" has ended at '
            f"{_format_datetime_in_timezone(dt=completed_at)}.{description} "
            "The results are now available for review."
        ),
        priority=Announcement.Priority.high,
        target_audience=(Announcement.Audience.all,),
        contest_id=contest.pk,
        event_key=completion_event_key(contest),
        expires_at=_announcement_expiry(completed_at),
    )


def activation_announcement(*, contest: Contest, now: datetime.datetime) -> AnnouncementDraft:
    closing = ""
    if contest.end_at is not None:
        closing = f" The voting window is scheduled to close on {_format_datetime_in_timezone(dt=contest.end_at)}."
    return AnnouncementDraft(
        title=f"URGENT: {contest.title} is now ACTIVE",
        body=f"{contest.title} is now open. All authorized members are cleared to cast their ballots.{closing}",
        priority=Announcement.Priority.high,
        target_audience=(Announcement.Audience.has_not_voted,),
        contest_id=contest.pk,
        event_key=activation_event_key(contest),
        expires_at=_announcement_expiry(now),
    )


@dataclass
class TickReport:
    now: datetime.datetime
    activated: list[int] = field(default_factory=list)
    completed: list[int] = field(default_factory=list)
    announced: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_log_fields(self) -> dict[str, object]:
        return {
            "activated": len(self.activated),
            "completed": len(self.completed),
            "announced": len(self.announced),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class LifecycleScheduler:
    def __init__(
        self,
        *,
        contests: ContestStore | None = None,
        notifications: NotificationSink | None = None,
        claim_ttl_seconds: int | None = None,
    ) -> None:
        self.contests = contests if contests is not None else DjangoContestStore()
        self.notifications = notifications if notifications is not None else DatabaseNotificationSink()
        ttl = claim_ttl_seconds if claim_ttl_seconds is not None else settings.CONTEST_COMPLETION_CLAIM_TTL_SECONDS
        self.claim_ttl = datetime.timedelta(seconds=ttl)

    def tick(self, now: datetime.datetime | None = None) -> TickReport:
        now = now or timezone.now()
        report = TickReport(now=now)

        self._activate_due(now=now, report=report)
        self._complete_due(now=now, report=report)
        self._retry_announcements(now=now, report=report)

        if report.activated or report.completed or report.announced or report.failed:
            logger.info(
                "Lifecycle tick now=%s activated=%s completed=%s announced=%s failed=%s",
                now.isoformat(),
                report.activated,
                report.completed,
                report.announced,
                report.failed,
                extra={"event": "ballotwatch.lifecycle.tick", **report.as_log_fields()},
            )
        return report

    def complete_contest(self, contest_id: int, *, now: datetime.datetime | None = None) -> TickReport:
        """Complete one contest immediately through the same claim path as a tick."""
        now = now or timezone.now()
        report = TickReport(now=now)
        contest = Contest.objects.get(pk=contest_id)
        self._complete_one(contest=contest, now=now, report=report)
        return report

    def _activate_due(self, *, now: datetime.datetime, report: TickReport) -> None:
        try:
            due = self.contests.list_activatable_contests(now=now)
        except StoreUnavailableError:
            logger.warning("Lifecycle tick could not list contests due for activation")
            return

        for contest in due:
            try:
                activated = self.contests.activate(contest.pk, now=now)
            except Exception:
                logger.exception("Failed to activate contest contest_id=%s", contest.pk)
                report.failed.append(contest.pk)
                continue

            if not activated:
                report.skipped.append(contest.pk)
                continue

            report.activated.append(contest.pk)
            if contest.end_at is not None and contest.end_at <= now:
                # The window already closed; the completion later in this tick is announced instead.
                continue
            try:
                self.notifications.publish(activation_announcement(contest=contest, now=now))
            except Exception:
                # The activation itself is confirmed; the announcement is best effort.
                logger.exception("Failed to announce activation contest_id=%s", contest.pk)

    def _complete_due(self, *, now: datetime.datetime, report: TickReport) -> None:
        try:
            due = self.contests.list_due_contests(now=now)
        except StoreUnavailableError:
            logger.warning("Lifecycle tick could not list contests due for completion")
            return

        for contest in due:
            try:
                self._complete_one(contest=contest, now=now, report=report)
            except Exception:
                logger.exception("Failed to complete contest contest_id=%s", contest.pk)
                report.failed.append(contest.pk)

    def _claim(self, contest_id: int, *, now: datetime.datetime) -> bool:
        claimed = self.contests.claim_completion(contest_id, now=now, stale_before=now - self.claim_ttl)
        logger.debug(
            "Completion claim contest_id=%s claimed=%s",
            contest_id,
            claimed,
            extra={"event": "ballotwatch.lifecycle.claim", "contest_id": contest_id, "claimed": claimed},
        )
        return claimed

    def _release(self, contest_id: int) -> None:
        try:
            self.contests.release_completion(contest_id)
        except Exception:
            # The claim expires after the TTL, so the contest is not stuck forever.
            logger.exception("Failed to release completion claim contest_id=%s", contest_id)

    def _complete_one(self, *, contest: Contest, now: datetime.datetime, report: TickReport) -> None:
        if not self._claim(contest.pk, now=now):
            report.skipped.append(contest.pk)
            return

        try:
            completed = self.contests.complete(contest.pk, now=now)
        except Exception:
            self._release(contest.pk)
            raise

        report.completed.append(contest.pk)
        self._announce_completion(contest=completed, now=now, report=report)

    def _announce_completion(self, *, contest: Contest, now: datetime.datetime, report: TickReport) -> None:
        draft = completion_announcement(contest=contest, completed_at=contest.completed_at or now)
        try:
            self.notifications.publish(draft)
            self.contests.mark_announced(contest.pk, now=now)
        except Exception:
            # Completion stays confirmed; only the announcement is retried later.
            logger.exception("Failed to announce completion contest_id=%s; will retry", contest.pk)
            self._release(contest.pk)
            report.failed.append(contest.pk)
            return

        report.announced.append(contest.pk)

    def _retry_announcements(self, *, now: datetime.datetime, report: TickReport) -> None:
        try:
            pending = self.contests.list_unannounced_completions()
        except StoreUnavailableError:
            logger.warning("Lifecycle tick could not list unannounced completions")
            return

        handled = set(report.announced) | set(report.failed)
        for contest in pending:
            if contest.pk in handled:
                continue
            try:
                if not self._claim(contest.pk, now=now):
                    report.skipped.append(contest.pk)
                    continue
            except Exception:
                logger.exception("Failed to claim announcement retry contest_id=%s", contest.pk)
                report.failed.append(contest.pk)
                continue
            self._announce_completion(contest=contest, now=now, report=report)


def record_scheduler_heartbeat(now: datetime.datetime | None = None) -> None:
    now = now or timezone.now()
    try:
        cache.set(SCHEDULER_HEARTBEAT_CACHE_KEY, now.isoformat(), timeout=None)
    except Exception:
        logger.warning("Failed to record lifecycle scheduler heartbeat")


def scheduler_heartbeat_age_seconds(now: datetime.datetime | None = None) -> float | None:
    now = now or timezone.now()
    try:
        raw = cache.get(SCHEDULER_HEARTBEAT_CACHE_KEY)
    except Exception:
        return None
    if not raw:
        return None
    try:
        last = datetime.datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    return max(0.0, (now - last).total_seconds())


def _audit(*, contest: Contest, event_type: str, payload: dict[str, object], actor: str | None) -> None:
    if actor:
        payload["actor"] = actor
    AuditLogEntry.objects.create(contest=contest, event_type=event_type, payload=payload, is_public=True)


@transaction.atomic
def _transition(
    *,
    contest: Contest,
    target: str,
    event_type: str,
    actor: str | None,
    allowed_from: frozenset[str] | None = None,
) -> Contest:
    locked = Contest.objects.select_for_update().get(pk=contest.pk)
    if allowed_from is not None and locked.status not in allowed_from:
        raise InvalidTransitionError(f"cannot move a contest from {locked.status} to {target}")
    validate_transition(current=locked.status, target=target)

    previous = locked.status
    locked.status = target
    locked.save(update_fields=["status", "updated_at"])
    _audit(
        contest=locked,
        event_type=event_type,
        payload={"previous_status": str(previous), "status": str(target)},
        actor=actor,
    )
    return locked


def start_contest(*, contest: Contest, actor: str | None = None) -> Contest:
    return _transition(
        contest=contest,
        target=Contest.Status.active,
        event_type="contest_started",
        actor=actor,
        allowed_from=frozenset({Contest.Status.upcoming}),
    )


def pause_contest(*, contest: Contest, actor: str | None = None) -> Contest:
    return _transition(contest=contest, target=Contest.Status.paused, event_type="contest_paused", actor=actor)


def resume_contest(*, contest: Contest, actor: str | None = None) -> Contest:
    return _transition(
        contest=contest,
        target=Contest.Status.active,
        event_type="contest_resumed",
        actor=actor,
        allowed_from=frozenset({Contest.Status.paused}),
    )


def cancel_contest(*, contest: Contest, actor: str | None = None) -> Contest:
    return _transition(contest=contest, target=Contest.Status.cancelled, event_type="contest_cancelled", actor=actor)


def conclude_contest(*, contest: Contest, actor: str | None = None) -> Contest:
    """Administrator-triggered early completion.

    Goes through the scheduler's claim path so a concurrent tick cannot
    announce the same completion a second time.
    """
    current = Contest.objects.only("status").get(pk=contest.pk)
    validate_transition(current=current.status, target=Contest.Status.completed)

    try:
        report = LifecycleScheduler().complete_contest(contest.pk)
    except StoreUnavailableError as exc:
        raise ElectionError("Contest could not be completed; retry shortly.") from exc
    if contest.pk in report.skipped:
        raise ElectionError("Contest completion is already in progress.")

    if actor:
        AuditLogEntry.objects.create(
            contest_id=contest.pk,
            event_type="contest_concluded",
            payload={"actor": actor},
            is_public=True,
        )
    return Contest.objects.get(pk=contest.pk)


@transaction.atomic
def extend_contest_end(
    *,
    contest: Contest,
    new_end_at: datetime.datetime,
    actor: str | None = None,
) -> Contest:
    # Re-load under a row lock so validation compares against the persisted end.
    locked = Contest.objects.select_for_update().get(pk=contest.pk)

    if locked.is_terminal:
        raise InvalidTransitionError("only open contests can be extended")

    old_end = locked.end_at
    now = timezone.now()

    if old_end is not None and new_end_at <= old_end:
        raise ElectionError("End datetime must be later than the current end.")
    if new_end_at <= now:
        raise ElectionError("End datetime must be in the future.")
    if new_end_at <= locked.start_at:
        raise ElectionError("End datetime must be after the start.")

    locked.end_at = new_end_at
    locked.save(update_fields=["end_at", "updated_at"])

    _audit(
        contest=locked,
        event_type="contest_end_extended",
        payload={
            "previous_end_at": old_end.isoformat() if old_end else None,
            "new_end_at": new_end_at.isoformat(),
        },
        actor=actor,
    )
    return locked


def reopen_contest(
    *,
    contest: Contest,
    new_end_at: datetime.datetime,
    actor: str | None = None,
    store: ContestStore | None = None,
) -> Contest:
    """Move a completed contest back to active with a new future end.

    Clears the completion claim and announcement marks so the scheduler
    completes (and announces) it again when the new end passes.
    """
    contest_store = store if store is not None else DjangoContestStore()
    reopened = contest_store.reopen(contest.pk, new_end_at=new_end_at, actor=actor)
    logger.info(
        "Contest reopened contest_id=%s new_end_at=%s actor=%s",
        contest.pk,
        new_end_at.isoformat(),
        actor or "",
    )
    return reopened


def set_contest_end(
    *,
    contest: Contest,
    new_end_at: datetime.datetime,
    actor: str | None = None,
) -> Contest:
    current = Contest.objects.only("status").get(pk=contest.pk)
    if current.status == Contest.Status.completed:
        return reopen_contest(contest=contest, new_end_at=new_end_at, actor=actor)
    return extend_contest_end(contest=contest, new_end_at=new_end_at, actor=actor)


@transaction.atomic
def set_results_public(*, contest: Contest, public: bool, actor: str | None = None) -> Contest:
    locked = Contest.objects.select_for_update().get(pk=contest.pk)
    previous = locked.results_are_public
    locked.results_public = bool(public)
    locked.save(update_fields=["results_public", "updated_at"])
    _audit(
        contest=locked,
        event_type="contest_results_visibility_changed",
        payload={"previous_public": previous, "public": bool(public)},
        actor=actor,
    )
    return locked


@transaction.atomic
def delete_contest(*, contest: Contest, actor: str | None = None, cascade: bool = False) -> dict[str, int]:
    """Delete a contest. Contests with ballots are only removed by an explicit cascading wipe."""
    locked = Contest.objects.select_for_update().get(pk=contest.pk)
    ballot_count = Ballot.objects.for_contest(contest_id=locked.pk).count()
    if ballot_count and not cascade:
        raise ElectionError("Contest has ballots; a cascading wipe is required to delete it.")

    ballots_deleted, _ = Ballot.objects.for_contest(contest_id=locked.pk).delete()
    candidates_deleted, _ = Candidate.objects.filter(contest=locked).delete()
    contest_id = locked.pk
    title = locked.title
    locked.delete()

    logger.warning(
        "Contest deleted contest_id=%s title=%r ballots_deleted=%s candidates_deleted=%s cascade=%s actor=%s",
        contest_id,
        title,
        ballots_deleted,
        candidates_deleted,
        cascade,
        actor or "",
        extra={
            "event": "ballotwatch.contest.deleted",
            "contest_id": contest_id,
            "ballots_deleted": ballots_deleted,
            "candidates_deleted": candidates_deleted,
        },
    )
    return {"ballots_deleted": ballots_deleted, "candidates_deleted": candidates_deleted}


__all__ = [
    "ALLOWED_TRANSITIONS",
    "LifecycleScheduler",
    "TickReport",
    "activation_announcement",
    "cancel_contest",
    "completion_announcement",
    "conclude_contest",
    "delete_contest",
    "extend_contest_end",
    "pause_contest",
    "record_scheduler_heartbeat",
    "reopen_contest",
    "resume_contest",
    "scheduler_heartbeat_age_seconds",
    "set_contest_end",
    "set_results_public",
    "start_contest",
    "validate_transition",
]
