"""Django ORM implementations of the store contracts."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable, Iterable
from functools import wraps
from typing import ParamSpec, TypeVar

import post_office.mail
from django.conf import settings
from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import Q
from django.utils import timezone

from core.elections_exceptions import ElectionError, InvalidTransitionError
from core.models import Announcement, AuditLogEntry, Ballot, Candidate, Contest, Member
from core.stores.exceptions import NotificationFailedError, StoreUnavailableError
from core.stores.interfaces import AnnouncementDraft, BallotRecord, CandidateRecord, MemberRecord

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def _transient_db_errors(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Re-raise connection-level database failures as StoreUnavailableError."""

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        @wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return fn(*args, **kwargs)
            except (OperationalError, InterfaceError) as exc:
                logger.warning("Store operation failed operation=%s error=%s", operation, exc)
                raise StoreUnavailableError(f"{operation} failed: {exc}") from exc

        return wrapper

    return decorator


class DjangoContestStore:
    @_transient_db_errors("contest.list_open")
    def list_open_contests(self) -> list[Contest]:
        return list(Contest.objects.open().order_by("end_at", "id"))

    @_transient_db_errors("contest.list_due")
    def list_due_contests(self, *, now: datetime.datetime) -> list[Contest]:
        return list(Contest.objects.due_for_completion(now=now).order_by("end_at", "id"))

    @_transient_db_errors("contest.list_activatable")
    def list_activatable_contests(self, *, now: datetime.datetime) -> list[Contest]:
        return list(Contest.objects.due_for_activation(now=now).order_by("start_at", "id"))

    @_transient_db_errors("contest.list_unannounced")
    def list_unannounced_completions(self) -> list[Contest]:
        return list(
            Contest.objects.filter(
                status=Contest.Status.completed,
                completed_at__isnull=False,
                completion_announced_at__isnull=True,
            ).order_by("completed_at", "id")
        )

    @_transient_db_errors("contest.selection_limits")
    def selection_limits(self, contest_ids: Iterable[int]) -> dict[int, int]:
        return dict(Contest.objects.filter(pk__in=list(contest_ids)).values_list("pk", "max_selections_per_member"))

    @_transient_db_errors("contest.activate")
    def activate(self, contest_id: int, *, now: datetime.datetime) -> bool:
        with transaction.atomic():
            # Conditional update: only one concurrent caller can win the transition.
            updated = Contest.objects.filter(pk=contest_id, status=Contest.Status.upcoming).update(
                status=Contest.Status.active,
                updated_at=now,
            )
            if updated != 1:
                return False
            AuditLogEntry.objects.create(
                contest_id=contest_id,
                event_type="contest_activated",
                payload={"activated_at": now.isoformat(), "trigger": "schedule"},
                is_public=True,
            )
        return True

    @_transient_db_errors("contest.claim_completion")
    def claim_completion(
        self,
        contest_id: int,
        *,
        now: datetime.datetime,
        stale_before: datetime.datetime,
    ) -> bool:
        claimed = (
            Contest.objects.filter(pk=contest_id)
            .filter(Q(completing_since__isnull=True) | Q(completing_since__lt=stale_before))
            .update(completing_since=now)
        )
        return claimed == 1

    @_transient_db_errors("contest.release_completion")
    def release_completion(self, contest_id: int) -> None:
        Contest.objects.filter(pk=contest_id).update(completing_since=None)

    @_transient_db_errors("contest.complete")
    def complete(self, contest_id: int, *, now: datetime.datetime) -> Contest:
        with transaction.atomic():
            contest = Contest.objects.select_for_update().get(pk=contest_id)
            if contest.status == Contest.Status.completed:
                return contest
            if contest.status not in (Contest.Status.active, Contest.Status.paused):
                raise InvalidTransitionError(f"cannot move a contest from {contest.status} to completed")

            previous_status = contest.status
            contest.status = Contest.Status.completed
            contest.completed_at = now
            contest.save(update_fields=["status", "completed_at", "updated_at"])

            AuditLogEntry.objects.create(
                contest=contest,
                event_type="contest_completed",
                payload={
                    "previous_status": str(previous_status),
                    "completed_at": now.isoformat(),
                    "end_at": contest.end_at.isoformat() if contest.end_at else None,
                },
                is_public=True,
            )
        return contest

    @_transient_db_errors("contest.mark_announced")
    def mark_announced(self, contest_id: int, *, now: datetime.datetime) -> None:
        Contest.objects.filter(pk=contest_id).update(completion_announced_at=now)

    @_transient_db_errors("contest.reopen")
    def reopen(self, contest_id: int, *, new_end_at: datetime.datetime, actor: str | None = None) -> Contest:
        with transaction.atomic():
            contest = Contest.objects.select_for_update().get(pk=contest_id)
            if contest.status != Contest.Status.completed:
                raise InvalidTransitionError("only completed contests can be reopened")
            if new_end_at <= timezone.now():
                raise ElectionError("End datetime must be in the future.")
            if new_end_at <= contest.start_at:
                raise ElectionError("End datetime must be after the start.")

            previous_end = contest.end_at
            contest.status = Contest.Status.active
            contest.end_at = new_end_at
            contest.completing_since = None
            contest.completed_at = None
            contest.completion_announced_at = None
            contest.save(
                update_fields=[
                    "status",
                    "end_at",
                    "completing_since",
                    "completed_at",
                    "completion_announced_at",
                    "updated_at",
                ]
            )

            payload: dict[str, object] = {
                "previous_end_at": previous_end.isoformat() if previous_end else None,
                "new_end_at": new_end_at.isoformat(),
            }
            if actor:
                payload["actor"] = actor
            AuditLogEntry.objects.create(
                contest=contest,
                event_type="contest_reopened",
                payload=payload,
                is_public=True,
            )
        return contest


class DjangoBallotStore:
    @_transient_db_errors("ballot.list")
    def list_ballots(self, contest_id: int) -> list[BallotRecord]:
        rows = (
            Ballot.objects.for_contest(contest_id=contest_id)
            .order_by("cast_at", "id")
            .values_list("voter_id", "candidate_id", "contest_id", "cast_at")
        )
        return [
            BallotRecord(voter_id=voter_id, candidate_id=candidate_id, contest_id=cid, cast_at=cast_at)
            for voter_id, candidate_id, cid, cast_at in rows
        ]

    @_transient_db_errors("candidate.list")
    def list_candidates(self, contest_id: int) -> list[CandidateRecord]:
        rows = Candidate.objects.filter(contest_id=contest_id).values_list("id", "contest_id", "name")
        return [CandidateRecord(id=pk, contest_id=cid, name=name) for pk, cid, name in rows]


class DjangoMemberStore:
    @_transient_db_errors("member.list")
    def list_members(self) -> list[MemberRecord]:
        rows = Member.objects.filter(is_active=True).values_list("username", "branch", "role")
        return [MemberRecord(username=username, branch=branch, role=role) for username, branch, role in rows]


class DatabaseNotificationSink:
    """Record announcements in the database and copy them to the committee.

    Announcements carrying an ``event_key`` are recorded at most once; a
    repeated publish for the same key is a successful no-op.
    """

    def publish(self, announcement: AnnouncementDraft) -> None:
        try:
            with transaction.atomic():
                if announcement.event_key and Announcement.objects.filter(event_key=announcement.event_key).exists():
                    logger.info("Announcement already published event_key=%s", announcement.event_key)
                    return

                Announcement.objects.create(
                    title=announcement.title,
                    content=announcement.body,
                    priority=announcement.priority,
                    author=announcement.author,
                    target_audience=list(announcement.target_audience),
                    contest_id=announcement.contest_id,
                    event_key=announcement.event_key,
                    published_at=timezone.now(),
                    expires_at=announcement.expires_at,
                )

                committee_email = str(settings.ELECTION_COMMITTEE_EMAIL or "").strip()
                if committee_email:
                    post_office.mail.send(
                        recipients=[committee_email],
                        sender=settings.DEFAULT_FROM_EMAIL,
                        subject=announcement.title,
                        message=announcement.body,
                        priority="high" if announcement.priority == Announcement.Priority.high else "medium",
                        commit=True,
                    )
        except IntegrityError as exc:
            # A concurrent publisher recorded the same event_key first.
            if announcement.event_key and Announcement.objects.filter(event_key=announcement.event_key).exists():
                return
            raise NotificationFailedError("announcement could not be recorded") from exc
        except Exception as exc:
            logger.exception("Failed to publish announcement title=%r", announcement.title)
            raise NotificationFailedError(f"announcement could not be published: {exc}") from exc


__all__ = [
    "DatabaseNotificationSink",
    "DjangoBallotStore",
    "DjangoContestStore",
    "DjangoMemberStore",
]
