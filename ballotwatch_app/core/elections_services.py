from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.elections_engagement import EngagementSlot, build_engagement_curve
from core.elections_exceptions import (
    BallotIntegrityError,
    ContestNotOpenError,
    ElectionError,
    InvalidBallotError,
    InvalidTransitionError,
)
from core.elections_tally import TallySnapshot, aggregate
from core.elections_visibility import VisibilityDecision, current_contest, resolve_visibility
from core.models import Ballot, Candidate, Contest
from core.stores import BallotStore, ContestStore, DjangoBallotStore, MemberStore, StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BallotReceipt:
    ballot: Ballot
    selections_used: int
    selections_remaining: int


@dataclass(frozen=True)
class EngagementCurve:
    contest_id: int
    status: str
    slots: tuple[EngagementSlot, ...]
    degraded: bool = False

    @property
    def meaningful(self) -> bool:
        # Only an ongoing contest has a curve worth drawing; callers render a
        # neutral state otherwise.
        return self.status == Contest.Status.active

    def as_dict(self) -> dict[str, object]:
        return {
            "contest_id": self.contest_id,
            "status": self.status,
            "meaningful": self.meaningful,
            "degraded": self.degraded,
            "slots": [slot.as_dict() for slot in self.slots],
        }


@transaction.atomic
def cast_ballot(
    *,
    contest: Contest,
    voter_id: str,
    candidate_id: int,
    now: datetime.datetime | None = None,
) -> BallotReceipt:
    now = now or timezone.now()
    voter = str(voter_id or "").strip()
    if not voter:
        raise InvalidBallotError("voter id is required")

    # Serialize ballots per contest so two concurrent submissions from the same
    # voter cannot both pass the selection limit check.
    locked = Contest.objects.select_for_update().get(pk=contest.pk)

    if locked.status != Contest.Status.active:
        raise ContestNotOpenError("contest is not active")
    if now < locked.start_at or (locked.end_at is not None and now >= locked.end_at):
        raise ContestNotOpenError("contest is outside its voting window")

    if not Candidate.objects.filter(pk=candidate_id, contest=locked).exists():
        raise InvalidBallotError("candidate does not belong to this contest")

    existing = Ballot.objects.for_voter(contest_id=locked.pk, voter_id=voter)
    if existing.filter(candidate_id=candidate_id).exists():
        raise InvalidBallotError("already voted for this candidate")

    used = existing.count()
    if used >= locked.max_selections_per_member:
        raise InvalidBallotError(
            f"maximum of {locked.max_selections_per_member} selection(s) already reached"
        )

    try:
        ballot = Ballot.objects.create(contest=locked, voter_id=voter, candidate_id=candidate_id, cast_at=now)
    except IntegrityError as exc:
        raise InvalidBallotError("already voted for this candidate") from exc

    logger.info("Ballot cast contest_id=%s candidate_id=%s", locked.pk, candidate_id)
    used += 1
    return BallotReceipt(
        ballot=ballot,
        selections_used=used,
        selections_remaining=locked.max_selections_per_member - used,
    )


def get_tally(
    contest_id: int,
    *,
    ballot_store: BallotStore | None = None,
    member_store: MemberStore | None = None,
    contest_store: ContestStore | None = None,
) -> TallySnapshot:
    return aggregate(contest_id, ballot_store=ballot_store, member_store=member_store, contest_store=contest_store)


def get_engagement_curve(contest_id: int, *, ballot_store: BallotStore | None = None) -> EngagementCurve:
    contest = Contest.objects.only("id", "status").get(pk=contest_id)
    store = ballot_store if ballot_store is not None else DjangoBallotStore()

    degraded = False
    try:
        timestamps = [ballot.cast_at for ballot in store.list_ballots(contest.pk)]
    except StoreUnavailableError as exc:
        logger.warning("Engagement curve ballots unavailable contest_id=%s error=%s", contest.pk, exc)
        timestamps = []
        degraded = True

    return EngagementCurve(
        contest_id=contest.pk,
        status=str(contest.status),
        slots=tuple(build_engagement_curve(timestamps)),
        degraded=degraded,
    )


def is_results_visible(contest_id: int | None, caller_role: str | None) -> VisibilityDecision:
    """Visibility for a named contest, or for the current contest when none is named."""
    if contest_id is None:
        contest = current_contest()
    else:
        contest = Contest.objects.filter(pk=contest_id).first()
    return resolve_visibility(contest, caller_role)


__all__ = [
    "BallotIntegrityError",
    "BallotReceipt",
    "ContestNotOpenError",
    "ElectionError",
    "EngagementCurve",
    "InvalidBallotError",
    "InvalidTransitionError",
    "cast_ballot",
    "get_engagement_curve",
    "get_tally",
    "is_results_visible",
]
