"""Tally aggregation.

Tallies are always re-derived from the ballot log; nothing here is cached or
persisted. ``compute_tally`` is a pure function over already-fetched records.
``aggregate`` fetches each source independently so that one unavailable
source degrades the snapshot instead of failing it.
"""

from __future__ import annotations

import datetime
import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from django.utils import timezone

from core.elections_exceptions import BallotIntegrityError
from core.models import Contest
from core.stores import (
    BallotRecord,
    BallotStore,
    CandidateRecord,
    ContestStore,
    DjangoBallotStore,
    DjangoContestStore,
    MemberRecord,
    MemberStore,
    StoreUnavailableError,
    default_member_store,
)
from core.stores.circuit_breaker import tally_source_breaker
from core.stores.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

UNSET_BRANCH_LABEL = "Not Provided"

DEGRADED_UNAVAILABLE = "unavailable"
DEGRADED_CIRCUIT_OPEN = "circuit_open"


@dataclass(frozen=True)
class BranchTurnout:
    branch: str
    members: int
    voted: int
    participation_pct: int


@dataclass(frozen=True)
class TallySnapshot:
    contest_ids: tuple[int, ...]
    counts: dict[int, int]
    candidate_names: dict[int, str]
    unique_voters: frozenset[str]
    total_ballots: int
    # None when the member list could not be fetched.
    eligible_member_count: int | None
    turnout_pct: int | None
    branch_turnout: tuple[BranchTurnout, ...]
    degraded_sources: tuple[str, ...] = ()
    # Why each degraded source is missing: "unavailable" or "circuit_open".
    degraded_reasons: dict[str, str] = field(default_factory=dict)
    computed_at: datetime.datetime = field(default_factory=timezone.now)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_sources)

    @property
    def unique_voter_count(self) -> int:
        return len(self.unique_voters)

    def as_dict(self) -> dict[str, object]:
        return {
            "contest_ids": list(self.contest_ids),
            "counts": {str(cid): n for cid, n in self.counts.items()},
            "candidates": [
                {"id": cid, "name": self.candidate_names.get(cid, ""), "votes": n}
                for cid, n in sorted(self.counts.items(), key=lambda item: (-item[1], item[0]))
            ],
            "unique_voters": self.unique_voter_count,
            "total_ballots": self.total_ballots,
            "eligible_member_count": self.eligible_member_count,
            "turnout_pct": self.turnout_pct,
            "branch_turnout": [
                {
                    "branch": row.branch,
                    "members": row.members,
                    "voted": row.voted,
                    "participation_pct": row.participation_pct,
                }
                for row in self.branch_turnout
            ],
            "degraded": self.degraded,
            "degraded_sources": list(self.degraded_sources),
            "degraded_reasons": dict(self.degraded_reasons),
            "computed_at": self.computed_at.isoformat(),
        }


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round(100 * part / whole)


def find_integrity_violations(
    *,
    contest_ids: Iterable[int],
    max_selections: Mapping[int, int],
    candidates: Iterable[CandidateRecord] | None,
    ballots: Iterable[BallotRecord],
) -> list[str]:
    wanted = set(contest_ids)
    candidate_contest = {c.id: c.contest_id for c in candidates} if candidates is not None else None

    violations: list[str] = []
    seen_pairs: set[tuple[int, str, int]] = set()
    selections: Counter[tuple[int, str]] = Counter()

    for ballot in ballots:
        if ballot.contest_id not in wanted:
            violations.append(f"ballot by {ballot.voter_id} belongs to contest {ballot.contest_id}")
            continue

        if candidate_contest is not None:
            owner = candidate_contest.get(ballot.candidate_id)
            if owner is None:
                violations.append(f"ballot by {ballot.voter_id} references unknown candidate {ballot.candidate_id}")
            elif owner != ballot.contest_id:
                violations.append(
                    f"ballot by {ballot.voter_id} references candidate {ballot.candidate_id} "
                    f"of contest {owner}"
                )

        pair = (ballot.contest_id, ballot.voter_id, ballot.candidate_id)
        if pair in seen_pairs:
            violations.append(f"duplicate ballot by {ballot.voter_id} for candidate {ballot.candidate_id}")
        seen_pairs.add(pair)
        selections[(ballot.contest_id, ballot.voter_id)] += 1

    for (contest_id, voter_id), count in sorted(selections.items()):
        # No limit is known when the contest metadata could not be read.
        limit = max_selections.get(contest_id)
        if limit is not None and count > limit:
            violations.append(
                f"voter {voter_id} cast {count} ballots in contest {contest_id} (limit {limit})"
            )

    return violations


def branch_turnout(*, members: Iterable[MemberRecord], voters: Iterable[str]) -> tuple[BranchTurnout, ...]:
    voted = set(voters)
    totals: dict[str, int] = defaultdict(int)
    participated: dict[str, int] = defaultdict(int)

    for member in members:
        branch = str(member.branch or "").strip() or UNSET_BRANCH_LABEL
        totals[branch] += 1
        if member.username in voted:
            participated[branch] += 1

    rows = [
        BranchTurnout(
            branch=branch,
            members=total,
            voted=participated[branch],
            participation_pct=_percent(participated[branch], total),
        )
        for branch, total in totals.items()
    ]
    rows.sort(key=lambda row: (-row.participation_pct, row.branch))
    return tuple(rows)


def compute_tally(
    *,
    contest_ids: Iterable[int],
    max_selections: Mapping[int, int],
    candidates: list[CandidateRecord] | None,
    ballots: list[BallotRecord] | None,
    members: list[MemberRecord] | None,
    degraded_sources: Iterable[str] = (),
    degraded_reasons: Mapping[str, str] | None = None,
    now: datetime.datetime | None = None,
) -> TallySnapshot:
    """Build a snapshot from fetched records. ``None`` marks a source that could not be read."""
    ids = tuple(contest_ids)
    sources = tuple(degraded_sources)
    reasons = {source: (degraded_reasons or {}).get(source, DEGRADED_UNAVAILABLE) for source in sources}
    ballot_rows = ballots or []

    violations = find_integrity_violations(
        contest_ids=ids,
        max_selections=max_selections,
        candidates=candidates,
        ballots=ballot_rows,
    )
    if violations:
        raise BallotIntegrityError(ids[0], violations)

    counts: dict[int, int] = {c.id: 0 for c in candidates or []}
    names = {c.id: c.name for c in candidates or []}
    voters: set[str] = set()
    for ballot in ballot_rows:
        counts[ballot.candidate_id] = counts.get(ballot.candidate_id, 0) + 1
        voters.add(ballot.voter_id)

    if members is None:
        eligible = None
        turnout = None
        branches: tuple[BranchTurnout, ...] = ()
    else:
        eligible = len(members)
        # Ballots from former or unknown members count as votes but not as turnout.
        member_voters = {m.username for m in members} & voters
        turnout = _percent(len(member_voters), eligible)
        branches = branch_turnout(members=members, voters=voters)

    return TallySnapshot(
        contest_ids=ids,
        counts=counts,
        candidate_names=names,
        unique_voters=frozenset(voters),
        total_ballots=len(ballot_rows),
        eligible_member_count=eligible,
        turnout_pct=turnout,
        branch_turnout=branches,
        degraded_sources=sources,
        degraded_reasons=reasons,
        computed_at=now or timezone.now(),
    )


def _fetch[T](source: str, fetch: Callable[[], T], degraded: dict[str, str]) -> T | None:
    breaker = tally_source_breaker(source)
    try:
        breaker.check()
        result = fetch()
    except StoreUnavailableError as exc:
        reason = DEGRADED_CIRCUIT_OPEN if isinstance(exc, CircuitOpenError) else DEGRADED_UNAVAILABLE
        logger.warning("Tally source unavailable source=%s reason=%s error=%s", source, reason, exc)
        if reason == DEGRADED_UNAVAILABLE:
            breaker.record_failure()
        degraded[source] = reason
        return None

    breaker.record_success()
    return result


def aggregate_contests(
    contest_ids: Iterable[int],
    *,
    ballot_store: BallotStore | None = None,
    member_store: MemberStore | None = None,
    contest_store: ContestStore | None = None,
) -> TallySnapshot:
    """Aggregate one or more contests (typically the contests of one cycle) into one snapshot."""
    ids = tuple(dict.fromkeys(int(cid) for cid in contest_ids))
    if not ids:
        raise ValueError("at least one contest id is required")

    ballots_source = ballot_store if ballot_store is not None else DjangoBallotStore()
    members_source = member_store if member_store is not None else default_member_store()
    contests_source = contest_store if contest_store is not None else DjangoContestStore()

    degraded: dict[str, str] = {}

    limits = _fetch("contests", lambda: contests_source.selection_limits(ids), degraded)
    if limits is not None:
        missing = set(ids) - set(limits)
        if missing:
            raise Contest.DoesNotExist(f"unknown contest ids: {sorted(missing)}")

    candidates = _fetch(
        "candidates",
        lambda: [row for cid in ids for row in ballots_source.list_candidates(cid)],
        degraded,
    )
    ballots = _fetch(
        "ballots",
        lambda: [row for cid in ids for row in ballots_source.list_ballots(cid)],
        degraded,
    )
    members = _fetch("members", members_source.list_members, degraded)

    return compute_tally(
        contest_ids=ids,
        max_selections=limits or {},
        candidates=candidates,
        ballots=ballots,
        members=members,
        degraded_sources=degraded,
        degraded_reasons=degraded,
    )


def aggregate(
    contest_id: int,
    *,
    ballot_store: BallotStore | None = None,
    member_store: MemberStore | None = None,
    contest_store: ContestStore | None = None,
) -> TallySnapshot:
    return aggregate_contests(
        [contest_id],
        ballot_store=ballot_store,
        member_store=member_store,
        contest_store=contest_store,
    )


__all__ = [
    "DEGRADED_CIRCUIT_OPEN",
    "DEGRADED_UNAVAILABLE",
    "UNSET_BRANCH_LABEL",
    "BranchTurnout",
    "TallySnapshot",
    "aggregate",
    "aggregate_contests",
    "branch_turnout",
    "compute_tally",
    "find_integrity_violations",
]
