"""Narrow contracts between the engine and its collaborators.

The scheduler and aggregator only talk to these protocols. The Django ORM
implementations live in ``core.stores.database``; the remote member directory
lives in ``core.stores.member_directory``.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from core.models import Contest


@dataclass(frozen=True)
class CandidateRecord:
    id: int
    contest_id: int
    name: str


@dataclass(frozen=True)
class BallotRecord:
    voter_id: str
    candidate_id: int
    contest_id: int
    cast_at: datetime.datetime


@dataclass(frozen=True)
class MemberRecord:
    username: str
    branch: str = ""
    role: str = "member"


@dataclass(frozen=True)
class AnnouncementDraft:
    title: str
    body: str
    priority: str
    target_audience: tuple[str, ...] = ("all",)
    contest_id: int | None = None
    # Stable identity of the event being announced; publishing the same key
    # twice must not produce a second announcement.
    event_key: str | None = None
    expires_at: datetime.datetime | None = None
    author: str = "System"


class ContestStore(Protocol):
    def list_open_contests(self) -> list[Contest]: ...

    def list_due_contests(self, *, now: datetime.datetime) -> list[Contest]: ...

    def list_activatable_contests(self, *, now: datetime.datetime) -> list[Contest]: ...

    def list_unannounced_completions(self) -> list[Contest]: ...

    def selection_limits(self, contest_ids: Iterable[int]) -> dict[int, int]: ...

    def activate(self, contest_id: int, *, now: datetime.datetime) -> bool: ...

    def claim_completion(
        self,
        contest_id: int,
        *,
        now: datetime.datetime,
        stale_before: datetime.datetime,
    ) -> bool: ...

    def release_completion(self, contest_id: int) -> None: ...

    def complete(self, contest_id: int, *, now: datetime.datetime) -> Contest: ...

    def mark_announced(self, contest_id: int, *, now: datetime.datetime) -> None: ...

    def reopen(self, contest_id: int, *, new_end_at: datetime.datetime, actor: str | None = None) -> Contest: ...


class BallotStore(Protocol):
    def list_ballots(self, contest_id: int) -> list[BallotRecord]: ...

    def list_candidates(self, contest_id: int) -> list[CandidateRecord]: ...


class MemberStore(Protocol):
    def list_members(self) -> list[MemberRecord]: ...


class NotificationSink(Protocol):
    def publish(self, announcement: AnnouncementDraft) -> None: ...


__all__ = [
    "AnnouncementDraft",
    "BallotRecord",
    "BallotStore",
    "CandidateRecord",
    "ContestStore",
    "MemberRecord",
    "MemberStore",
    "NotificationSink",
]
