"""Who may see contest results."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from django.db.models import F, Q

from core.models import Contest, Member

PRIVILEGED_ROLES: frozenset[str] = frozenset({Member.Role.admin, Member.Role.officer})


class VisibilityReason(StrEnum):
    public = "public"
    privileged = "privileged"
    hidden = "hidden"
    no_data = "no_data"


@dataclass(frozen=True)
class VisibilityDecision:
    visible: bool
    reason: VisibilityReason
    contest_id: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {"visible": self.visible, "reason": str(self.reason), "contest_id": self.contest_id}


def resolve_visibility(contest: Contest | None, caller_role: str | None) -> VisibilityDecision:
    # "Nothing to show" is distinct from "access denied".
    if contest is None:
        return VisibilityDecision(visible=False, reason=VisibilityReason.no_data)

    # Unset (NULL) is treated exactly like an explicit True.
    if contest.results_public is not False:
        return VisibilityDecision(visible=True, reason=VisibilityReason.public, contest_id=contest.pk)

    if str(caller_role or "") in PRIVILEGED_ROLES:
        return VisibilityDecision(visible=True, reason=VisibilityReason.privileged, contest_id=contest.pk)

    return VisibilityDecision(visible=False, reason=VisibilityReason.hidden, contest_id=contest.pk)


def is_visible(contest: Contest, caller_role: str | None) -> bool:
    return resolve_visibility(contest, caller_role).visible


def current_contest() -> Contest | None:
    """The contest results pages report on when none is named.

    The most recently started open (active or paused) contest, falling back to
    the most recently completed one.
    """
    running = (
        Contest.objects.filter(Q(status=Contest.Status.active) | Q(status=Contest.Status.paused))
        .order_by("-start_at", "-id")
        .first()
    )
    if running is not None:
        return running
    return (
        Contest.objects.filter(status=Contest.Status.completed)
        .order_by(F("completed_at").desc(nulls_last=True), "-id")
        .first()
    )
