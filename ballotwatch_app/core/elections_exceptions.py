"""Election lifecycle and ballot exception classes."""

from __future__ import annotations


class ElectionError(Exception):
    pass


class ContestNotOpenError(ElectionError):
    pass


class InvalidTransitionError(ElectionError):
    pass


class InvalidBallotError(ElectionError):
    pass


class BallotIntegrityError(ElectionError):
    """Stored ballots violate a contest invariant.

    Raised by aggregation instead of silently dropping the offending rows, so
    operators see the corruption.
    """

    def __init__(self, contest_id: int, violations: list[str]) -> None:
        self.contest_id = contest_id
        self.violations = list(violations)
        summary = "; ".join(self.violations[:5])
        more = len(self.violations) - 5
        if more > 0:
            summary += f"; and {more} more"
        super().__init__(f"Ballot integrity violation in contest {contest_id}: {summary}")


__all__ = [
    "BallotIntegrityError",
    "ContestNotOpenError",
    "ElectionError",
    "InvalidBallotError",
    "InvalidTransitionError",
]
