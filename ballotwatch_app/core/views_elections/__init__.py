"""Contest views package.

All public view functions are re-exported here so that ``core.urls`` can
reference ``views_elections.<view_name>``.
"""

from core.views_elections.lifecycle import (
    contest_cancel,
    contest_conclude,
    contest_delete,
    contest_extend_end,
    contest_pause,
    contest_publish_results,
    contest_reopen,
    contest_resume,
    contest_start,
)
from core.views_elections.results import contest_engagement, contest_tally, results_visibility
from core.views_elections.vote import contest_vote_submit

__all__ = [
    "contest_cancel",
    "contest_conclude",
    "contest_delete",
    "contest_engagement",
    "contest_extend_end",
    "contest_pause",
    "contest_publish_results",
    "contest_reopen",
    "contest_resume",
    "contest_start",
    "contest_tally",
    "contest_vote_submit",
    "results_visibility",
]
