import json

from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_POST

from core.elections_services import ContestNotOpenError, InvalidBallotError, cast_ballot
from core.permissions import get_username
from core.views_elections._helpers import _get_contest, _parse_payload


@require_POST
def contest_vote_submit(request: HttpRequest, contest_id: int) -> JsonResponse:
    username = get_username(request)
    if not username:
        return JsonResponse({"ok": False, "error": "Authentication required."}, status=403)

    contest = _get_contest(contest_id, fields=["id"])

    try:
        payload = _parse_payload(request)
        candidate_id = int(payload.get("candidate_id") or 0)
    except (ValueError, TypeError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)
    if candidate_id <= 0:
        return JsonResponse({"ok": False, "error": "candidate_id is required"}, status=400)

    try:
        receipt = cast_ballot(contest=contest, voter_id=username, candidate_id=candidate_id)
    except (InvalidBallotError, ContestNotOpenError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    return JsonResponse(
        {
            "ok": True,
            "contest_id": contest.pk,
            "candidate_id": candidate_id,
            "cast_at": receipt.ballot.cast_at.isoformat(),
            "selections_remaining": receipt.selections_remaining,
        }
    )
