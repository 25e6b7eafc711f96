"""Read-only results endpoints: tally, engagement curve, visibility."""

import logging

from django.db import DatabaseError
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET

from core import elections_services
from core.elections_services import BallotIntegrityError
from core.permissions import caller_role_for_request
from core.views_elections._helpers import _get_contest

logger = logging.getLogger(__name__)


@require_GET
def contest_tally(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)

    decision = elections_services.is_results_visible(contest.pk, caller_role_for_request(request))
    if not decision.visible:
        return JsonResponse(decision.as_dict(), status=403)

    try:
        snapshot = elections_services.get_tally(contest.pk)
    except BallotIntegrityError as exc:
        logger.error(
            "Ballot integrity violation contest_id=%s violations=%s",
            contest.pk,
            len(exc.violations),
            extra={"event": "ballotwatch.tally.integrity", "contest_id": contest.pk},
        )
        return JsonResponse(
            {"error": "Ballot data failed integrity checks.", "violations": exc.violations},
            status=409,
        )
    except DatabaseError:
        logger.exception("Tally failed contest_id=%s", contest.pk)
        return JsonResponse({"error": "Results are temporarily unavailable."}, status=503)

    return JsonResponse({"contest_id": contest.pk, "status": contest.status, **snapshot.as_dict()})


@require_GET
def contest_engagement(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id, fields=["id", "status", "results_public"])

    decision = elections_services.is_results_visible(contest.pk, caller_role_for_request(request))
    if not decision.visible:
        return JsonResponse(decision.as_dict(), status=403)

    curve = elections_services.get_engagement_curve(contest.pk)
    return JsonResponse(curve.as_dict())


@require_GET
def results_visibility(request: HttpRequest) -> JsonResponse:
    raw = str(request.GET.get("contest") or "").strip()
    contest_id: int | None = None
    if raw:
        try:
            contest_id = int(raw)
        except ValueError:
            return JsonResponse({"error": "contest must be an integer"}, status=400)

    decision = elections_services.is_results_visible(contest_id, caller_role_for_request(request))
    return JsonResponse(decision.as_dict())
