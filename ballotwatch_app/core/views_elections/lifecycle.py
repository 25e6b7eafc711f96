"""Administrator lifecycle actions: reopen, extend, pause, resume, cancel, conclude, publish, delete."""

import json
from collections.abc import Callable

from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_POST

from core import elections_lifecycle
from core.elections_exceptions import ElectionError
from core.models import Contest
from core.permissions import CONTEST_MANAGE_ROLES, ROLE_ADMIN, get_username, json_role_required
from core.views_elections._helpers import _contest_payload, _get_contest, _parse_bool, _parse_end_at, _parse_payload


def _run_action(action: Callable[[], Contest]) -> JsonResponse:
    try:
        contest = action()
    except ElectionError as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)
    return JsonResponse({"ok": True, "contest": _contest_payload(contest)})


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_extend_end(request: HttpRequest, contest_id: int) -> JsonResponse:
    """Set a new end. A completed contest is reopened; an open one is extended."""
    contest = _get_contest(contest_id)
    try:
        new_end_at = _parse_end_at(_parse_payload(request))
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    return _run_action(
        lambda: elections_lifecycle.set_contest_end(
            contest=contest,
            new_end_at=new_end_at,
            actor=get_username(request) or None,
        )
    )


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_reopen(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    try:
        new_end_at = _parse_end_at(_parse_payload(request))
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    return _run_action(
        lambda: elections_lifecycle.reopen_contest(
            contest=contest,
            new_end_at=new_end_at,
            actor=get_username(request) or None,
        )
    )


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_pause(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    return _run_action(lambda: elections_lifecycle.pause_contest(contest=contest, actor=get_username(request)))


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_resume(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    return _run_action(lambda: elections_lifecycle.resume_contest(contest=contest, actor=get_username(request)))


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_start(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    return _run_action(lambda: elections_lifecycle.start_contest(contest=contest, actor=get_username(request)))


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_cancel(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    return _run_action(lambda: elections_lifecycle.cancel_contest(contest=contest, actor=get_username(request)))


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_conclude(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    return _run_action(lambda: elections_lifecycle.conclude_contest(contest=contest, actor=get_username(request)))


@require_POST
@json_role_required(CONTEST_MANAGE_ROLES)
def contest_publish_results(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    try:
        payload = _parse_payload(request)
        public = _parse_bool(payload.get("public", True))
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    return _run_action(
        lambda: elections_lifecycle.set_results_public(
            contest=contest,
            public=public,
            actor=get_username(request),
        )
    )


@require_POST
@json_role_required({ROLE_ADMIN})
def contest_delete(request: HttpRequest, contest_id: int) -> JsonResponse:
    contest = _get_contest(contest_id)
    try:
        payload = _parse_payload(request)
        cascade = _parse_bool(payload.get("cascade", False))
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    # Deleting a contest is irreversible; require the title as confirmation.
    confirm = str(payload.get("confirm") or "").strip()
    if not confirm or confirm.casefold() != contest.title.strip().casefold():
        return JsonResponse({"ok": False, "error": "Confirmation required."}, status=400)

    try:
        counts = elections_lifecycle.delete_contest(
            contest=contest,
            actor=get_username(request),
            cascade=cascade,
        )
    except ElectionError as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)
    return JsonResponse({"ok": True, "contest_id": contest_id, **counts})
