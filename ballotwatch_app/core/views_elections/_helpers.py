"""Shared private helpers used across election view sub-modules."""

import datetime
import json

from django.http import Http404, HttpRequest
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.models import Contest


def _get_contest(contest_id: int, *, fields: list[str] | None = None) -> Contest:
    """Load a contest by PK or raise Http404."""
    qs = Contest.objects.filter(pk=contest_id)
    if fields:
        qs = qs.only(*fields)
    contest = qs.first()
    if contest is None:
        raise Http404
    return contest


def _parse_payload(request: HttpRequest) -> dict[str, object]:
    if request.content_type and request.content_type.startswith("application/json"):
        raw = request.body.decode("utf-8") if request.body else "{}"
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("payload must be a JSON object")
        return data
    return {key: request.POST.get(key) for key in request.POST}


def _parse_end_at(payload: dict[str, object]) -> datetime.datetime:
    raw = str(payload.get("end_at") or "").strip()
    if not raw:
        raise ValueError("end_at is required")

    value = parse_datetime(raw)
    if value is None:
        raise ValueError("end_at must be an ISO 8601 datetime")
    if timezone.is_naive(value):
        value = timezone.make_aware(value, timezone.get_current_timezone())
    return value


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raw = str(value or "").strip().lower()
    if raw in ("true", "1", "yes", "on"):
        return True
    if raw in ("false", "0", "no", "off", ""):
        return False
    raise ValueError("expected a boolean")


def _contest_payload(contest: Contest) -> dict[str, object]:
    return {
        "id": contest.pk,
        "title": contest.title,
        "status": contest.status,
        "start_at": contest.start_at.isoformat() if contest.start_at else None,
        "end_at": contest.end_at.isoformat() if contest.end_at else None,
        "results_public": contest.results_are_public,
        "completed_at": contest.completed_at.isoformat() if contest.completed_at else None,
    }
