from __future__ import annotations

import logging

from django.conf import settings
from django.db import connection
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET

from core.elections_lifecycle import scheduler_heartbeat_age_seconds

logger = logging.getLogger(__name__)


@require_GET
def healthz(_request: HttpRequest) -> JsonResponse:
    return JsonResponse({"status": "ok"})


@require_GET
def readyz(_request: HttpRequest) -> JsonResponse:
    try:
        connection.ensure_connection()
    except Exception as exc:
        logger.exception("Health check readyz failed")
        return JsonResponse({"status": "not ready", "error": str(exc)}, status=503)

    age = scheduler_heartbeat_age_seconds()
    if age is None:
        scheduler = "unknown"
    elif age > settings.CONTEST_LIFECYCLE_HEARTBEAT_MAX_AGE_SECONDS:
        scheduler = "stale"
    else:
        scheduler = "ok"

    # A stale scheduler is reported but does not take the web tier out of rotation.
    return JsonResponse({"status": "ready", "database": "ok", "scheduler": scheduler})
