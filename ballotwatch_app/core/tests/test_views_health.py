import datetime
from unittest.mock import patch

from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone

from core.elections_lifecycle import record_scheduler_heartbeat


class HealthViewsTests(TestCase):
    def setUp(self) -> None:
        cache.clear()

    def tearDown(self) -> None:
        cache.clear()

    def test_healthz_returns_ok(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp["Content-Type"], "application/json")
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_readyz_reports_unknown_scheduler_without_heartbeat(self) -> None:
        resp = self.client.get("/readyz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ready", "database": "ok", "scheduler": "unknown"})

    def test_readyz_reports_recent_heartbeat(self) -> None:
        record_scheduler_heartbeat()

        resp = self.client.get("/readyz")

        self.assertEqual(resp.json()["scheduler"], "ok")

    @override_settings(CONTEST_LIFECYCLE_HEARTBEAT_MAX_AGE_SECONDS=60)
    def test_readyz_reports_stale_heartbeat(self) -> None:
        record_scheduler_heartbeat(timezone.now() - datetime.timedelta(minutes=10))

        resp = self.client.get("/readyz")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["scheduler"], "stale")

    def test_readyz_returns_503_when_db_unavailable(self) -> None:
        with patch("django.db.connection.ensure_connection", side_effect=RuntimeError("db down")):
            with self.assertLogs("core.views_health", level="ERROR"):
                resp = self.client.get("/readyz")

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp["Content-Type"], "application/json")
        self.assertEqual(resp.json(), {"status": "not ready", "error": "db down"})
