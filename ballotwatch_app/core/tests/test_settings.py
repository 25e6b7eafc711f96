import os
import subprocess
import sys
import textwrap
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[2]


def _import_settings(code: str, **env_overrides: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env.pop("DJANGO_SETTINGS_MODULE", None)
    env.update(env_overrides)
    return subprocess.run(
        [sys.executable, "-c", textwrap.dedent(code).strip()],
        cwd=APP_DIR,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


class SettingsTests(unittest.TestCase):
    def test_sentry_sdk_is_initialized_when_dsn_is_set(self) -> None:
        result = _import_settings(
            """
            import sys
            from unittest.mock import patch

            sys.path.insert(0, ".")
            with patch("sentry_sdk.init") as mocked_init:
                import config.settings  # noqa: F401

            kwargs = mocked_init.call_args.kwargs
            print(kwargs["dsn"])
            print(f"traces_sample_rate={kwargs['traces_sample_rate']!r}")
            print(f"send_default_pii={kwargs['send_default_pii']!r}")
            """,
            SENTRY_DSN="http://public@example.invalid/1",
        )

        self.assertEqual(result.returncode, 0, result.stderr)
        self.assertEqual(
            result.stdout.splitlines(),
            ["http://public@example.invalid/1", "traces_sample_rate=0.0", "send_default_pii=False"],
        )

    def test_postgres_statement_timeout_and_scheduler_settings_from_env(self) -> None:
        result = _import_settings(
            """
            import sys

            sys.path.insert(0, ".")
            from config import settings

            print(settings.DATABASES["default"]["ENGINE"])
            print(settings.DATABASES["default"]["OPTIONS"]["options"])
            print(settings.CONTEST_LIFECYCLE_TICK_SECONDS)
            print(settings.CONTEST_LIFECYCLE_HEARTBEAT_MAX_AGE_SECONDS)
            """,
            SENTRY_DSN="",
            DATABASE_HOST="db.example.internal",
            DATABASE_STATEMENT_TIMEOUT_MS="2500",
            CONTEST_LIFECYCLE_TICK_SECONDS="10",
        )

        self.assertEqual(result.returncode, 0, result.stderr)
        self.assertEqual(
            result.stdout.splitlines(),
            ["django.db.backends.postgresql", "-c statement_timeout=2500", "10", "120"],
        )
