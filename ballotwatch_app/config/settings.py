from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


DEBUG: bool = _env_bool("DEBUG", False)

SECRET_KEY: str = os.getenv("SECRET_KEY", "ballotwatch-dev-secret-key-change-me")

if os.getenv("ALLOWED_HOSTS"):
    ALLOWED_HOSTS: list[str] = [h.strip() for h in os.environ["ALLOWED_HOSTS"].split(",") if h.strip()]
else:
    ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "post_office",
    "core.apps.CoreConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {"context_processors": []},
    },
]

if os.getenv("DATABASE_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.environ["DATABASE_HOST"],
            "PORT": os.getenv("DATABASE_PORT", "5432"),
            "NAME": os.getenv("DATABASE_NAME", "ballotwatch"),
            "USER": os.getenv("DATABASE_USER", "ballotwatch"),
            "PASSWORD": os.getenv("DATABASE_PASSWORD", ""),
            # Bounds every query, so one hanging read cannot stall a tick or a tally.
            "OPTIONS": {"options": f"-c statement_timeout={_env_int('DATABASE_STATEMENT_TIMEOUT_MS', 5000)}"},
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DATABASE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

CACHES = {
    "default": {
        "BACKEND": os.getenv("CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("CACHE_LOCATION", "ballotwatch"),
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE: str = os.getenv("TIME_ZONE", "UTC")
USE_I18N = False
USE_TZ = True

STATIC_URL = "static/"


# Email. Announcements can be copied to the election committee through
# django-post-office; the queue is drained by `send_queued_mail`.
EMAIL_BACKEND = "post_office.EmailBackend"
POST_OFFICE = {
    "BACKENDS": {
        "default": os.getenv("POST_OFFICE_BACKEND", "django.core.mail.backends.smtp.EmailBackend"),
    },
    "DEFAULT_PRIORITY": "medium",
}
DEFAULT_FROM_EMAIL: str = os.getenv("DEFAULT_FROM_EMAIL", "Ballotwatch <noreply@example.org>")
ELECTION_COMMITTEE_EMAIL: str = os.getenv("ELECTION_COMMITTEE_EMAIL", "")


# Lifecycle scheduler.
CONTEST_LIFECYCLE_TICK_SECONDS: int = _env_int("CONTEST_LIFECYCLE_TICK_SECONDS", 5)
CONTEST_COMPLETION_CLAIM_TTL_SECONDS: int = _env_int("CONTEST_COMPLETION_CLAIM_TTL_SECONDS", 300)
CONTEST_ANNOUNCEMENT_EXPIRY_DAYS: int = _env_int("CONTEST_ANNOUNCEMENT_EXPIRY_DAYS", 2)
CONTEST_LIFECYCLE_HEARTBEAT_MAX_AGE_SECONDS: int = _env_int(
    "CONTEST_LIFECYCLE_HEARTBEAT_MAX_AGE_SECONDS",
    CONTEST_LIFECYCLE_TICK_SECONDS * 12,
)

# Engagement curve display window (local hours, inclusive).
ENGAGEMENT_CURVE_FIRST_HOUR: int = _env_int("ENGAGEMENT_CURVE_FIRST_HOUR", 8)
ENGAGEMENT_CURVE_LAST_HOUR: int = _env_int("ENGAGEMENT_CURVE_LAST_HOUR", 23)

# Member directory. Empty URL means members are read from the local table.
MEMBER_DIRECTORY_URL: str = os.getenv("MEMBER_DIRECTORY_URL", "")
MEMBER_DIRECTORY_TOKEN: str = os.getenv("MEMBER_DIRECTORY_TOKEN", "")
MEMBER_DIRECTORY_TIMEOUT_SECONDS: int = _env_int("MEMBER_DIRECTORY_TIMEOUT_SECONDS", 5)
MEMBER_DIRECTORY_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES: int = _env_int(
    "MEMBER_DIRECTORY_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES", 3
)
MEMBER_DIRECTORY_CIRCUIT_BREAKER_COOLDOWN_SECONDS: int = _env_int(
    "MEMBER_DIRECTORY_CIRCUIT_BREAKER_COOLDOWN_SECONDS", 60
)

# Tally sources (contests, candidates, ballots, members) each get their own breaker.
TALLY_SOURCE_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES: int = _env_int(
    "TALLY_SOURCE_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES", 5
)
TALLY_SOURCE_CIRCUIT_BREAKER_COOLDOWN_SECONDS: int = _env_int(
    "TALLY_SOURCE_CIRCUIT_BREAKER_COOLDOWN_SECONDS", 30
)


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "health_endpoint": {
            "()": "config.logging_filters.HealthEndpointFilter",
        },
    },
    "formatters": {
        "default": {
            "format": "[{asctime}] {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "stderr": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "django.server": {
            "handlers": ["stderr"],
            "level": "INFO",
            "filters": ["health_endpoint"],
            "propagate": False,
        },
        "core": {
            "handlers": ["stderr"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["stderr"],
        "level": "WARNING",
    },
}


SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")
if SENTRY_DSN:
    import logging

    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        traces_sample_rate=0.0,
        send_default_pii=False,
        send_client_reports=False,
        auto_session_tracking=False,
    )
