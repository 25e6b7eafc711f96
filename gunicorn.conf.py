from __future__ import annotations

import os

# Run from the repository root: `gunicorn -c gunicorn.conf.py`.
chdir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "ballotwatch_app")
wsgi_app = "config.wsgi:application"

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
workers = int(os.getenv("GUNICORN_WORKERS", "2"))
# Tallies read every ballot of a contest; keep slow requests bounded.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "30"))
graceful_timeout = 20

accesslog = "-"
errorlog = "-"
capture_output = True
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "127.0.0.1")
access_log_format = '%({x-forwarded-for}i)s %(t)s "%(r)s" %(s)s %(b)s %(M)sms "%(a)s"'

logconfig_dict = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "health_endpoint": {
            "()": "config.logging_filters.HealthEndpointFilter",
        },
    },
    "formatters": {
        "access": {"format": "%(message)s"},
        "error": {
            "format": "[{asctime}] {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "stdout": {"class": "logging.StreamHandler", "formatter": "access"},
        "stderr": {"class": "logging.StreamHandler", "formatter": "error"},
    },
    "loggers": {
        "gunicorn.error": {"handlers": ["stderr"], "level": "INFO", "propagate": False},
        # Probes hit /healthz and /readyz every few seconds.
        "gunicorn.access": {
            "handlers": ["stdout"],
            "level": "INFO",
            "filters": ["health_endpoint"],
            "propagate": False,
        },
    },
    "root": {"handlers": ["stderr"], "level": "INFO"},
}
