import logging

_HEALTH_PATHS: tuple[str, ...] = ("/healthz", "/readyz")


class HealthEndpointFilter(logging.Filter):
    """Drop access-log lines for successful health probes.

    Load balancers poll these endpoints every few seconds; only failures are
    worth keeping.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if any(path in message for path in _HEALTH_PATHS):
            return " 200 " not in message
        return True
