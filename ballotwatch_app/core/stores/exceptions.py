"""Store-layer exception classes."""


class StoreUnavailableError(RuntimeError):
    """Raised when a backing store cannot be reached or timed out.

    Read paths recover from this locally (empty data plus a degraded flag);
    the scheduler treats it as a retryable failure for the current tick.
    """


class CircuitOpenError(StoreUnavailableError):
    """Raised instead of calling a source whose circuit breaker is open."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"{source} circuit breaker is open")


class NotificationFailedError(RuntimeError):
    """Raised when an announcement could not be recorded or broadcast."""


__all__ = [
    "CircuitOpenError",
    "StoreUnavailableError",
    "NotificationFailedError",
]
