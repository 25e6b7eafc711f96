"""Consecutive-failure circuit breakers for the engine's data sources.

Breaker state lives in the Django cache, so every worker sharing a cache
backend sees the same open/closed state. A breaker opens once a source has
failed ``failure_threshold`` times in a row and stays open for
``cooldown_seconds``; any success closes it and clears the count.
"""

import datetime
import logging

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from core.stores.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(self, source: str, *, failure_threshold: int, cooldown_seconds: int) -> None:
        self.source = source
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_seconds = max(1, int(cooldown_seconds))
        self._opened_key = f"ballotwatch:circuit:{source}:opened_at"
        self._failures_key = f"ballotwatch:circuit:{source}:failures"

    def __repr__(self) -> str:
        return f"CircuitBreaker(source={self.source!r}, open={self.is_open()})"

    def opened_at(self) -> datetime.datetime | None:
        try:
            raw = cache.get(self._opened_key)
        except Exception:
            # Unknown state is treated as closed.
            logger.warning("Circuit breaker state unreadable source=%s", self.source)
            return None
        if not raw:
            return None
        return datetime.datetime.fromisoformat(str(raw))

    def is_open(self) -> bool:
        return self.opened_at() is not None

    def check(self) -> None:
        """Raise CircuitOpenError instead of letting the caller reach the source."""
        if self.is_open():
            raise CircuitOpenError(self.source)

    def record_failure(self) -> int:
        try:
            cache.add(self._failures_key, 0, timeout=self.cooldown_seconds)
            failures = int(cache.incr(self._failures_key))
        except Exception:
            logger.warning("Circuit breaker failure not recorded source=%s", self.source)
            return 0

        if failures >= self.failure_threshold:
            self._trip(failures)
        return failures

    def record_success(self) -> None:
        was_open = self.is_open()
        try:
            cache.delete_many([self._failures_key, self._opened_key])
        except Exception:
            logger.warning("Circuit breaker reset not recorded source=%s", self.source)
            return
        if was_open:
            self._log_transition(opened=False, failures=0)

    def _trip(self, failures: int) -> None:
        # cache.add only succeeds for the first caller, so the transition is logged once.
        try:
            tripped = cache.add(self._opened_key, timezone.now().isoformat(), timeout=self.cooldown_seconds)
        except Exception:
            logger.warning("Circuit breaker could not open source=%s", self.source)
            return
        if tripped:
            self._log_transition(opened=True, failures=failures)

    def _log_transition(self, *, opened: bool, failures: int) -> None:
        to_state = "open" if opened else "closed"
        logger.warning(
            "Circuit breaker transition source=%s to_state=%s failures=%d cooldown_seconds=%d",
            self.source,
            to_state,
            failures,
            self.cooldown_seconds,
            extra={
                "event": "ballotwatch.circuit_breaker.transition",
                "source": self.source,
                "to_state": to_state,
                "failure_count": failures,
                "cooldown_seconds": self.cooldown_seconds,
            },
        )


def member_directory_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "member_directory",
        failure_threshold=settings.MEMBER_DIRECTORY_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES,
        cooldown_seconds=settings.MEMBER_DIRECTORY_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    )


def tally_source_breaker(source: str) -> CircuitBreaker:
    return CircuitBreaker(
        f"tally.{source}",
        failure_threshold=settings.TALLY_SOURCE_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES,
        cooldown_seconds=settings.TALLY_SOURCE_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    )


__all__ = [
    "CircuitBreaker",
    "member_directory_breaker",
    "tally_source_breaker",
]
