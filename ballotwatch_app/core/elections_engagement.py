from __future__ import annotations

import datetime
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone


@dataclass(frozen=True)
class EngagementSlot:
    hour: int
    cumulative_votes: int

    @property
    def slot(self) -> str:
        return f"{self.hour:02d}:00"

    def as_dict(self) -> dict[str, object]:
        return {"slot": self.slot, "cumulative_votes": self.cumulative_votes}


def _local_hour(ts: datetime.datetime, tz: datetime.tzinfo | None) -> int:
    if timezone.is_naive(ts):
        # Naive timestamps are already in local time.
        return ts.hour
    return timezone.localtime(ts, tz).hour


def build_engagement_curve(
    timestamps: Iterable[datetime.datetime],
    *,
    first_hour: int | None = None,
    last_hour: int | None = None,
    tz_name: str | None = None,
) -> list[EngagementSlot]:
    """Left-cumulative hourly curve.

    Each slot ``h`` counts the timestamps whose local hour is strictly below
    ``h``. The curve is non-decreasing and an empty input yields all zeros.
    Whether the curve is meaningful for a contest's status is the caller's call.
    """
    first = settings.ENGAGEMENT_CURVE_FIRST_HOUR if first_hour is None else first_hour
    last = settings.ENGAGEMENT_CURVE_LAST_HOUR if last_hour is None else last_hour
    if not (0 <= first <= last <= 23):
        raise ValueError(f"invalid curve window {first}..{last}")

    tz = ZoneInfo(tz_name) if tz_name else None
    per_hour = Counter(_local_hour(ts, tz) for ts in timestamps)

    slots: list[EngagementSlot] = []
    running = sum(n for hour, n in per_hour.items() if hour < first)
    for hour in range(first, last + 1):
        slots.append(EngagementSlot(hour=hour, cumulative_votes=running))
        running += per_hour.get(hour, 0)
    return slots
