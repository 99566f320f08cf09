"""
Time Window Resolver — symbolic period → absolute [start, end) + bucketing.

The period table is the only place granularity is decided. Resolve once per
dashboard load and pass the DateRange to every component; never re-resolve
downstream (end = "now" would drift between the aggregator and the series).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from app.config import settings
from app.models.analytics import DateRange, Granularity
from app.services.analytics.errors import ConfigurationError

logger = logging.getLogger(__name__)


class PeriodSpec(NamedTuple):
    lookback: timedelta
    granularity: Granularity
    points: int
    label_format: str


PERIODS: dict[str, PeriodSpec] = {
    "1h": PeriodSpec(timedelta(hours=1), "minute", 60, "%H:%M"),
    "24h": PeriodSpec(timedelta(hours=24), "hour", 24, "%H:%M"),
    "7d": PeriodSpec(timedelta(days=7), "day", 7, "%b %d"),
    "30d": PeriodSpec(timedelta(days=30), "day", 30, "%b %d"),
    "90d": PeriodSpec(timedelta(days=90), "day", 90, "%b %d"),
}


def register_period(
    token: str,
    lookback: timedelta,
    granularity: Granularity,
    points: int,
    label_format: str,
) -> None:
    """Add or replace a period in the table."""
    if lookback <= timedelta(0) or points < 1:
        raise ConfigurationError(f"Invalid period definition for {token!r}")
    PERIODS[token] = PeriodSpec(lookback, granularity, points, label_format)


def _lookup(period: str, allow_fallback: bool) -> tuple[str, PeriodSpec]:
    spec = PERIODS.get(period)
    if spec is not None:
        return period, spec

    if allow_fallback:
        default = settings.analytics_default_period
        logger.warning("Unknown period %r, falling back to %s", period, default)
        if default in PERIODS:
            return default, PERIODS[default]

    valid = ", ".join(PERIODS)
    raise ConfigurationError(
        f"Unknown period {period!r}. Must be one of: {valid}",
        details={"period": period},
    )


def resolve_window(
    period: str,
    *,
    now: datetime | None = None,
    allow_fallback: bool | None = None,
) -> DateRange:
    """Resolve a period token against wall-clock now (or the given instant)."""
    if allow_fallback is None:
        allow_fallback = settings.analytics_allow_period_fallback

    token, spec = _lookup(period, allow_fallback)

    end = now or datetime.now(timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    start = end - spec.lookback

    return DateRange(
        start=start,
        end=end,
        period=token,
        granularity=spec.granularity,
        points=spec.points,
        bucket_seconds=spec.lookback.total_seconds() / spec.points,
        label_format=spec.label_format,
    )


def bucket_index(ts: datetime, window: DateRange) -> int | None:
    """Bucket for ``ts``: floor((ts - start) / width), clamped to the last bucket.

    Returns None for timestamps outside [start, end].
    """
    if ts < window.start or ts > window.end:
        return None
    offset = (ts - window.start).total_seconds()
    index = int(offset // window.bucket_seconds)
    return min(max(index, 0), window.points - 1)


def bucket_starts(window: DateRange) -> list[datetime]:
    """Start instant of every bucket, ascending."""
    width = window.bucket_width
    return [window.start + width * i for i in range(window.points)]


def bucket_label(ts: datetime, window: DateRange) -> str:
    return ts.astimezone(timezone.utc).strftime(window.label_format)


def in_window(ts: datetime | None, window: DateRange | None) -> bool:
    """Half-open membership test: start <= ts < end."""
    if ts is None:
        return False
    if window is None:
        return True
    return window.start <= ts < window.end
