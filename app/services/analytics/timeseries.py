"""
Time-Series Builder — fixed-cardinality (label, value) series per metric.

[start, end) is split into ``window.points`` equal half-open buckets; each row
lands in exactly one bucket via ``bucket_index``. Series are recomputed from
scratch on every call.

Missing data: count metrics report 0 for empty buckets, mean metrics
(response_time, satisfaction) report None. Nothing is interpolated.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Literal, NamedTuple

from app.models.analytics import DateRange, TimeSeriesData, TimeSeriesPoint
from app.models.tenant import TenantContext
from app.services.analytics.aggregator import iter_responses
from app.services.analytics.errors import ValidationError
from app.services.analytics.scope import (
    AgentScope,
    agent_query_filter,
    fetch,
    resolve_agent_scope,
)
from app.services.analytics.store import EntityKind, Row, parse_timestamp
from app.services.analytics.windows import bucket_index, bucket_label, bucket_starts

logger = logging.getLogger(__name__)

# (bucket timestamp, sample value, distinct key or None)
Sample = tuple[datetime, float, str | None]


class SeriesMetric(NamedTuple):
    source: EntityKind
    aggregate: Literal["count", "distinct", "mean"]
    samples: Callable[[list[Row]], list[Sample]]


def _created_samples(rows: list[Row]) -> list[Sample]:
    samples: list[Sample] = []
    for row in rows:
        ts = parse_timestamp(row.get("created_at"))
        if ts is not None:
            samples.append((ts, 1.0, None))
    return samples


def _user_samples(rows: list[Row]) -> list[Sample]:
    samples: list[Sample] = []
    for row in rows:
        ts = parse_timestamp(row.get("created_at"))
        if ts is None or row.get("role") != "user":
            continue
        user = row.get("customer_id") or f"anon:{row.get('conversation_id')}"
        samples.append((ts, 1.0, str(user)))
    return samples


def _response_samples(rows: list[Row]) -> list[Sample]:
    return [(ts, latency, None) for _, ts, latency in iter_responses(rows)]


def _satisfaction_samples(rows: list[Row]) -> list[Sample]:
    samples: list[Sample] = []
    for row in rows:
        ts = parse_timestamp(row.get("created_at"))
        score = row.get("satisfaction_score")
        if ts is None or score is None:
            continue
        try:
            value = float(score)
        except (TypeError, ValueError):
            logger.debug("Series: skipping non-numeric satisfaction score %r", score)
            continue
        samples.append((ts, value, None))
    return samples


METRICS: dict[str, SeriesMetric] = {
    "conversations": SeriesMetric(EntityKind.CONVERSATIONS, "count", _created_samples),
    "messages": SeriesMetric(EntityKind.MESSAGES, "count", _created_samples),
    "users": SeriesMetric(EntityKind.MESSAGES, "distinct", _user_samples),
    "response_time": SeriesMetric(EntityKind.MESSAGES, "mean", _response_samples),
    "satisfaction": SeriesMetric(EntityKind.CONVERSATIONS, "mean", _satisfaction_samples),
}


def bucket_samples(
    samples: list[Sample],
    window: DateRange,
    aggregate: Literal["count", "distinct", "mean"],
) -> list[float | None]:
    """Fold samples into ``window.points`` bucket values."""
    sums = [0.0] * window.points
    counts = [0] * window.points
    distinct: dict[int, set[str]] = defaultdict(set)

    for ts, value, key in samples:
        index = bucket_index(ts, window)
        if index is None:
            continue
        sums[index] += value
        counts[index] += 1
        if key is not None:
            distinct[index].add(key)

    if aggregate == "count":
        return [float(c) for c in counts]
    if aggregate == "distinct":
        return [float(len(distinct[i])) for i in range(window.points)]
    return [
        round(sums[i] / counts[i], 2) if counts[i] else None
        for i in range(window.points)
    ]


def series_from_samples(
    metric: str, samples: list[Sample], window: DateRange
) -> TimeSeriesData:
    spec = METRICS[metric]
    values = bucket_samples(samples, window, spec.aggregate)
    points = [
        TimeSeriesPoint(timestamp=start, label=bucket_label(start, window), value=value)
        for start, value in zip(bucket_starts(window), values)
    ]
    return TimeSeriesData(
        metric=metric,
        period=window.period,
        granularity=window.granularity,
        points=points,
    )


async def build_series(
    ctx: TenantContext,
    metric: str,
    window: DateRange,
    agent_filter: str | AgentScope | None = None,
) -> TimeSeriesData:
    """Bucket one metric over ``window`` for the tenant."""
    spec = METRICS.get(metric)
    if spec is None:
        raise ValidationError(
            f"Unknown metric {metric!r}. Must be one of: {', '.join(METRICS)}",
            details={"metric": metric},
        )

    scope = await resolve_agent_scope(ctx, agent_filter)
    rows = await fetch(ctx, spec.source, agent_query_filter(scope.agent_id), window)

    series = series_from_samples(metric, spec.samples(rows), window)
    logger.debug(
        "Analytics: series tenant=%s metric=%s period=%s rows=%d",
        ctx.tenant_id, metric, window.period, len(rows),
    )
    return series
