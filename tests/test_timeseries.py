"""
Tests for the time-series builder.

Covers: fixed cardinality, reconciliation with the summary, missing-data
policy, distinct users, unknown metrics.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.services.analytics.aggregator import compute_metrics
from app.services.analytics.errors import NotFoundError, ValidationError
from app.services.analytics.store import EntityKind
from app.services.analytics.timeseries import METRICS, bucket_samples, build_series
from app.services.analytics.windows import resolve_window
from fakes import AGENT_X, NOW, conversation, message


@pytest.mark.unit
class TestBuildSeries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("period,points", [("1h", 60), ("24h", 24), ("7d", 7), ("30d", 30)])
    async def test_cardinality_matches_period(self, ctx, period, points) -> None:
        series = await build_series(ctx, "conversations", resolve_window(period, now=NOW))
        assert len(series.points) == points
        assert series.period == period

    @pytest.mark.asyncio
    async def test_conversation_series_sums_to_total(self, ctx, store) -> None:
        store.add(
            "tenant-a",
            EntityKind.CONVERSATIONS,
            *(
                conversation(f"c{i}", created_at=NOW - timedelta(hours=i * 7, minutes=1))
                for i in range(20)
            ),
        )
        window = resolve_window("7d", now=NOW)
        series = await build_series(ctx, "conversations", window)
        metrics = await compute_metrics(ctx, window)
        assert sum(p.value for p in series.points) == metrics.total
        assert metrics.total == 20

    @pytest.mark.asyncio
    async def test_count_metric_reports_zero_for_empty_buckets(self, ctx) -> None:
        series = await build_series(ctx, "messages", resolve_window("24h", now=NOW))
        assert all(p.value == 0 for p in series.points)

    @pytest.mark.asyncio
    async def test_mean_metric_reports_none_for_empty_buckets(self, ctx, store) -> None:
        t = NOW - timedelta(minutes=30)
        store.add(
            "tenant-a",
            EntityKind.MESSAGES,
            message("m1", "c1", "user", t),
            message("m2", "c1", "assistant", t + timedelta(seconds=2)),
        )
        series = await build_series(ctx, "response_time", resolve_window("24h", now=NOW))
        values = [p.value for p in series.points]
        assert values[-1] == 2000.0
        assert values[:-1] == [None] * 23

    @pytest.mark.asyncio
    async def test_users_are_distinct_per_bucket(self, ctx, store) -> None:
        t = NOW - timedelta(minutes=10)
        store.add(
            "tenant-a",
            EntityKind.MESSAGES,
            message("m1", "c1", "user", t, customer_id="u1"),
            message("m2", "c1", "user", t, customer_id="u1"),
            message("m3", "c2", "user", t, customer_id="u2"),
            message("m4", "c2", "assistant", t),
        )
        series = await build_series(ctx, "users", resolve_window("1h", now=NOW))
        assert sum(p.value for p in series.points) == 2

    @pytest.mark.asyncio
    async def test_non_numeric_satisfaction_is_skipped(self, ctx, store) -> None:
        t = NOW - timedelta(minutes=30)
        store.add(
            "tenant-a",
            EntityKind.CONVERSATIONS,
            conversation("c1", created_at=t, satisfaction_score="n/a"),
            conversation("c2", created_at=t, satisfaction_score={"stars": 4}),
            conversation("c3", created_at=t, satisfaction_score="4.5"),
            conversation("c4", created_at=t, satisfaction_score=3),
        )
        series = await build_series(ctx, "satisfaction", resolve_window("24h", now=NOW))
        assert series.points[-1].value == 3.75
        assert [p.value for p in series.points[:-1]] == [None] * 23

    @pytest.mark.asyncio
    async def test_labels_match_granularity(self, ctx) -> None:
        series = await build_series(ctx, "conversations", resolve_window("24h", now=NOW))
        assert series.granularity == "hour"
        assert series.points[0].label == "12:00"
        assert series.points[-1].label == "11:00"

    @pytest.mark.asyncio
    async def test_unknown_metric(self, ctx, store) -> None:
        with pytest.raises(ValidationError):
            await build_series(ctx, "revenue", resolve_window("7d", now=NOW))
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_foreign_agent(self, ctx, store) -> None:
        with pytest.raises(NotFoundError):
            await build_series(ctx, "messages", resolve_window("7d", now=NOW), AGENT_X)
        assert store.kinds_queried() == [EntityKind.AGENTS]


@pytest.mark.unit
class TestBucketSamples:
    def test_every_metric_is_registered(self) -> None:
        assert set(METRICS) == {
            "conversations", "messages", "users", "response_time", "satisfaction",
        }

    def test_mean_rounds_to_two_places(self) -> None:
        window = resolve_window("1h", now=NOW)
        t = NOW - timedelta(seconds=30)
        values = bucket_samples([(t, 1.0, None), (t, 2.0, None), (t, 2.0, None)], window, "mean")
        assert values[-1] == 1.67

    def test_samples_outside_window_dropped(self) -> None:
        window = resolve_window("1h", now=NOW)
        values = bucket_samples([(NOW - timedelta(hours=2), 1.0, None)], window, "count")
        assert sum(values) == 0
