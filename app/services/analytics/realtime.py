"""
Real-Time Feed — live metrics pushed to subscribers on a fixed cadence.

Cadence model: timer-driven. A snapshot is delivered immediately on
subscribe and then every ``realtime_interval_seconds``. Worst-case staleness
is one interval plus the retry backoff.

Each subscription is its own asyncio task computing snapshots with the
subscriber's TenantContext, so tenants never share a snapshot. The task checks
the subscription's cancelled flag right before every delivery, and
``unsubscribe()`` sets that flag then cancels and awaits the task. Once it
returns, no further callback can run.

Store failures are retried with exponential backoff (tenacity). When retries
run out the subscriber gets a FeedUpdate with status="degraded"; the loop
keeps its cadence and goes back to "live" once the store recovers. Non-retryable
errors and unexpected exceptions deliver one "degraded" update and end the loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.models.analytics import DateRange, FeedUpdate, RealTimeMetrics
from app.models.tenant import TenantContext
from app.services.analytics.aggregator import iter_responses, mean, ratio
from app.services.analytics.errors import AnalyticsError, UpstreamError
from app.services.analytics.scope import fetch, require_tenant
from app.services.analytics.store import EntityKind

logger = logging.getLogger(__name__)

SnapshotFn = Callable[[TenantContext], Awaitable[RealTimeMetrics]]
UpdateCallback = Callable[[FeedUpdate], "Awaitable[None] | None"]
SleepFn = Callable[[float], Awaitable[None]]


# =============================================================================
# SNAPSHOT
# =============================================================================


async def compute_realtime_snapshot(
    ctx: TenantContext,
    *,
    now: datetime | None = None,
    lookback_seconds: int | None = None,
) -> RealTimeMetrics:
    """Current live metrics for one tenant over the trailing lookback."""
    require_tenant(ctx)
    now = now or datetime.now(timezone.utc)
    lookback = lookback_seconds or settings.realtime_lookback_seconds
    window = DateRange(
        start=now - timedelta(seconds=lookback),
        end=now,
        period="live",
        granularity="minute",
        points=1,
        bucket_seconds=float(lookback),
    )

    active, messages, health = await asyncio.gather(
        fetch(ctx, EntityKind.CONVERSATIONS, {"status": "active"}, None),
        fetch(ctx, EntityKind.MESSAGES, {}, window),
        fetch(ctx, EntityKind.AGENT_HEALTH, {}, window),
    )

    users = {
        str(m.get("customer_id") or f"anon:{m.get('conversation_id')}")
        for m in messages
        if m.get("role") == "user"
    }
    latency = mean(latency for _, _, latency in iter_responses(messages))
    load = mean(float(h["cpu_usage"]) for h in health if h.get("cpu_usage") is not None)
    failed = sum(1 for m in messages if m.get("failed"))

    return RealTimeMetrics(
        active_conversations=len(active),
        active_users=len(users),
        response_time_ms=None if latency is None else round(latency, 1),
        system_load=None if load is None else round(load, 4),
        error_rate=ratio(failed, len(messages)),
        throughput=round(len(messages) / (lookback / 60.0), 2),
        last_updated=now,
    )


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================


class FeedSubscription:
    """Handle returned by RealTimeFeed.subscribe()."""

    def __init__(
        self,
        tenant_id: str,
        subscriber_id: str,
        on_close: Callable[[FeedSubscription], None] | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.subscriber_id = subscriber_id
        self.generation = 0
        self._cancelled = False
        self._task: asyncio.Task[None] | None = None
        self._on_close = on_close

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not self._cancelled and self._task is not None and not self._task.done()

    async def unsubscribe(self) -> None:
        """Stop deliveries. No callback runs after this returns."""
        self._cancelled = True
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None

        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


class RealTimeFeed:
    """Per-subscriber live metrics loops, multiplexed across tenants."""

    def __init__(
        self,
        snapshot: SnapshotFn | None = None,
        *,
        interval: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._snapshot = snapshot or compute_realtime_snapshot
        self.interval = interval if interval is not None else settings.realtime_interval_seconds
        self.max_retries = (
            max_retries if max_retries is not None else settings.realtime_max_retries
        )
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.realtime_backoff_base_seconds
        )
        self.backoff_max = (
            backoff_max if backoff_max is not None else settings.realtime_backoff_max_seconds
        )
        self._sleep = sleep
        self._subscriptions: dict[tuple[str, str], FeedSubscription] = {}

    @property
    def active_subscriptions(self) -> int:
        return sum(1 for s in self._subscriptions.values() if s.active)

    async def subscribe(
        self,
        ctx: TenantContext,
        on_update: UpdateCallback,
        *,
        subscriber_id: str = "default",
    ) -> FeedSubscription:
        """Start pushing FeedUpdates for ``ctx`` to ``on_update``.

        An existing subscription for the same (tenant, subscriber) pair is
        cancelled first.
        """
        tenant_id = require_tenant(ctx)
        key = (tenant_id, subscriber_id)

        previous = self._subscriptions.get(key)
        if previous is not None:
            await previous.unsubscribe()

        subscription = FeedSubscription(tenant_id, subscriber_id, on_close=self._forget)
        subscription._task = asyncio.create_task(
            self._run(ctx, subscription, on_update),
            name=f"realtime:{tenant_id}:{subscriber_id}",
        )
        self._subscriptions[key] = subscription
        logger.info("Realtime: subscribed %s/%s", tenant_id, subscriber_id)
        return subscription

    async def close(self) -> None:
        """Cancel every subscription (app shutdown)."""
        subscriptions = list(self._subscriptions.values())
        await asyncio.gather(
            *(s.unsubscribe() for s in subscriptions), return_exceptions=True
        )
        self._subscriptions.clear()

    def _forget(self, subscription: FeedSubscription) -> None:
        key = (subscription.tenant_id, subscription.subscriber_id)
        if self._subscriptions.get(key) is subscription:
            del self._subscriptions[key]
        logger.info("Realtime: unsubscribed %s/%s", *key)

    async def _fetch(self, ctx: TenantContext) -> RealTimeMetrics:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(UpstreamError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                metrics = await self._snapshot(ctx)
        return metrics

    async def _run(
        self,
        ctx: TenantContext,
        subscription: FeedSubscription,
        on_update: UpdateCallback,
    ) -> None:
        fatal = False
        while not subscription.cancelled:
            try:
                metrics = await self._fetch(ctx)
                update = FeedUpdate(
                    tenant_id=subscription.tenant_id,
                    generation=subscription.generation + 1,
                    status="live",
                    metrics=metrics,
                )
            except AnalyticsError as e:
                fatal = not e.retryable
                logger.warning(
                    "Realtime: feed degraded for %s: %s", subscription.tenant_id, e.message
                )
                update = FeedUpdate(
                    tenant_id=subscription.tenant_id,
                    generation=subscription.generation + 1,
                    status="degraded",
                    error=e.message,
                )
            except Exception:
                fatal = True
                logger.exception("Realtime: snapshot crashed for %s", subscription.tenant_id)
                update = FeedUpdate(
                    tenant_id=subscription.tenant_id,
                    generation=subscription.generation + 1,
                    status="degraded",
                    error="Internal error computing live metrics",
                )

            # Same task that delivers checks the flag, so unsubscribe() wins
            if subscription.cancelled:
                return
            subscription.generation = update.generation
            await self._deliver(on_update, update)

            if fatal:
                logger.error("Realtime: stopping feed for %s", subscription.tenant_id)
                return
            await self._sleep(self.interval)

    async def _deliver(self, on_update: UpdateCallback, update: FeedUpdate) -> None:
        try:
            result = on_update(update)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Realtime: subscriber callback failed (%s)", update.tenant_id)


# Singleton
_feed: RealTimeFeed | None = None


def get_realtime_feed() -> RealTimeFeed:
    """Get or create the process-wide feed."""
    global _feed
    if _feed is None:
        _feed = RealTimeFeed()
    return _feed


async def close_realtime_feed() -> None:
    """Cancel all subscriptions and drop the singleton (call on shutdown)."""
    global _feed
    if _feed is not None:
        await _feed.close()
        _feed = None
