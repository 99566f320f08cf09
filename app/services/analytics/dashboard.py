"""
Dashboard Controller — loads the full analytics view for one operator.

load(period, agent_filter):
  1. Resolve the window once and verify the agent filter once
  2. Fan out metrics, agents, channels, engagement and both trends concurrently
  3. Store failures become errored sections, everything else propagates
  4. Drop the result if a newer load started meanwhile (last request wins)
  5. Replace ``view`` in a single assignment

The live slot is owned by the real-time feed and is never touched by load().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable

from app.config import settings
from app.models.analytics import DashboardView, FeedUpdate, SectionError
from app.models.tenant import TenantContext
from app.services.analytics.aggregator import (
    compute_agent_performance,
    compute_channel_analytics,
    compute_metrics,
    compute_user_engagement,
)
from app.services.analytics.errors import UpstreamError, ValidationError
from app.services.analytics.export import ExportArtifact, export_analytics
from app.services.analytics.realtime import (
    FeedSubscription,
    RealTimeFeed,
    get_realtime_feed,
)
from app.services.analytics.scope import require_tenant, resolve_agent_scope
from app.services.analytics.timeseries import build_series
from app.services.analytics.windows import resolve_window

logger = logging.getLogger(__name__)


def _section(result: Any) -> dict[str, Any]:
    """Section payload for one fan-out result; non-store errors propagate."""
    if isinstance(result, UpstreamError):
        error = SectionError(
            kind=type(result).__name__,
            message=result.message,
            retryable=result.retryable,
        )
        return {"data": None, "error": error}
    if isinstance(result, BaseException):
        raise result
    return {"data": result, "error": None}


class DashboardController:
    """Per-operator dashboard state: the loaded view plus the live slot."""

    def __init__(self, ctx: TenantContext, *, feed: RealTimeFeed | None = None) -> None:
        require_tenant(ctx)
        self.ctx = ctx
        self.view: DashboardView | None = None
        self.live: FeedUpdate | None = None
        self._feed = feed
        self._subscription: FeedSubscription | None = None
        self._latest_request = 0

    async def load(
        self,
        period: str,
        agent_filter: str | None = None,
        *,
        now: datetime | None = None,
    ) -> DashboardView | None:
        """Load a view; returns the current view if this request was superseded."""
        self._latest_request += 1
        request_id = self._latest_request

        window = resolve_window(period, now=now)
        scope = await resolve_agent_scope(self.ctx, agent_filter)

        results = await asyncio.gather(
            compute_metrics(self.ctx, window, scope),
            compute_agent_performance(self.ctx, window, scope),
            compute_channel_analytics(self.ctx, window, scope),
            build_series(self.ctx, "conversations", window, scope),
            build_series(self.ctx, "response_time", window, scope),
            compute_user_engagement(self.ctx, window, scope),
            return_exceptions=True,
        )

        if request_id != self._latest_request:
            logger.info(
                "Dashboard: discarding stale load %d (latest=%d) for tenant %s",
                request_id, self._latest_request, self.ctx.tenant_id,
            )
            return self.view

        (
            metrics, agents, channels, conversation_trend, response_time_trend, engagement
        ) = (_section(r) for r in results)
        view = DashboardView(
            request_id=request_id,
            period=window.period,
            agent_filter=scope.agent_id,
            window=window,
            loaded_at=datetime.now(timezone.utc),
            metrics=metrics,
            agents=agents,
            channels=channels,
            conversation_trend=conversation_trend,
            response_time_trend=response_time_trend,
            engagement=engagement,
        )
        self.view = view

        failed = [
            name
            for name, section in (
                ("metrics", view.metrics),
                ("agents", view.agents),
                ("channels", view.channels),
                ("conversation_trend", view.conversation_trend),
                ("response_time_trend", view.response_time_trend),
                ("engagement", view.engagement),
            )
            if not section.ok
        ]
        if failed:
            logger.warning(
                "Dashboard: partial load for tenant %s, unavailable: %s",
                self.ctx.tenant_id, ", ".join(failed),
            )
        return view

    def apply_live_update(self, update: FeedUpdate) -> None:
        if update.tenant_id != self.ctx.tenant_id:
            logger.warning(
                "Dashboard: ignoring live update for tenant %s (controller is %s)",
                update.tenant_id, self.ctx.tenant_id,
            )
            return
        self.live = update

    @property
    def is_live(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start_live(self, subscriber_id: str | None = None) -> FeedSubscription:
        feed = self._feed or get_realtime_feed()
        if self._subscription is not None:
            await self._subscription.unsubscribe()
        self._subscription = await feed.subscribe(
            self.ctx,
            self.apply_live_update,
            subscriber_id=subscriber_id or f"dashboard:{self.ctx.user_id or 'anonymous'}",
        )
        return self._subscription

    async def stop_live(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None

    def export(self, format: str) -> ExportArtifact:
        if self.view is None:
            raise ValidationError("Nothing to export: load the dashboard first")
        return export_analytics(self.view, format)


# =============================================================================
# REGISTRY
# =============================================================================


class DashboardRegistry:
    """Controllers keyed by (tenant_id, user_id), least recently used first.

    Entries idle for longer than ``ttl_seconds`` are dropped on the next
    ``get()``, and the oldest entries go once there are more than
    ``max_entries``. Controllers with a live subscription are never evicted;
    ``stop_live()`` makes them eligible again.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.dashboard_registry_ttl_seconds
        )
        self.max_entries = (
            max_entries if max_entries is not None else settings.dashboard_registry_max_entries
        )
        self._clock = clock
        self._controllers: OrderedDict[tuple[str, str], DashboardController] = OrderedDict()
        self._last_used: dict[tuple[str, str], float] = {}

    def get(self, ctx: TenantContext) -> DashboardController:
        tenant_id = require_tenant(ctx)
        key = (tenant_id, ctx.user_id or "")
        now = self._clock()
        self._evict_idle(now)

        controller = self._controllers.get(key)
        if controller is None:
            controller = DashboardController(ctx)
            self._controllers[key] = controller
        else:
            # Tokens rotate; keep the freshest context (and its store handle)
            controller.ctx = ctx
            self._controllers.move_to_end(key)
        self._last_used[key] = now

        self._evict_overflow(keep=key)
        return controller

    def _evict_idle(self, now: float) -> None:
        for key, controller in list(self._controllers.items()):
            if now - self._last_used[key] < self.ttl_seconds:
                break
            if not controller.is_live:
                self._drop(key, "idle")

    def _evict_overflow(self, keep: tuple[str, str]) -> None:
        for key, controller in list(self._controllers.items()):
            if len(self._controllers) <= self.max_entries:
                return
            if key != keep and not controller.is_live:
                self._drop(key, "capacity")

    def _drop(self, key: tuple[str, str], reason: str) -> None:
        del self._controllers[key]
        del self._last_used[key]
        logger.info("Dashboard: evicted controller %s/%s (%s)", key[0], key[1], reason)

    def __len__(self) -> int:
        return len(self._controllers)

    def __contains__(self, key: object) -> bool:
        return key in self._controllers

    async def close(self) -> None:
        for controller in self._controllers.values():
            await controller.stop_live()
        self._controllers.clear()
        self._last_used.clear()


_registry: DashboardRegistry | None = None


def get_dashboard_registry() -> DashboardRegistry:
    global _registry
    if _registry is None:
        _registry = DashboardRegistry()
    return _registry


def get_dashboard(ctx: TenantContext) -> DashboardController:
    """Controller for the caller's (tenant, user) pair."""
    return get_dashboard_registry().get(ctx)


def reset_dashboard_registry() -> None:
    """Reset the registry (for testing)."""
    global _registry
    _registry = None
