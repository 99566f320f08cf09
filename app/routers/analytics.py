"""
Analytics Router — Authenticated endpoints for the analytics dashboard.

Endpoints:
  GET /analytics/dashboard            — Full view (metrics, agents, channels, trends)
  GET /analytics/timeseries           — One metric bucketed over a period
  GET /analytics/realtime/snapshot    — Current live metrics
  GET /analytics/realtime             — Server-sent events stream of FeedUpdates
  GET /analytics/export               — Last loaded view as CSV or JSON
  GET /analytics/display              — Labels/icons/colors for channels, statuses, sentiments

Analytics errors propagate to the app-level handler, which maps them to
status codes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from app.config import settings
from app.models.analytics import (
    DashboardView,
    FeedUpdate,
    RealTimeMetrics,
    TimeSeriesData,
)
from app.models.enums import display_tables
from app.models.tenant import TenantContext
from app.services.analytics.dashboard import DashboardController, get_dashboard
from app.services.analytics.realtime import (
    RealTimeFeed,
    compute_realtime_snapshot,
    get_realtime_feed,
)
from app.services.analytics.timeseries import build_series
from app.services.analytics.windows import resolve_window
from app.services.auth import verify_tenant_jwt
from app.services.rate_limiter import get_rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter()

# Seconds between disconnect checks while the SSE stream is idle
_SSE_POLL_SECONDS = 1.0


# =============================================================================
# DEPENDENCIES
# =============================================================================


async def get_tenant_context(
    ctx: TenantContext = Depends(verify_tenant_jwt),
) -> TenantContext:
    """Authenticated, rate-limited tenant context."""
    limiter = get_rate_limiter()
    if not limiter.check(ctx.tenant_id, ctx.user_id, settings.dashboard_rate_limit_rpm):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    return ctx


async def get_controller(
    ctx: TenantContext = Depends(get_tenant_context),
) -> DashboardController:
    return get_dashboard(ctx)


def get_feed() -> RealTimeFeed:
    return get_realtime_feed()


# =============================================================================
# DASHBOARD
# =============================================================================


@router.get("/dashboard")
async def get_dashboard_view(
    period: str = Query(default=settings.analytics_default_period),
    agent: str | None = Query(default=None),
    controller: DashboardController = Depends(get_controller),
) -> DashboardView:
    """Load the dashboard for ``period``, optionally narrowed to one agent."""
    view = await controller.load(period, agent)
    if view is None:
        # Superseded before any load completed
        raise HTTPException(status_code=409, detail="Request superseded by a newer load")
    return view


@router.get("/timeseries")
async def get_timeseries(
    metric: str = Query(default="conversations"),
    period: str = Query(default=settings.analytics_default_period),
    agent: str | None = Query(default=None),
    ctx: TenantContext = Depends(get_tenant_context),
) -> TimeSeriesData:
    """Bucket a single metric over the period."""
    window = resolve_window(period)
    return await build_series(ctx, metric, window, agent)


# =============================================================================
# REAL TIME
# =============================================================================


@router.get("/realtime/snapshot")
async def get_realtime_snapshot(
    ctx: TenantContext = Depends(get_tenant_context),
) -> RealTimeMetrics:
    """One-off live metrics, computed on demand."""
    return await compute_realtime_snapshot(ctx)


def _sse_event(update: FeedUpdate) -> str:
    return f"event: {update.status}\nid: {update.generation}\ndata: {update.model_dump_json()}\n\n"


@router.get("/realtime")
async def stream_realtime(
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    feed: RealTimeFeed = Depends(get_feed),
) -> StreamingResponse:
    """Stream FeedUpdates as server-sent events until the client disconnects."""
    queue: asyncio.Queue[FeedUpdate] = asyncio.Queue()
    subscription = await feed.subscribe(
        ctx, queue.put_nowait, subscriber_id=f"sse:{uuid.uuid4().hex}"
    )

    async def events() -> AsyncIterator[str]:
        try:
            while True:
                try:
                    update = await asyncio.wait_for(queue.get(), timeout=_SSE_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    continue
                yield _sse_event(update)
        finally:
            await subscription.unsubscribe()
            logger.info("Realtime: stream closed for tenant %s", ctx.tenant_id)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# EXPORT
# =============================================================================


@router.get("/export")
async def export_view(
    format: str = Query(default="csv"),
    controller: DashboardController = Depends(get_controller),
) -> Response:
    """Download the view the caller last loaded."""
    artifact = controller.export(format)
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": artifact.content_disposition},
    )


# =============================================================================
# DISPLAY
# =============================================================================


@router.get("/display")
async def get_display_tables(
    _ctx: TenantContext = Depends(get_tenant_context),
) -> dict[str, dict[str, dict[str, str]]]:
    """Display metadata for every closed enum value."""
    return display_tables()
