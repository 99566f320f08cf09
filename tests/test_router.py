"""Tests for the analytics HTTP surface."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.models.analytics import FeedUpdate, RealTimeMetrics
from app.models.tenant import TenantContext
from app.routers.analytics import _sse_event, stream_realtime
from app.services.analytics.dashboard import reset_dashboard_registry
from app.services.analytics.realtime import RealTimeFeed
from app.services.analytics.store import EntityKind
from app.services.auth import verify_tenant_jwt
from app.services.rate_limiter import reset_rate_limiter
from fakes import AGENT_1, AGENT_X, FakeEventStore, conversation


@pytest.fixture
def tenant_store() -> FakeEventStore:
    store = FakeEventStore()
    recent = datetime.now(timezone.utc) - timedelta(hours=1)
    store.add("tenant-a", EntityKind.AGENTS, {"id": AGENT_1, "name": "Alpha"})
    store.add(
        "tenant-a",
        EntityKind.CONVERSATIONS,
        conversation("c1", created_at=recent),
        conversation("c2", status="active", created_at=recent),
    )
    return store


@pytest.fixture
def client(tenant_store: FakeEventStore):
    reset_rate_limiter()
    reset_dashboard_registry()
    app.dependency_overrides[verify_tenant_jwt] = lambda: TenantContext(
        tenant_id="tenant-a", user_id="user-a", store=tenant_store
    )
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
    reset_rate_limiter()
    reset_dashboard_registry()


# =============================================================================
# ROOT / HEALTH
# =============================================================================


class TestHealth:
    def test_root(self, client) -> None:
        assert client.get("/").json() == {"service": "Agent Analytics", "status": "ok"}

    def test_health(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


# =============================================================================
# DASHBOARD / TIMESERIES
# =============================================================================


class TestDashboardEndpoint:
    def test_loads_view(self, client) -> None:
        resp = client.get("/analytics/dashboard", params={"period": "24h"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["period"] == "24h"
        assert body["metrics"]["data"]["total"] == 2
        assert body["metrics"]["data"]["resolution_rate"] == 0.5
        assert body["metrics"]["error"] is None
        assert len(body["conversation_trend"]["data"]["points"]) == 24
        assert body["engagement"]["data"]["total_users"] == 2
        assert body["engagement"]["data"]["active_users"] == 1

    def test_unknown_period_is_422(self, client) -> None:
        resp = client.get("/analytics/dashboard", params={"period": "forever"})
        assert resp.status_code == 422
        assert resp.json()["error_type"] == "ConfigurationError"
        assert resp.json()["retryable"] is False

    def test_foreign_agent_is_404(self, client) -> None:
        resp = client.get("/analytics/dashboard", params={"agent": AGENT_X})
        assert resp.status_code == 404
        assert resp.json()["error_type"] == "NotFoundError"

    def test_malformed_agent_is_404(self, client, tenant_store) -> None:
        resp = client.get("/analytics/dashboard", params={"agent": "foo"})
        assert resp.status_code == 404
        assert resp.json()["error_type"] == "NotFoundError"
        assert tenant_store.calls == []

    def test_partial_failure_is_still_200(self, client, tenant_store) -> None:
        tenant_store.fail(EntityKind.CHANNEL_HEALTH)
        resp = client.get("/analytics/dashboard", params={"period": "7d"})
        assert resp.status_code == 200
        assert resp.json()["channels"]["error"]["kind"] == "UpstreamError"

    def test_timeseries(self, client) -> None:
        resp = client.get(
            "/analytics/timeseries", params={"metric": "conversations", "period": "1h"}
        )
        assert resp.status_code == 200
        assert len(resp.json()["points"]) == 60

    def test_timeseries_unknown_metric(self, client) -> None:
        resp = client.get("/analytics/timeseries", params={"metric": "revenue"})
        assert resp.status_code == 422
        assert resp.json()["error_type"] == "ValidationError"

    def test_store_failure_is_503(self, client, tenant_store) -> None:
        tenant_store.fail()
        resp = client.get("/analytics/timeseries", params={"metric": "messages"})
        assert resp.status_code == 503
        assert resp.json()["retryable"] is True


# =============================================================================
# AUTH / RATE LIMIT / ERRORS
# =============================================================================


class TestAuthAndErrors:
    def test_missing_token_is_401(self) -> None:
        app.dependency_overrides.clear()
        reset_rate_limiter()
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/analytics/display")
        assert resp.status_code == 401
        assert resp.json()["error_type"] == "AuthError"

    def test_rate_limited(self, client) -> None:
        with patch.object(settings, "dashboard_rate_limit_rpm", 2):
            assert client.get("/analytics/display").status_code == 200
            assert client.get("/analytics/display").status_code == 200
            assert client.get("/analytics/display").status_code == 429

    def test_dashboard_origin_gets_credentialed_cors(self, client) -> None:
        origin = settings.dashboard_cors_origins.split(",")[0].strip()
        resp = client.get("/analytics/display", headers={"Origin": origin})
        assert resp.headers["access-control-allow-origin"] == origin
        assert resp.headers["access-control-allow-credentials"] == "true"

        other = client.get("/analytics/display", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in other.headers

    def test_dashboard_settings_read_from_env(self, monkeypatch) -> None:
        from app.config import Settings

        monkeypatch.setenv("DASHBOARD_RATE_LIMIT_RPM", "7")
        monkeypatch.setenv("DASHBOARD_CORS_ORIGINS", "https://a.example,https://b.example")
        fresh = Settings()
        assert fresh.dashboard_rate_limit_rpm == 7
        assert fresh.dashboard_cors_origins == "https://a.example,https://b.example"

    def test_unhandled_error_is_500(self, client) -> None:
        def broken() -> TenantContext:
            raise RuntimeError("boom")

        app.dependency_overrides[verify_tenant_jwt] = broken
        resp = client.get("/analytics/display")
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Internal server error"}


# =============================================================================
# EXPORT / DISPLAY
# =============================================================================


class TestExportEndpoint:
    def test_export_before_load_is_422(self, client) -> None:
        resp = client.get("/analytics/export", params={"format": "csv"})
        assert resp.status_code == 422

    def test_export_matches_last_loaded_view(self, client) -> None:
        view = client.get("/analytics/dashboard", params={"period": "24h"}).json()
        resp = client.get("/analytics/export", params={"format": "json"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/json")
        assert "attachment" in resp.headers["content-disposition"]
        payload = json.loads(resp.content)
        assert payload["request_id"] == view["request_id"]
        assert payload["metrics"]["data"]["total"] == view["metrics"]["data"]["total"]

    def test_export_csv(self, client) -> None:
        client.get("/analytics/dashboard", params={"period": "24h"})
        resp = client.get("/analytics/export", params={"format": "csv"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "# conversation_metrics" in resp.text

    def test_unsupported_format(self, client) -> None:
        client.get("/analytics/dashboard")
        resp = client.get("/analytics/export", params={"format": "pdf"})
        assert resp.status_code == 422

    def test_display_tables(self, client) -> None:
        body = client.get("/analytics/display").json()
        assert set(body) == {"channels", "statuses", "sentiments"}
        assert set(body["channels"]["web"]) == {"label", "icon", "color"}


# =============================================================================
# REAL TIME
# =============================================================================


def _metrics() -> RealTimeMetrics:
    return RealTimeMetrics(
        active_conversations=4,
        active_users=3,
        response_time_ms=1200.0,
        system_load=0.3,
        error_rate=0.0,
        throughput=2.0,
        last_updated=datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc),
    )


class TestRealtimeEndpoints:
    def test_snapshot(self, client) -> None:
        resp = client.get("/analytics/realtime/snapshot")
        assert resp.status_code == 200
        assert resp.json()["active_conversations"] == 1

    def test_sse_event_format(self) -> None:
        update = FeedUpdate(tenant_id="tenant-a", generation=7, status="live", metrics=_metrics())
        event = _sse_event(update)
        assert event.startswith("event: live\nid: 7\ndata: ")
        assert event.endswith("\n\n")
        data = json.loads(event.split("data: ", 1)[1])
        assert data["metrics"]["active_conversations"] == 4

    @pytest.mark.asyncio
    async def test_stream_unsubscribes_on_close(self, tenant_store) -> None:
        async def snapshot(_ctx: TenantContext) -> RealTimeMetrics:
            return _metrics()

        async def no_wait(_seconds: float) -> None:
            await asyncio.sleep(0)

        feed = RealTimeFeed(snapshot, interval=1.0, sleep=no_wait)
        ctx = TenantContext(tenant_id="tenant-a", user_id="user-a", store=tenant_store)
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=True)

        response = await stream_realtime(request, ctx=ctx, feed=feed)
        assert response.media_type == "text/event-stream"
        assert feed.active_subscriptions == 1

        first = await response.body_iterator.__anext__()
        assert first.startswith("event: live")

        await response.body_iterator.aclose()
        assert feed.active_subscriptions == 0
