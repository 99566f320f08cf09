"""
Event Store — read boundary between the analytics core and the database.

The core only ever calls ``query(tenant_id, kind, filter, window)`` and gets
back normalised row dicts. SupabaseEventStore maps each entity kind onto the
PostgREST tables, scoping every query by tenant (``user_id`` on the owning
table, through ``!inner`` joins for child tables).

Source columns stored as 0–100 percentages are normalised to 0–1 here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Protocol

from app.config import settings
from app.models.analytics import DateRange
from app.models.enums import Sentiment
from app.services.analytics.errors import UpstreamError

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class EntityKind(str, Enum):
    AGENTS = "agents"
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    AGENT_HEALTH = "agent_health"
    CHANNEL_HEALTH = "channel_health"


class EventStore(Protocol):
    """Abstract read capability consumed by the aggregator and series builder."""

    async def query(
        self,
        tenant_id: str,
        kind: EntityKind,
        filter: dict[str, Any],
        window: DateRange | None,
    ) -> list[Row]: ...


# =============================================================================
# ROW HELPERS
# =============================================================================


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _fraction(value: Any) -> float | None:
    """0–100 percentage column → clamped 0–1 fraction."""
    if value is None:
        return None
    try:
        pct = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(pct / 100.0, 0.0), 1.0)


def _metadata(row: Row) -> dict[str, Any]:
    meta = row.get("metadata")
    return meta if isinstance(meta, dict) else {}


def _sentiment(meta: dict[str, Any]) -> str | None:
    """Stored label, else bucket a numeric sentiment_score."""
    if meta.get("sentiment"):
        return str(meta["sentiment"])
    score = meta.get("sentiment_score")
    if score is None:
        return None
    try:
        return Sentiment.from_score(float(score)).value
    except (TypeError, ValueError):
        return None


def _conversation_row(row: Row) -> Row:
    meta = _metadata(row)
    return {
        "id": row["id"],
        "agent_id": row.get("agent_id"),
        "channel": row.get("channel"),
        "status": row.get("status"),
        "escalation_requested": bool(row.get("escalation_requested")),
        "satisfaction_score": row.get("satisfaction_score"),
        "resolution_time": row.get("resolution_time"),
        "customer_id": row.get("customer_id"),
        "intent": meta.get("intent"),
        "sentiment": _sentiment(meta),
        "created_at": row.get("created_at"),
        "ended_at": meta.get("ended_at"),
    }


def _message_row(row: Row) -> Row:
    meta = _metadata(row)
    conv = row.get("conversations") or {}
    return {
        "id": row["id"],
        "conversation_id": row.get("conversation_id"),
        "role": row.get("role"),
        "created_at": row.get("created_at"),
        "failed": meta.get("status") == "failed" or bool(meta.get("error")),
        "agent_id": conv.get("agent_id"),
        "channel": conv.get("channel"),
        "customer_id": conv.get("customer_id"),
    }


def _agent_health_row(row: Row) -> Row:
    deployment = row.get("agent_deployments") or {}
    return {
        "agent_id": deployment.get("agent_id"),
        "timestamp": row.get("timestamp"),
        "uptime": _fraction(row.get("uptime")),
        "error_rate": _fraction(row.get("error_rate")),
        "cpu_usage": _fraction(row.get("cpu_usage")),
    }


def _channel_health_row(row: Row) -> Row:
    config = row.get("channel_configs") or {}
    return {
        "channel": config.get("type"),
        "date": row.get("date"),
        "uptime": _fraction(row.get("uptime_percentage")),
    }


# =============================================================================
# SUPABASE ADAPTER
# =============================================================================


class SupabaseEventStore:
    """EventStore backed by the Supabase async client."""

    def __init__(self, client: Any, page_size: int | None = None) -> None:
        self._client = client
        self._page_size = page_size or settings.analytics_page_size

    async def query(
        self,
        tenant_id: str,
        kind: EntityKind,
        filter: dict[str, Any],
        window: DateRange | None,
    ) -> list[Row]:
        builders: dict[EntityKind, Callable[[], Any]] = {
            EntityKind.AGENTS: lambda: self._agents(tenant_id, filter),
            EntityKind.CONVERSATIONS: lambda: self._conversations(tenant_id, filter, window),
            EntityKind.MESSAGES: lambda: self._messages(tenant_id, filter, window),
            EntityKind.AGENT_HEALTH: lambda: self._agent_health(tenant_id, filter, window),
            EntityKind.CHANNEL_HEALTH: lambda: self._channel_health(tenant_id, window),
        }
        normalisers: dict[EntityKind, Callable[[Row], Row]] = {
            EntityKind.AGENTS: lambda r: r,
            EntityKind.CONVERSATIONS: _conversation_row,
            EntityKind.MESSAGES: _message_row,
            EntityKind.AGENT_HEALTH: _agent_health_row,
            EntityKind.CHANNEL_HEALTH: _channel_health_row,
        }

        try:
            rows = await self._fetch_all(builders[kind])
        except Exception as e:
            logger.exception("Event store query failed (%s, tenant=%s)", kind.value, tenant_id)
            raise UpstreamError(
                f"Failed to query {kind.value}", details={"kind": kind.value}
            ) from e

        return [normalisers[kind](r) for r in rows]

    async def _fetch_all(self, build: Callable[[], Any]) -> list[Row]:
        """Page through a query with .range() until a short page comes back."""
        rows: list[Row] = []
        offset = 0
        while True:
            result = await build().range(offset, offset + self._page_size - 1).execute()
            batch: list[Row] = result.data or []
            rows.extend(batch)
            if len(batch) < self._page_size:
                return rows
            offset += self._page_size

    # ── Per-kind query builders ────────────────────────────────────

    def _agents(self, tenant_id: str, filter: dict[str, Any]) -> Any:
        query = (
            self._client.table("agents")
            .select("id, name, status, last_active")
            .eq("user_id", tenant_id)
        )
        if filter.get("agent_id"):
            query = query.eq("id", filter["agent_id"])
        return query.order("name")

    def _conversations(
        self, tenant_id: str, filter: dict[str, Any], window: DateRange | None
    ) -> Any:
        query = (
            self._client.table("conversations")
            .select(
                "id, agent_id, channel, status, escalation_requested, "
                "satisfaction_score, resolution_time, customer_id, metadata, created_at"
            )
            .eq("user_id", tenant_id)
        )
        if filter.get("agent_id"):
            query = query.eq("agent_id", filter["agent_id"])
        if filter.get("status"):
            query = query.eq("status", filter["status"])
        if window is not None:
            query = query.gte("created_at", window.start.isoformat()).lt(
                "created_at", window.end.isoformat()
            )
        return query.order("created_at")

    def _messages(
        self, tenant_id: str, filter: dict[str, Any], window: DateRange | None
    ) -> Any:
        query = (
            self._client.table("messages")
            .select(
                "id, conversation_id, role, created_at, metadata, "
                "conversations!inner(user_id, agent_id, channel, customer_id)"
            )
            .eq("conversations.user_id", tenant_id)
        )
        if filter.get("agent_id"):
            query = query.eq("conversations.agent_id", filter["agent_id"])
        if window is not None:
            query = query.gte("created_at", window.start.isoformat()).lt(
                "created_at", window.end.isoformat()
            )
        return query.order("created_at")

    def _agent_health(
        self, tenant_id: str, filter: dict[str, Any], window: DateRange | None
    ) -> Any:
        query = (
            self._client.table("deployment_metrics")
            .select(
                "timestamp, uptime, error_rate, cpu_usage, "
                "agent_deployments!inner(agent_id, user_id)"
            )
            .eq("agent_deployments.user_id", tenant_id)
        )
        if filter.get("agent_id"):
            query = query.eq("agent_deployments.agent_id", filter["agent_id"])
        if window is not None:
            query = query.gte("timestamp", window.start.isoformat()).lt(
                "timestamp", window.end.isoformat()
            )
        return query.order("timestamp")

    def _channel_health(self, tenant_id: str, window: DateRange | None) -> Any:
        query = (
            self._client.table("channel_analytics")
            .select("date, uptime_percentage, channel_configs!inner(type, user_id)")
            .eq("channel_configs.user_id", tenant_id)
        )
        if window is not None:
            query = query.gte("date", window.start.date().isoformat()).lte(
                "date", window.end.date().isoformat()
            )
        return query.order("date")
