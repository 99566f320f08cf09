"""
Analytics Scope — tenant identity checks and agent-filter authorization.

Every read the core issues goes through ``fetch`` so it is always scoped by
the caller's tenant and always fails as an UpstreamError on store trouble.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, NamedTuple

from app.models.analytics import DateRange
from app.models.tenant import TenantContext
from app.services.analytics.errors import (
    AnalyticsError,
    AuthError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from app.services.analytics.store import EntityKind, Row

logger = logging.getLogger(__name__)

ALL_AGENTS = "all"


def require_tenant(ctx: TenantContext | None) -> str:
    """Return the tenant id or reject the call before any query."""
    if ctx is None:
        raise AuthError("Missing tenant identity")
    tenant_id = (ctx.tenant_id or "").strip()
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    return tenant_id


def normalize_agent_filter(agent_filter: str | None) -> str | None:
    """'all', '' and None all mean "every agent the tenant owns"."""
    if agent_filter is None:
        return None
    value = agent_filter.strip()
    if not value or value.lower() == ALL_AGENTS:
        return None
    return value


def agent_query_filter(agent_id: str | None) -> dict[str, Any]:
    return {"agent_id": agent_id} if agent_id else {}


async def fetch(
    ctx: TenantContext,
    kind: EntityKind,
    filter: dict[str, Any] | None = None,
    window: DateRange | None = None,
) -> list[Row]:
    """Tenant-scoped store read."""
    tenant_id = require_tenant(ctx)
    try:
        return await ctx.store.query(tenant_id, kind, filter or {}, window)
    except AnalyticsError:
        raise
    except Exception as e:
        logger.exception("Analytics: %s query failed for tenant %s", kind.value, tenant_id)
        raise UpstreamError(f"Failed to query {kind.value}") from e


class AgentScope(NamedTuple):
    """An agent filter already verified for ``tenant_id``."""

    tenant_id: str
    agent_id: str | None


async def ensure_agent_in_scope(ctx: TenantContext, agent_filter: str | None) -> str | None:
    """Resolve the agent filter, raising NotFoundError for foreign agents.

    Runs before any data query so a foreign id never reaches the data tables.
    """
    require_tenant(ctx)
    agent_id = normalize_agent_filter(agent_filter)
    if agent_id is None:
        return None

    # Agent ids are UUIDs; anything else cannot belong to the tenant
    try:
        agent_id = str(uuid.UUID(agent_id))
    except ValueError:
        logger.warning("Analytics: malformed agent id %r for tenant %s", agent_id, ctx.tenant_id)
        raise NotFoundError("Agent not found", details={"agent_id": agent_id})

    rows = await fetch(ctx, EntityKind.AGENTS, {"agent_id": agent_id})
    if not any(str(r.get("id")) == agent_id for r in rows):
        logger.warning("Analytics: agent %s not in tenant %s", agent_id, ctx.tenant_id)
        raise NotFoundError("Agent not found", details={"agent_id": agent_id})
    return agent_id


async def resolve_agent_scope(
    ctx: TenantContext, agent_filter: str | AgentScope | None
) -> AgentScope:
    """Verify a raw filter once; pass an existing AgentScope through.

    A scope verified for a different tenant is checked again.
    """
    tenant_id = require_tenant(ctx)
    if isinstance(agent_filter, AgentScope):
        if agent_filter.tenant_id == tenant_id:
            return agent_filter
        agent_filter = agent_filter.agent_id
    return AgentScope(tenant_id, await ensure_agent_in_scope(ctx, agent_filter))
