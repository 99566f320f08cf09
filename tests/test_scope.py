"""Tests for tenant identity checks and agent-scope verification."""

import pytest

from app.services.analytics.errors import AuthError, NotFoundError, UpstreamError
from app.services.analytics.scope import (
    AgentScope,
    ensure_agent_in_scope,
    fetch,
    normalize_agent_filter,
    require_tenant,
    resolve_agent_scope,
)
from app.services.analytics.store import EntityKind
from fakes import AGENT_1


@pytest.mark.unit
class TestScope:
    def test_require_tenant_strips(self, store) -> None:
        from app.models.tenant import TenantContext

        assert require_tenant(TenantContext(tenant_id=" t1 ", store=store)) == "t1"
        with pytest.raises(AuthError):
            require_tenant(None)

    @pytest.mark.parametrize("raw", [None, "", "  ", "all", "ALL"])
    def test_all_agent_spellings(self, raw) -> None:
        assert normalize_agent_filter(raw) is None

    @pytest.mark.asyncio
    async def test_verified_scope_passes_through(self, ctx, store) -> None:
        scope = AgentScope("tenant-a", AGENT_1)
        assert await resolve_agent_scope(ctx, scope) is scope
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_scope_from_other_tenant_is_rechecked(self, other_ctx, store) -> None:
        store.add("tenant-a", EntityKind.AGENTS, {"id": AGENT_1, "name": "Alpha"})
        with pytest.raises(NotFoundError):
            await resolve_agent_scope(other_ctx, AgentScope("tenant-a", AGENT_1))
        assert store.calls == [("tenant-b", EntityKind.AGENTS, {"agent_id": AGENT_1})]

    @pytest.mark.asyncio
    async def test_fetch_wraps_store_errors(self, ctx, store) -> None:
        store.fail(EntityKind.MESSAGES, exc=TimeoutError("slow"))
        with pytest.raises(UpstreamError) as exc_info:
            await fetch(ctx, EntityKind.MESSAGES)
        assert isinstance(exc_info.value.__cause__, TimeoutError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["foo", "agent-1", "1234", "11111111-1111"])
    async def test_malformed_agent_id_is_not_found_without_query(self, ctx, store, raw) -> None:
        with pytest.raises(NotFoundError):
            await ensure_agent_in_scope(ctx, raw)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_agent_id_is_canonicalized(self, ctx, store) -> None:
        store.add("tenant-a", EntityKind.AGENTS, {"id": AGENT_1, "name": "Alpha"})
        assert await ensure_agent_in_scope(ctx, AGENT_1.upper()) == AGENT_1
        assert store.calls == [("tenant-a", EntityKind.AGENTS, {"agent_id": AGENT_1})]
