"""
Test configuration — sets required env vars before any imports.
"""

import os

# Set dummy env vars so Settings() doesn't fail during test collection.
# These are never used for real calls; the event store is faked.
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")

import pytest  # noqa: E402

from app.models.tenant import TenantContext  # noqa: E402
from fakes import FakeEventStore  # noqa: E402


@pytest.fixture
def store() -> FakeEventStore:
    return FakeEventStore()


@pytest.fixture
def ctx(store: FakeEventStore) -> TenantContext:
    return TenantContext(tenant_id="tenant-a", user_id="user-a", store=store)


@pytest.fixture
def other_ctx(store: FakeEventStore) -> TenantContext:
    return TenantContext(tenant_id="tenant-b", user_id="user-b", store=store)
