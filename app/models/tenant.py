"""
Tenant Context — identity + store handle threaded through every analytics call.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class TenantContext(BaseModel):
    """Authenticated tenant scope for one dashboard session.

    ``store`` is the EventStore the core reads from; it is passed explicitly
    instead of being looked up from module globals.
    """

    tenant_id: str
    user_id: str | None = None
    store: Any

    class Config:
        arbitrary_types_allowed = True
        frozen = True
