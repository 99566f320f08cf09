"""
Analytics Auth — tenant identity from the dashboard's Supabase session.

The dashboard sends the Supabase access token as a Bearer token. We verify it
against Supabase's JWKS endpoint (RS256/ES256, audience "authenticated"):

  {SUPABASE_URL}/auth/v1/.well-known/jwks.json

Tenant id is the ``app_metadata.tenant_id`` claim when present, otherwise the
subject. The resulting TenantContext carries the event store handle so the
analytics core never reaches for a global client.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import jwt
from fastapi import Request
from jwt import PyJWKClient

from app.config import settings
from app.models.tenant import TenantContext
from app.services.analytics.errors import AuthError
from app.services.analytics.store import SupabaseEventStore
from app.services.supabase import get_supabase_client

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JWKS client — cached singleton with 1-hour TTL
# ---------------------------------------------------------------------------

_jwks_client: PyJWKClient | None = None
_jwks_client_created_at: float = 0
_JWKS_TTL_SECONDS = 3600  # Refresh JWKS client every hour


def _get_jwks_client() -> PyJWKClient:
    """Get or create the JWKS client (cached with TTL)."""
    global _jwks_client, _jwks_client_created_at
    now = time.monotonic()

    if _jwks_client is None or (now - _jwks_client_created_at) > _JWKS_TTL_SECONDS:
        jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
        _jwks_client_created_at = now
        logger.info("JWKS client initialized: %s", jwks_url)

    return _jwks_client


# ---------------------------------------------------------------------------
# Token → claims
# ---------------------------------------------------------------------------


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthError("Missing authorization token")
    return auth_header[7:]  # Strip "Bearer "


def decode_token(token: str) -> dict[str, Any]:
    """Verify signature, expiry and audience; return the claims."""
    try:
        jwks_client = _get_jwks_client()
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        payload: dict[str, Any] = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience="authenticated",
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Analytics auth: invalid token: %s", e)
        raise AuthError("Invalid token")
    except Exception as e:
        logger.error("Analytics auth: JWKS verification failed: %s", e)
        raise AuthError("Token verification failed")
    return payload


def tenant_from_claims(payload: dict[str, Any]) -> tuple[str, str]:
    """(tenant_id, user_id) from verified claims."""
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token: no subject")

    app_metadata = payload.get("app_metadata") or {}
    tenant_id = app_metadata.get("tenant_id") if isinstance(app_metadata, dict) else None
    return str(tenant_id or user_id), str(user_id)


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------


async def verify_tenant_jwt(request: Request) -> TenantContext:
    """FastAPI dependency: verify the Supabase JWT and build the TenantContext.

    Raises AuthError (401) on missing/invalid token.
    """
    payload = decode_token(_bearer_token(request))
    tenant_id, user_id = tenant_from_claims(payload)

    client = await get_supabase_client()
    return TenantContext(
        tenant_id=tenant_id,
        user_id=user_id,
        store=SupabaseEventStore(client),
    )
