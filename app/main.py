"""
Agent Analytics — Dashboard API

FastAPI application serving tenant-scoped conversation analytics and the
real-time metrics feed at /analytics/*.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from app.config import settings
from app.routers import analytics
from app.services.analytics.errors import AnalyticsError

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


# =============================================================================
# LIFESPAN
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
    """Application lifespan handler."""
    logger.info("Starting %s in %s mode", settings.app_name, settings.environment)
    logger.info(
        "Realtime feed: every %.1fs, %d retries",
        settings.realtime_interval_seconds,
        settings.realtime_max_retries,
    )
    yield
    logger.info("Shutting down %s", settings.app_name)
    from app.services.analytics.dashboard import get_dashboard_registry
    from app.services.analytics.realtime import close_realtime_feed
    from app.services.supabase import close_supabase

    await get_dashboard_registry().close()
    await close_realtime_feed()
    await close_supabase()


# =============================================================================
# APP
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="Agent Analytics — dashboard aggregates and live metrics",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# =============================================================================
# MIDDLEWARE — Path-based CORS
# =============================================================================
# Analytics endpoints: dashboard origin only, with credentials
# Health/root: wildcard origin, no credentials


class PathBasedCORSMiddleware(BaseHTTPMiddleware):
    """Apply different CORS policies based on request path.

    /analytics/* → restricted origin (dashboard) with credentials
    Everything else → wildcard origin (uptime probes, status pages)
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.dashboard_origins = [
            o.strip() for o in settings.dashboard_cors_origins.split(",") if o.strip()
        ]

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def, override]
        origin = request.headers.get("origin", "")
        path = request.url.path

        # Handle preflight
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)

        if path.startswith("/analytics"):
            if origin in self.dashboard_origins:
                response.headers["Access-Control-Allow-Origin"] = origin
                response.headers["Access-Control-Allow-Credentials"] = "true"
                response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = (
                    "Authorization, Content-Type"
                )
                response.headers["Access-Control-Expose-Headers"] = "Content-Disposition"
                response.headers["Access-Control-Max-Age"] = "86400"
        else:
            response.headers["Access-Control-Allow-Origin"] = "*"
            response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"

        return response


app.add_middleware(PathBasedCORSMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Log all requests for debugging."""
    logger.debug("%s %s", request.method, request.url.path)
    response = await call_next(request)
    return response


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================


@app.exception_handler(AnalyticsError)
async def analytics_exception_handler(request: Request, exc: AnalyticsError) -> JSONResponse:
    """Map the analytics error taxonomy onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])


# =============================================================================
# ROOT / HEALTH
# =============================================================================


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"service": "Agent Analytics", "status": "ok"}


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check."""
    return {"status": "healthy", "service": settings.app_name}
