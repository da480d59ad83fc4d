"""FastAPI application entrypoint and router wiring."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi_pagination import add_pagination

from incidentdesk.api.audit import router as audit_router
from incidentdesk.api.auth import router as auth_router
from incidentdesk.api.incidents import router as incidents_router
from incidentdesk.api.organizations import router as organizations_router
from incidentdesk.api.permissions import router as permissions_router
from incidentdesk.api.users import router as users_router
from incidentdesk.core.config import settings
from incidentdesk.core.error_handling import REQUEST_ID_HEADER, install_error_handling
from incidentdesk.core.logging import configure_logging, get_logger
from incidentdesk.db.session import init_db
from incidentdesk.schemas.errors import ErrorResponse
from incidentdesk.schemas.health import HealthStatusResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)

OPENAPI_TAGS = [
    {"name": "auth", "description": "Caller identity, capabilities, and effective permissions."},
    {"name": "health", "description": "Liveness and readiness probes."},
    {
        "name": "incidents",
        "description": "Incident reporting plus the guarded status, visibility, and impact changes.",
    },
    {"name": "audit", "description": "Append-only audit trail queries and CSV export."},
    {"name": "users", "description": "Principal role, activation, and permission overrides."},
    {"name": "organizations", "description": "Organization permission maps."},
    {"name": "permissions", "description": "Client-reported permission change log."},
]

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Initialize application resources before serving requests."""
    logger.info(
        "app.lifecycle.starting",
        extra={"environment": settings.environment, "db_auto_migrate": settings.db_auto_migrate},
    )
    await init_db()
    logger.info("app.lifecycle.started")
    try:
        yield
    finally:
        logger.info("app.lifecycle.stopped")


app = FastAPI(
    title="IncidentDesk API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    logger.info("app.cors.enabled", extra={"origins_count": len(origins)})
else:
    logger.info("app.cors.disabled")

install_error_handling(app)


@app.get("/health", tags=["health"], response_model=HealthStatusResponse)
def health() -> HealthStatusResponse:
    """Lightweight liveness probe."""
    return HealthStatusResponse(ok=True)


@app.get("/healthz", tags=["health"], response_model=HealthStatusResponse)
def healthz() -> HealthStatusResponse:
    """Alias liveness probe for platform compatibility."""
    return HealthStatusResponse(ok=True)


@app.get("/readyz", tags=["health"], response_model=HealthStatusResponse)
def readyz() -> HealthStatusResponse:
    return HealthStatusResponse(ok=True)


api_v1 = APIRouter(prefix="/api/v1", responses=_ERROR_RESPONSES)
api_v1.include_router(auth_router)
api_v1.include_router(incidents_router)
api_v1.include_router(audit_router)
api_v1.include_router(users_router)
api_v1.include_router(organizations_router)
api_v1.include_router(permissions_router)
app.include_router(api_v1)

add_pagination(app)
logger.debug("app.routes.registered", extra={"count": len(app.routes)})
