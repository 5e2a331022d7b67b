"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from helpdesk_rbac.core.config import settings
from helpdesk_rbac.core.middleware import setup_middleware
from helpdesk_rbac.core.rate_limit import limiter, rate_limit_exceeded_handler
from helpdesk_rbac.core.exceptions import RBACError, to_http
from helpdesk_rbac.core.registry import build_registry

from helpdesk_rbac.api.roles import router as roles_router
from helpdesk_rbac.api.temporal import router as temporal_router
from helpdesk_rbac.api.emergency import router as emergency_router
from helpdesk_rbac.api.security import router as security_router
from helpdesk_rbac.api.audit import router as audit_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("helpdesk_rbac")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting Helpdesk RBAC API")
    if getattr(app.state, "registry", None) is None:
        app.state.registry = build_registry(settings)

    if app.state.registry.cache.health_check():
        logger.info("Redis connected")
    else:
        logger.warning("Redis not available, permission checks will hit the database")

    yield

    logger.info("Shutting down Helpdesk RBAC API")


app = FastAPI(
    title="Helpdesk RBAC API",
    description="Role hierarchy, permission resolution and break-glass access for the helpdesk",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app, settings)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(RBACError)
async def rbac_exception_handler(request: Request, exc: RBACError):
    http_exc = to_http(exc)
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
    )


# Register routers
app.include_router(roles_router, prefix="/api")
app.include_router(temporal_router, prefix="/api")
app.include_router(emergency_router, prefix="/api")
app.include_router(security_router, prefix="/api")
app.include_router(audit_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/api/health")
async def health(request: Request):
    """Quick health check endpoint."""
    registry = request.app.state.registry
    return {"status": "ok", "redis": registry.cache.health_check()}
