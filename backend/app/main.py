"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 4000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.container import ServiceContainer, build_container

# ── API routers ──
from backend.app.api.v1.reports import router as reports_router
from backend.app.api.v1.comments import router as comments_router
from backend.app.api.v1.verification import router as verification_router
from backend.app.api.v1.jobs import router as jobs_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services, start the radius job; stop it and release resources on exit."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    container: Optional[ServiceContainer] = getattr(app.state, "container", None)
    owned = container is None
    if container is None:
        container = build_container(settings)
        app.state.container = container

    await container.init_storage()
    if container.settings.RADIUS_JOB_ENABLED:
        await container.engine.start()

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    if owned:
        await container.aclose()
    else:
        await container.engine.stop(wait=True)


# ── Create application ──

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI app. A pre-built container (tests) is used as-is;
    otherwise the lifespan builds one from settings.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Community safety reporting backend. "
            "Accepts missing-person and incident reports, alerts verified "
            "responders when a report is filed, widens each active report's "
            "alert radius on an hourly schedule, and fans notifications out "
            "over SMS, email and push."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(reports_router)
    app.include_router(comments_router)
    app.include_router(verification_router)
    app.include_router(jobs_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "reports",
                "comments",
                "verification",
                "radius-expansion",
                "notifications",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health check across all subsystems."""
        report = await run_health_check(app.state.container)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness check — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness check — can we serve traffic?"""
        report = await run_health_check(app.state.container)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
