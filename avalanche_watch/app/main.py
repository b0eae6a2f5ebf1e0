"""
FastAPI application entry point.

Run with:
    uvicorn avalanche_watch.app.main:app --reload --port 8000

Set SCHEDULER_ENABLED=true to run bulletin sync and daily reminders
in-process; otherwise use ``avalanche-watch schedule`` or an external cron.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from avalanche_watch.app.core.config import settings
from avalanche_watch.app.core.database import close_db, init_db
from avalanche_watch.app.core.logging_config import setup_logging, get_logger
from avalanche_watch.app.core.errors import register_error_handlers
from avalanche_watch.app.core.middleware import RequestLoggingMiddleware
from avalanche_watch.app.core.health import HealthStatus, run_health_check
from avalanche_watch.app.services import shutdown_services
from avalanche_watch.app.sync.scheduler import get_scheduler

# ── API routers ──
from avalanche_watch.app.api.v1.sync import router as sync_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    if settings.is_development or settings.is_sqlite:
        init_db()
    if settings.SCHEDULER_ENABLED:
        await get_scheduler().start()
    yield
    if settings.SCHEDULER_ENABLED:
        await get_scheduler().stop()
    shutdown_services()
    close_db()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Avalanche bulletin ingestion and danger propagation. "
        "Fetches the regional avalanche bulletin, maps danger ratings "
        "onto monitored locations by warning region and elevation, "
        "detects danger level changes and notifies subscribers "
        "through push alerts and daily reminders."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (last added runs outermost) ──

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
app.include_router(sync_router)


# ── Root & health endpoints ──

PIPELINE_MODULES = (
    "bulletin-client",
    "region-resolver",
    "danger-mapper",
    "bulletin-sync",
    "alert-rules",
    "push-dispatch",
)


@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": list(PIPELINE_MODULES),
        "scheduler_enabled": settings.SCHEDULER_ENABLED,
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Database, lock backend, bulletin freshness and push configuration."""
    return (await run_health_check()).to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """503 only when the database is unreachable; stale bulletins still serve."""
    report = await run_health_check()
    status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=report.to_dict())
