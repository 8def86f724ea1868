# parksense/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from parksense.routers import events, bay_map, occupancy, sensors, alerts, replay, tenant_settings, health
from parksense.database import create_tables
from parksense.config import settings
from parksense.errors import NotFoundError
from parksense.utils.logger import get_logger
import time
import asyncio

logger = get_logger(__name__)

app = FastAPI(
    title="ParkSense Occupancy API",
    description="IoT parking sensor ingestion, bay occupancy, sensor health and alerting.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow the operator dashboard to call the API) ─────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard origin in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth in front of the tenant-scoped endpoints.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.info(f"404 on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "entity": exc.entity, "key": exc.key},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(events.router,          prefix="/api/v1", tags=["📡 Sensor Events"])
app.include_router(bay_map.router,         prefix="/api/v1", tags=["🗺️  Bay Map"])
app.include_router(occupancy.router,       prefix="/api/v1", tags=["🅿️  Occupancy"])
app.include_router(sensors.router,         prefix="/api/v1", tags=["🩺 Sensor Health"])
app.include_router(alerts.router,          prefix="/api/v1", tags=["🔔 Alerts"])
app.include_router(replay.router,          prefix="/api/v1", tags=["⏪ Replay"])
app.include_router(tenant_settings.router, prefix="/api/v1", tags=["⚙️  Settings"])
app.include_router(health.router,          prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
_background_tasks = set()


@app.on_event("startup")
async def startup():
    logger.info("🚀 ParkSense Backend starting up...")
    create_tables()
    logger.info("✅ Database tables ready")
    logger.info(f"🌐 Listening on http://{settings.BACKEND_HOST}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")

    if settings.ALERT_SWEEP_ENABLED:
        from parksense.services.alert_sweeper import start_alert_sweeper
        task = asyncio.create_task(start_alert_sweeper(), name="alert-sweeper")
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        logger.info("🔔 Alert sweeper scheduled")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 ParkSense Backend shutting down...")
    for task in list(_background_tasks):
        task.cancel()
