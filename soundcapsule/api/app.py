import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from soundcapsule.api.routes import analytics, analytics_stream, export, playback
from soundcapsule.app_settings import STORE_POSTGRES, load_analytics_settings
from soundcapsule.db import connection as db_connection
from soundcapsule.services.analytics_service import get_analytics_service
from soundcapsule.services.data_retention import get_retention_service

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Sound Capsule API",
    description="Listening analytics for the Purrytify music player",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(playback.router, prefix="/api/play", tags=["playback"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["analytics"])
app.include_router(analytics_stream.router, prefix="/api/analytics/stream", tags=["analytics-stream"])
app.include_router(export.router, prefix="/api/export", tags=["export"])


@app.on_event("startup")
async def ensure_schema() -> None:
    settings = load_analytics_settings()
    if settings.store_backend != STORE_POSTGRES or not db_connection.database_url():
        return
    from soundcapsule.db import migrate

    applied = migrate.apply_pending(verbose=False)
    if applied:
        logger.info(f"Applied migrations: {', '.join(applied)}")


@app.on_event("startup")
async def start_background_services() -> None:
    retention = get_retention_service()
    retention.start()


@app.on_event("shutdown")
async def shutdown_services() -> None:
    """Flush open listening sessions, stop cleanup and close the pool."""
    get_analytics_service().shutdown()
    get_retention_service().stop()
    db_connection.close_pool()


@app.get("/")
async def root():
    return {"message": "Sound Capsule API", "version": "1.0.0"}


@app.get("/health")
async def health():
    """Health check with store backend, database reachability and pool stats."""
    try:
        settings = load_analytics_settings()
        status = {
            "status": "healthy",
            "store": settings.store_backend,
            "timezone": settings.timezone,
            "pool": db_connection.get_pool_stats(),
            "retention": get_retention_service().get_status(),
        }
        if settings.store_backend == STORE_POSTGRES and db_connection.database_url():
            status["database"] = db_connection.ping()
            if not status["database"]:
                status["status"] = "degraded"
        return status
    except Exception as e:
        return {
            "status": "degraded",
            "error": str(e),
        }
