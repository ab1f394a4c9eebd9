"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.routes import bookings
from booking.workers.background_tasks import get_background_runner
from database.connection import get_async_session, init_db
from shared.config import get_settings
from shared.logging_config import configure_logging

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Therapy Booking API",
    version="1.0.0",
)

settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(bookings.router, tags=["bookings"])


@app.on_event("startup")
async def startup_create_tables():
    """Create missing tables (no-op when the schema already exists)."""
    await init_db()
    logger.info("Database schema ready")


@app.on_event("shutdown")
async def shutdown_drain_background_tasks():
    """Give in-flight notifications and package updates a chance to finish."""
    runner = get_background_runner()
    logger.info(f"Draining {runner.pending} background task(s) before shutdown")
    await runner.drain(timeout=30.0)


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Returns:
        200 OK if the database answers
        503 Service Unavailable otherwise
    """
    health_status = {"status": "healthy", "database": "unknown"}
    status_code = 200

    try:
        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))
            health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Therapy Booking API - Use /health for health checks"}
