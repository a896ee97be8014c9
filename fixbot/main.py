"""
Fixbot - Main Application
FastAPI Entry Point with APScheduler for Dead-Letter Replay
"""

from fastapi import FastAPI
from fastapi.responses import JSONResponse
import structlog

from fixbot.config import settings, validate_settings
from fixbot.database import init_db, close_db
from fixbot.middleware.correlation_id import CorrelationIdMiddleware, new_correlation_id
from fixbot.routers import webhook_router, admin_router
from fixbot.scheduler import start_scheduler, stop_scheduler
from fixbot.services.monitoring.error_tracking import init_sentry
from fixbot.services.monitoring.logging import configure_logging, setup_logging
from fixbot.services.runtime import build_runtime

# Structured Logging Setup
configure_logging()
setup_logging()
logger = structlog.get_logger()

# Sentry must be initialized before the app is created
init_sentry()

# FastAPI App
app = FastAPI(
    title="Fixbot",
    description="WhatsApp ticketing bot - reliable message processing core",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

# Correlation ID middleware (accepts an incoming X-Correlation-ID or generates one)
app.add_middleware(
    CorrelationIdMiddleware,
    header_name="X-Correlation-ID",
    generator=new_correlation_id,
    validator=None,
)

app.state.runtime = None
app.state.scheduler = None

# Register routers
app.include_router(webhook_router)
app.include_router(admin_router)


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    logger.info("startup", environment=settings.environment, processing_mode=settings.processing_mode)

    validate_settings(settings)

    # Initialize database connection
    session_factory = init_db()
    if session_factory is None:
        logger.warning("runtime_disabled", reason="database_not_configured")
        return

    app.state.runtime = build_runtime(settings, session_factory)
    logger.info("runtime_initialized")

    # Start background jobs (skip in testing)
    app.state.scheduler = start_scheduler(app.state.runtime, settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")

    stop_scheduler(app.state.scheduler)

    if app.state.runtime is not None:
        await app.state.runtime.close()
        app.state.runtime = None

    await close_db()


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Fixbot API",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    Reports whether the app and its background services are running
    """
    runtime = app.state.runtime
    scheduler = app.state.scheduler

    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "database": "configured" if runtime is not None else "not_configured",
            "rate_limiter": "redis" if runtime is not None and runtime.redis is not None else "local",
        }
    }

    if runtime is not None:
        open_breakers = [
            name for name, stats in runtime.breakers.stats().items()
            if stats["state"] != "CLOSED"
        ]
        if open_breakers:
            health_status["status"] = "degraded"
            health_status["services"]["circuit_breakers"] = open_breakers

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fixbot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
