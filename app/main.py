"""
Lead Discovery - Main Application
FastAPI Entry Point with APScheduler for scheduled discovery sweeps
"""

from fastapi import FastAPI
from fastapi.responses import JSONResponse
import structlog

from app.config import settings
from app.middleware import CorrelationIdMiddleware
from app.routers import admin_router, discovery_router
from app.scheduler import start_scheduler, stop_scheduler
from app.services.monitoring import configure_structlog, init_sentry, setup_logging

# Structured Logging Setup
configure_structlog()
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Lead Discovery",
    description="AI-assisted B2B lead discovery sweeps with token and cost safety limits",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(CorrelationIdMiddleware)

# Register routers
app.include_router(discovery_router)
app.include_router(admin_router)

# Set on startup
scheduler = None


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    global scheduler

    setup_logging(environment=settings.environment)
    init_sentry()
    logger.info("startup", environment=settings.environment)

    scheduler = start_scheduler(settings.environment, settings.scheduler_interval_minutes)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(scheduler)


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Lead Discovery API",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    Reports which backing services are configured
    """
    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "store": "mongodb" if settings.mongodb_url else "memory",
            "broker": "redis" if settings.redis_url else "stub",
            "ai_analysis": "configured" if settings.anthropic_api_key else "rule_based",
            "google_places": "configured" if settings.google_places_api_key else "missing",
        }
    }

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
