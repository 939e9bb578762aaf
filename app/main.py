"""FastAPI application factory and configuration."""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db
from app.error_handlers import register_error_handlers
from app.services import sweeper
from app.utils.log_format import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info(f"Starting DNC Compliance Service in {settings.ENVIRONMENT} mode")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")  # Hide credentials
    await init_db()
    if settings.DNC_SWEEP_ENABLED:
        sweeper.start_scheduler()
    yield
    # Shutdown
    sweeper.shutdown_scheduler()
    logger.info("Shutting down DNC Compliance Service")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="DNC Compliance Service",
        description="Do-Not-Call registry ingestion, lookup and pre-call gating",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "dnc-compliance-service",
            "version": "0.1.0",
            "environment": settings.ENVIRONMENT,
        }

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "message": "DNC Compliance Service API",
            "docs": "/docs",
            "health": "/health",
        }

    # Mount routes
    from app.routes import dnc

    app.include_router(dnc.router, prefix="/api/dnc", tags=["DNC"])

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )
