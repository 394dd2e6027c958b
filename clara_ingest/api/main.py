"""FastAPI application main module."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from clara_ingest.api.deps import Pipeline, get_pipeline, limiter
from clara_ingest.api.routes_admin import router as admin_router
from clara_ingest.core.logging import setup_logging
from clara_ingest.core.schemas import HealthStatus

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    logger.info("Starting Clara ingestion API")
    yield
    if get_pipeline.cache_info().currsize:
        await get_pipeline().close()
    logger.info("Shutting down Clara ingestion API")


# Create FastAPI app
app = FastAPI(
    title="Clara Ingestion API",
    description="Trigger surface for the web content ingestion pipeline",
    version=VERSION,
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Include routers
app.include_router(admin_router, prefix="/admin", tags=["admin"])


@app.get("/health", response_model=HealthStatus)
async def health_check(pipeline: Pipeline = Depends(get_pipeline)):
    """Health check endpoint: pings the object, tracking and vector stores."""
    checks = await pipeline.orchestrator.health_check()
    healthy = checks.pop("healthy")
    body = HealthStatus(status="healthy" if healthy else "unhealthy", version=VERSION, checks=checks)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Clara Ingestion API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }
