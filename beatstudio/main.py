"""
FastAPI service for the generation orchestrator.

Exposes session management, generation submission, the generation service
callback channel and read access to tasks, items and notifications.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from beatstudio.api.v1.endpoints import router as api_v1_router
from beatstudio.config import configure_structlog, settings
from beatstudio.orchestration.orchestrator import (
    build_orchestrator,
    initialize_orchestrator,
    reset_orchestrator,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    configure_structlog()

    # Startup
    logger.info(
        "Generation orchestrator starting up",
        version=settings.api_version,
        environment=settings.get_environment_display(),
        debug=settings.debug,
    )

    orchestrator = initialize_orchestrator(build_orchestrator(settings))
    await orchestrator.cache.purge_stale_namespaces()
    logger.info(
        "Orchestrator initialized",
        poll_interval_seconds=settings.poll_interval_seconds,
        cache_namespace=settings.cache_namespace,
        cache_ttl_hours=settings.cache_ttl_hours,
    )

    if not settings.generation_api_key:
        logger.warning("GENERATION_API_KEY not configured - submissions will fail")

    logger.info("API routes registered", endpoints=len(app.routes))

    yield

    # Shutdown
    logger.info("Generation orchestrator shutting down")
    await orchestrator.shutdown()
    await orchestrator.service.close()
    await orchestrator.ledger.close()
    await orchestrator.storage.close()
    reset_orchestrator()


app = FastAPI(
    title=settings.api_title,
    description=f"""
    **Generation Orchestrator**

    Reconciles a music generation service, a payment ledger and content-addressed
    artifact storage into one consistent view of an account's generations.

    * **Submission**: service request first, ledger payment second
    * **Reconciliation**: polling and push callbacks race through one completion guard
    * **Local cache**: per-account snapshot with a {settings.cache_ttl_hours}h TTL
    * **Notifications**: each (task, kind) fires at most once per session

    Currently running in **{settings.get_environment_display()}** mode.
    """,
    version=settings.api_version,
    debug=settings.debug,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production() else None,
    redoc_url="/redoc" if not settings.is_production() else None,
    openapi_url="/openapi.json" if not settings.is_production() else None,
)

# CORS middleware with environment-aware configuration
app.add_middleware(CORSMiddleware, **settings.get_cors_config())

# Include API routes
app.include_router(api_v1_router, tags=["API v1"])


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint providing basic API information.

    Use `/api/v1/health` for detailed health checks.
    """
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "environment": settings.get_environment_display(),
        "status": "operational",
        "docs": "/docs" if not settings.is_production() else "disabled",
        "health": "/api/v1/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "beatstudio.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_config=None,  # Use our structured logging
    )
