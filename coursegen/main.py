"""
FastAPI service for course generation.

Accepts "build me a course" requests, runs them as background jobs through
the orchestrator, and exposes status, health and recovery endpoints.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from coursegen.api.v1 import router as api_v1_router

# Configure structured logging first
from coursegen.config import configure_structlog, settings
from coursegen.generation.runtime import initialize_runtime, shutdown_runtime

configure_structlog()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    logger.info(
        "Course Generation API starting up",
        version=settings.api_version,
        environment=settings.get_environment_display(),
        debug=settings.debug,
    )

    runtime = initialize_runtime(settings)
    if settings.monitor_enabled:
        runtime.monitor.start()
    else:
        logger.warning("Resilience monitor disabled - stuck jobs will not be recovered")

    if settings.content_backend == "agent" and not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not configured - content generation will fail")

    logger.info("API routes registered", endpoints=len(app.routes))

    yield

    logger.info("Course Generation API shutting down")
    await shutdown_runtime()


app = FastAPI(
    title=settings.api_title,
    description=f"""
    **Course Generation Orchestrator**

    Breaks a course request into outline, path, lesson, section, assessment
    and media tasks, generates them with bounded concurrency, and reports
    multi-phase progress.

    * **Asynchronous jobs**: `POST /api/v1/jobs` returns immediately
    * **Progress**: per-phase breakdown, never moves backwards
    * **Resilience**: stalled and stuck jobs are detected and recovered

    Currently running in **{settings.get_environment_display()}** mode.
    """,
    version=settings.api_version,
    debug=settings.debug,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production() else None,
    redoc_url="/redoc" if not settings.is_production() else None,
    openapi_url="/openapi.json" if not settings.is_production() else None,
)

app.add_middleware(CORSMiddleware, **settings.get_cors_config())
app.include_router(api_v1_router)


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
        "coursegen.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_config=None,  # Use our structured logging
    )
