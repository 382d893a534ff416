"""Health check endpoints."""

from fastapi import APIRouter

from coursegen.api.v1.schemas import HealthStatus
from coursegen.config import settings
from coursegen.generation.runtime import get_runtime

router = APIRouter(prefix="/api/v1", tags=["health"])


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """Health check endpoint for load balancers and monitoring."""
    runtime = get_runtime()
    orchestrator_health = runtime.orchestrator.health_check()

    dependencies = {
        "orchestrator": orchestrator_health["orchestrator"],
        "store": orchestrator_health["store"],
    }
    if runtime.settings.content_backend == "agent":
        dependencies["openai"] = "configured" if runtime.settings.openai_api_key else "missing"
    else:
        dependencies["content"] = "deterministic"

    overall_status = (
        "healthy"
        if orchestrator_health["orchestrator"] == "healthy"
        and dependencies.get("openai", "configured") == "configured"
        else "degraded"
    )

    return HealthStatus(
        status=overall_status,
        service="course-generation-api",
        version=settings.api_version,
        live_jobs=orchestrator_health["live_jobs"],
        running_tasks=orchestrator_health["running_tasks"],
        open_alerts=orchestrator_health["open_alerts"],
        monitor_running=runtime.monitor.running,
        dependencies=dependencies,
        models={"content_model": runtime.settings.content_model},
    )
