"""API v1: course-generation jobs and service health."""

from fastapi import APIRouter

from coursegen.api.v1.routers.health import router as health_router
from coursegen.api.v1.routers.jobs import router as jobs_router

router = APIRouter()
router.include_router(health_router)
router.include_router(jobs_router)

__all__ = ["router"]
