"""Course-generation job endpoints."""

from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Query, status
import structlog

from coursegen.api.v1.schemas import (
    AlertResponse,
    ErrorDetail,
    JobActionResponse,
    JobCreatedResponse,
    JobHealthResponse,
    JobLogsResponse,
    JobStatusResponse,
    LogEntryResponse,
    PhaseCountsResponse,
    RecoveryResponse,
    TaskItem,
    TaskRetryRequest,
)
from coursegen.generation.errors import (
    InvalidJobSpecError,
    JobLimitExceededError,
    TaskRetryError,
)
from coursegen.generation.models import JobStatus
from coursegen.generation.orchestrator import JobStatusView
from coursegen.generation.progress import progress_calculator
from coursegen.generation.runtime import get_event_logger, get_monitor, get_orchestrator
from coursegen.generation.schemas import CourseRequest

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


async def get_status_or_404(job_id: str) -> JobStatusView:
    """Get job status by ID or raise 404."""
    view = await get_orchestrator().get_job_status(job_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return view


def _status_message(view: JobStatusView) -> str:
    if view.status == JobStatus.COMPLETED:
        if view.failed_tasks:
            return f"Course generated with {len(view.failed_tasks)} failed items"
        return "Course generated successfully"
    if view.status == JobStatus.FAILED:
        return view.error or "Course generation failed"
    if view.status == JobStatus.CANCELLED:
        return "Course generation cancelled"
    return progress_calculator.describe(view.progress, view.phase_breakdown)


@router.post("", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    request: CourseRequest,
    idempotency_key: Annotated[str | None, Header()] = None,
) -> JobCreatedResponse:
    """Start generating a course.

    Expected behavior:
    - Returns 202 immediately; generation runs in the background
    - Repeating an Idempotency-Key returns the existing job
    - Returns 429 when the owner already has too many active jobs
    """
    try:
        job = await get_orchestrator().create_job(request, idempotency_key=idempotency_key)
    except InvalidJobSpecError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    except JobLimitExceededError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.message)

    logger.info("Job accepted", job_id=job.id, owner_id=job.owner_id)
    return JobCreatedResponse(
        job_id=job.id,
        status=job.status,
        progress=job.progress_percentage,
        message="Course generation started",
    )


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str) -> JobStatusResponse:
    """Get current job status, phase breakdown and tasks.

    Live state wins over the durable summary; `source` says which one answered.
    """
    view = await get_status_or_404(job_id)

    eta = None
    if view.status in (JobStatus.PENDING, JobStatus.RUNNING):
        eta = progress_calculator.estimate_time_remaining(
            view.progress, view.created_at, get_orchestrator().clock()
        )

    return JobStatusResponse(
        job_id=view.job_id,
        source=view.source,
        status=view.status,
        progress=view.progress,
        message=_status_message(view),
        phase_breakdown={
            name: PhaseCountsResponse(**counts.to_dict())
            for name, counts in view.phase_breakdown.items()
        },
        tasks=[TaskItem.model_validate(task) for task in view.tasks],
        failed_tasks=view.failed_tasks,
        abandoned=view.abandoned,
        recovery_attempts=view.recovery_attempts,
        estimated_time_remaining=eta,
        error=ErrorDetail(code=view.error_code or "unknown", message=view.error or "")
        if view.status == JobStatus.FAILED
        else None,
        created_at=view.created_at,
        updated_at=view.updated_at,
        completed_at=view.completed_at,
    )


@router.delete("/{job_id}", response_model=JobActionResponse)
async def cancel_job(job_id: str) -> JobActionResponse:
    """Cancel a job. Running tasks finish; nothing new is dispatched."""
    job = await get_orchestrator().cancel_job(job_id)
    if job is None:
        await get_status_or_404(job_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Job is no longer live and cannot be cancelled"
        )

    message = (
        "Job cancelled successfully"
        if job.status == JobStatus.CANCELLED
        else f"Job already {job.status.value}"
    )
    return JobActionResponse(job_id=job.id, status=job.status, message=message)


@router.post("/{job_id}/restart", response_model=JobActionResponse)
async def restart_job(job_id: str) -> JobActionResponse:
    """Restart a failed job from its last successful phase."""
    before = get_orchestrator().get_job_state(job_id)
    if before is None:
        await get_status_or_404(job_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Job is no longer live and cannot be restarted"
        )
    if before.status != JobStatus.FAILED or before.abandoned:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only failed, non-abandoned jobs can be restarted",
        )

    job = await get_orchestrator().restart_job(job_id)
    return JobActionResponse(job_id=job.id, status=job.status, message="Job restarted")


@router.post("/{job_id}/tasks/retry", response_model=JobActionResponse)
async def retry_tasks(job_id: str, request: TaskRetryRequest) -> JobActionResponse:
    """Retry chosen failed tasks.

    Expected behavior:
    - Tasks skipped only because of these failures are retried with them
    - A finished job is reopened and reports `running`
    - Returns 409 for tasks that are not failed, or for cancelled and abandoned jobs
    """
    try:
        job = await get_orchestrator().retry_tasks(job_id, request.task_ids)
    except TaskRetryError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    if job is None:
        await get_status_or_404(job_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Job is no longer live and cannot be retried"
        )

    logger.info("Task retry accepted", job_id=job_id, task_ids=request.task_ids)
    return JobActionResponse(
        job_id=job.id,
        status=job.status,
        message=f"Retrying {len(request.task_ids)} tasks",
    )


@router.get("/{job_id}/health", response_model=JobHealthResponse)
async def get_job_health(job_id: str) -> JobHealthResponse:
    """Resilience monitor report for a live job."""
    report = get_monitor().check_job_health(job_id)
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobHealthResponse.model_validate(report.to_dict())


@router.post("/{job_id}/recover", response_model=RecoveryResponse)
async def recover_job(job_id: str) -> RecoveryResponse:
    """Run one recovery attempt now."""
    if get_orchestrator().get_job_state(job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    result = await get_monitor().attempt_recovery(job_id)
    return RecoveryResponse.model_validate(result.to_dict())


@router.get("/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(
    job_id: str,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    include_resolved: bool = False,
) -> JobLogsResponse:
    """Newest log entries and the alerts of a live job."""
    if get_orchestrator().get_job_state(job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    events = get_event_logger()
    return JobLogsResponse(
        job_id=job_id,
        entries=[
            LogEntryResponse.model_validate(entry.to_dict())
            for entry in events.get_job_logs(job_id, limit=limit)
        ],
        alerts=[
            AlertResponse.model_validate(alert.to_dict())
            for alert in events.get_job_alerts(job_id, include_resolved=include_resolved)
        ],
    )
