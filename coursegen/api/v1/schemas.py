"""Pydantic schemas for API v1 - Simple DTOs only."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Import from domain layer
from coursegen.generation.models import JobStatus, TaskStatus, TaskType


class ErrorDetail(BaseModel):
    """Error information."""

    code: str
    message: str
    field: str | None = None


class JobCreatedResponse(BaseModel):
    """Job creation response."""

    job_id: str
    status: JobStatus
    progress: int = Field(ge=0, le=100)
    message: str


class PhaseCountsResponse(BaseModel):
    completed: int = 0
    total: int = 0
    failed: int = 0


class TaskItem(BaseModel):
    """One task of a job as reported by the status endpoint."""

    id: str
    type: TaskType
    status: TaskStatus
    attempts: int = 0
    max_attempts: int | None = None
    depends_on: list[str] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobStatusResponse(BaseModel):
    """Job status response; live state when available, durable state otherwise."""

    job_id: str
    source: Literal["live", "durable"]
    status: JobStatus
    progress: int = Field(ge=0, le=100)
    message: str
    phase_breakdown: dict[str, PhaseCountsResponse]
    tasks: list[TaskItem]
    failed_tasks: list[str] = Field(default_factory=list)
    abandoned: bool = False
    recovery_attempts: int = 0
    estimated_time_remaining: str | None = None
    error: ErrorDetail | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class TaskRetryRequest(BaseModel):
    """Failed tasks to give a fresh set of attempts."""

    task_ids: list[str] = Field(..., min_length=1)


class JobActionResponse(BaseModel):
    """Response for cancel, restart and task retry."""

    job_id: str
    status: JobStatus
    message: str


class JobHealthResponse(BaseModel):
    job_id: str
    state: str
    action: str
    status: JobStatus
    progress: int
    seconds_since_activity: float
    recovery_attempts: int
    max_recovery_attempts: int
    task_counts: dict[str, int]
    stale_task_ids: list[str]
    message: str
    can_auto_recover: bool
    checked_at: datetime


class RecoveryResponse(BaseModel):
    job_id: str
    attempted: bool
    success: bool
    message: str
    state: str | None = None
    recovery_attempts: int = 0
    reset_task_ids: list[str] = Field(default_factory=list)
    exhausted_task_ids: list[str] = Field(default_factory=list)
    restarted_dispatch: bool = False


class LogEntryResponse(BaseModel):
    job_id: str
    level: str
    message: str
    source: str
    timestamp: datetime
    task_id: str | None = None
    error_code: str | None = None
    alert_type: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class AlertResponse(BaseModel):
    job_id: str
    alert_type: str
    severity: str
    message: str
    task_id: str | None = None
    first_seen: datetime
    last_seen: datetime
    occurrences: int
    resolved: bool
    resolved_at: datetime | None = None
    resolved_by: str | None = None


class JobLogsResponse(BaseModel):
    job_id: str
    entries: list[LogEntryResponse]
    alerts: list[AlertResponse]


class HealthStatus(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: datetime = Field(default_factory=datetime.now)
    live_jobs: int
    running_tasks: int
    open_alerts: int
    monitor_running: bool
    dependencies: dict[str, str] = {}
    models: dict[str, str] = {}
