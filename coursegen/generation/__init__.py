"""Course generation: planning, orchestration, monitoring and event logging."""

from coursegen.generation.errors import (
    ContentGenerationError,
    CourseGenerationError,
    InvalidJobSpecError,
    JobLimitExceededError,
    PlanningError,
    TransientGenerationError,
)
from coursegen.generation.events import AlertType, EventLogger, LogLevel
from coursegen.generation.models import Job, JobStatus, Task, TaskStatus, TaskType
from coursegen.generation.orchestrator import CourseGenerationOrchestrator
from coursegen.generation.resilience import HealthState, ResilienceMonitor
from coursegen.generation.schemas import CourseRequest

__all__ = [
    "AlertType",
    "ContentGenerationError",
    "CourseGenerationError",
    "CourseGenerationOrchestrator",
    "CourseRequest",
    "EventLogger",
    "HealthState",
    "InvalidJobSpecError",
    "Job",
    "JobLimitExceededError",
    "JobStatus",
    "LogLevel",
    "PlanningError",
    "ResilienceMonitor",
    "Task",
    "TaskStatus",
    "TaskType",
    "TransientGenerationError",
]
