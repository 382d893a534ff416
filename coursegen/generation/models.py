"""Job and task domain models for course generation."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from coursegen.generation.schemas import CourseRequest


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskType(str, Enum):
    """Kinds of generation work a job is decomposed into."""

    OUTLINE = "outline"
    PATH = "path"
    LESSON = "lesson"
    LESSON_SECTION = "lesson_section"
    LESSON_ASSESSMENT = "lesson_assessment"
    PATH_QUIZ = "path_quiz"
    CLASS_EXAM = "class_exam"
    MEDIA_MINDMAP = "media_mindmap"
    MEDIA_AUDIO = "media_audio"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


SETTLED_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


@dataclass
class PhaseCounts:
    """Completion counts for one progress phase."""

    completed: int = 0
    total: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"completed": self.completed, "total": self.total, "failed": self.failed}


@dataclass
class Task:
    """
    One atomic unit of generation work.

    Attributes:
        id: Identifier, unique within the owning job
        job_id: Owning job
        type: Kind of content this task produces
        status: Current lifecycle status
        depends_on: Task ids that must be completed before this task runs
        payload: Context handed to the content generator
        priority: Dispatch order hint (lower runs first)
        attempts: Failed attempts so far
        max_attempts: Attempt ceiling before the task stays failed
        lease: Dispatch counter used to discard superseded worker results
        available_at: Earliest dispatch time after a retry backoff
        result: Generated content (completed tasks only)
        error: Failure message (failed tasks only)
        error_code: Machine-readable failure code (failed tasks only)
        last_error: Error of the previous attempt, kept across retries
    """

    id: str
    job_id: str
    type: TaskType
    created_at: datetime
    last_activity_at: datetime
    status: TaskStatus = TaskStatus.PENDING
    depends_on: frozenset[str] = frozenset()
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    lease: int = 0
    available_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    last_error: str | None = None

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_TASK_STATUSES

    def touch(self, now: datetime) -> None:
        self.last_activity_at = now

    def to_dict(self) -> dict[str, Any]:
        """Convert task to dictionary for API responses."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "depends_on": sorted(self.depends_on),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass
class Job:
    """A course-generation request and its aggregate state."""

    id: str
    owner_id: str
    request: CourseRequest
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    max_concurrency: int
    status: JobStatus = JobStatus.PENDING
    tasks: dict[str, Task] = field(default_factory=dict)
    progress_percentage: int = 0
    phase_breakdown: dict[str, PhaseCounts] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None
    recovery_attempts: int = 0
    abandoned: bool = False
    completed_at: datetime | None = None
    idempotency_key: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def failed_task_ids(self) -> list[str]:
        return [t.id for t in self.tasks.values() if t.status == TaskStatus.FAILED]

    def tasks_with_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self.tasks.values() if t.status == status]

    def running_count(self) -> int:
        return sum(1 for t in self.tasks.values() if t.status == TaskStatus.RUNNING)

    def add_task(self, task: Task) -> bool:
        """Register a task; returns False if the id is already taken."""
        if task.id in self.tasks:
            return False
        self.tasks[task.id] = task
        return True

    def snapshot(self) -> Job:
        """Return a detached copy that readers may hold without locking."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "progress": self.progress_percentage,
            "phase_breakdown": {
                name: counts.to_dict() for name, counts in self.phase_breakdown.items()
            },
            "tasks": [task.to_dict() for task in self.tasks.values()],
            "error": self.error,
            "error_code": self.error_code,
            "failed_tasks": self.failed_task_ids,
            "recovery_attempts": self.recovery_attempts,
            "abandoned": self.abandoned,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
