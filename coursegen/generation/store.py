"""Durable job summaries.

The orchestrator persists a compact summary after every state change so the
status API can answer for jobs that are no longer held in memory, including
after a process restart.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
import re
from typing import Protocol

from pydantic import BaseModel, Field
import structlog

from coursegen.generation.models import (
    Job,
    JobStatus,
    PhaseCounts,
    TaskStatus,
    TaskType,
)

logger = structlog.get_logger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class PhaseCountsSummary(BaseModel):
    completed: int = 0
    total: int = 0
    failed: int = 0


class TaskSummary(BaseModel):
    id: str
    type: TaskType
    status: TaskStatus
    attempts: int = 0
    error: str | None = None
    error_code: str | None = None
    updated_at: datetime


class JobSummary(BaseModel):
    """Persisted view of a job."""

    job_id: str
    owner_id: str
    status: JobStatus
    progress: int = Field(0, ge=0, le=100)
    phase_breakdown: dict[str, PhaseCountsSummary] = Field(default_factory=dict)
    tasks: list[TaskSummary] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    abandoned: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def failed_task_ids(self) -> list[str]:
        return [t.id for t in self.tasks if t.status == TaskStatus.FAILED]

    @classmethod
    def from_job(cls, job: Job) -> JobSummary:
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            status=job.status,
            progress=job.progress_percentage,
            phase_breakdown={
                name: PhaseCountsSummary(**counts.to_dict())
                for name, counts in job.phase_breakdown.items()
            },
            tasks=[
                TaskSummary(
                    id=task.id,
                    type=task.type,
                    status=task.status,
                    attempts=task.attempts,
                    error=task.error,
                    error_code=task.error_code,
                    updated_at=task.last_activity_at,
                )
                for task in job.tasks.values()
            ],
            error=job.error,
            error_code=job.error_code,
            abandoned=job.abandoned,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )

    def phase_counts(self) -> dict[str, PhaseCounts]:
        return {
            name: PhaseCounts(counts.completed, counts.total, counts.failed)
            for name, counts in self.phase_breakdown.items()
        }


class JobStore(Protocol):
    async def save(self, summary: JobSummary) -> None: ...

    async def load(self, job_id: str) -> JobSummary | None: ...

    async def delete(self, job_id: str) -> None: ...


class InMemoryJobStore:
    """Process-local store; summaries survive eviction but not restarts."""

    def __init__(self) -> None:
        self._summaries: dict[str, JobSummary] = {}

    async def save(self, summary: JobSummary) -> None:
        self._summaries[summary.job_id] = summary.model_copy(deep=True)

    async def load(self, job_id: str) -> JobSummary | None:
        summary = self._summaries.get(job_id)
        return summary.model_copy(deep=True) if summary else None

    async def delete(self, job_id: str) -> None:
        self._summaries.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._summaries)


class JsonFileJobStore:
    """One JSON document per job under a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, job_id: str) -> Path:
        if not _SAFE_ID.match(job_id):
            raise ValueError(f"Invalid job id for file store: {job_id!r}")
        return self.directory / f"{job_id}.json"

    async def save(self, summary: JobSummary) -> None:
        path = self._path(summary.job_id)
        data = summary.model_dump_json(indent=2)
        await asyncio.to_thread(self._write, path, data)

    async def load(self, job_id: str) -> JobSummary | None:
        try:
            path = self._path(job_id)
        except ValueError:
            return None
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return None
        return JobSummary.model_validate_json(raw)

    async def delete(self, job_id: str) -> None:
        path = self._path(job_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    def _write(self, path: Path, data: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _read(path: Path) -> str | None:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")


def create_job_store(backend: str, path: str | Path) -> JobStore:
    if backend == "file":
        logger.info("Using JSON file job store", path=str(path))
        return JsonFileJobStore(path)
    return InMemoryJobStore()
