"""Job state machine.

This module is the single place that decides a job's aggregate status from
its tasks. The orchestrator calls it after every task transition; nothing
else derives "is this job done" on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from coursegen.generation.models import Job, JobStatus, TaskStatus
from coursegen.generation.plan import OUTLINE_TASK_ID
from coursegen.generation.progress import ProgressCalculator, progress_calculator


@dataclass(frozen=True)
class JobResolution:
    """Outcome of evaluating a job's tasks."""

    status: JobStatus
    error: str | None = None
    error_code: str | None = None
    failed_task_ids: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def resolve_job_status(
    job: Job, calculator: ProgressCalculator = progress_calculator
) -> JobResolution:
    """
    Derive the aggregate status of a job.

    Rules, first match wins:
        - a job already in a terminal status keeps it
        - a permanently failed outline fails the job
        - any pending or running task keeps the job running
        - every task failed: the job failed
        - a required phase finished with no successes: planning failure
        - otherwise the job completed, failed tasks noted as partial success
    """
    failed = job.failed_task_ids

    if job.is_terminal:
        return JobResolution(job.status, job.error, job.error_code, failed)

    outline = job.tasks.get(OUTLINE_TASK_ID)
    if outline is not None and outline.status == TaskStatus.FAILED:
        return JobResolution(
            JobStatus.FAILED,
            error=f"Course outline generation failed: {outline.error or 'unknown error'}",
            error_code="outline_failed",
            failed_task_ids=failed,
        )

    tasks = list(job.tasks.values())
    unsettled = [t for t in tasks if not t.is_settled]
    if unsettled or not tasks:
        started = any(t.status != TaskStatus.PENDING or t.attempts for t in tasks)
        status = JobStatus.RUNNING if started or job.status == JobStatus.RUNNING else JobStatus.PENDING
        return JobResolution(status, failed_task_ids=failed)

    if len(failed) == len(tasks):
        return JobResolution(
            JobStatus.FAILED,
            error="All generation tasks failed",
            error_code="all_tasks_failed",
            failed_task_ids=failed,
        )

    breakdown = calculator.build_phase_breakdown(tasks)
    for phase in calculator.required_phases:
        if breakdown[phase.name].completed == 0:
            return JobResolution(
                JobStatus.FAILED,
                error=f"No {phase.name} tasks succeeded: {phase.description.lower()} failed",
                error_code="planning_failed",
                failed_task_ids=failed,
            )

    return JobResolution(JobStatus.COMPLETED, failed_task_ids=failed)
