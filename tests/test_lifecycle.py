"""Tests for job status resolution."""

from datetime import datetime, timezone

from coursegen.generation.lifecycle import resolve_job_status
from coursegen.generation.models import Job, JobStatus, Task, TaskStatus, TaskType
from coursegen.generation.schemas import CourseRequest

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def build_job(*tasks: tuple[str, TaskType, TaskStatus], status: JobStatus = JobStatus.RUNNING) -> Job:
    job = Job(
        id="job-1",
        owner_id="owner",
        request=CourseRequest(title="Statistics"),
        created_at=NOW,
        updated_at=NOW,
        last_activity_at=NOW,
        max_concurrency=5,
        status=status,
    )
    for task_id, task_type, task_status in tasks:
        job.add_task(
            Task(
                id=task_id,
                job_id=job.id,
                type=task_type,
                created_at=NOW,
                last_activity_at=NOW,
                status=task_status,
                error="boom" if task_status == TaskStatus.FAILED else None,
            )
        )
    return job


DONE = TaskStatus.COMPLETED
FAILED = TaskStatus.FAILED

HAPPY_PATH = (
    ("outline", TaskType.OUTLINE, DONE),
    ("path-0", TaskType.PATH, DONE),
    ("lesson-0-0", TaskType.LESSON, DONE),
    ("section-0-0-0", TaskType.LESSON_SECTION, DONE),
)


class TestResolveJobStatus:
    def test_fresh_job_is_pending(self):
        job = build_job(("outline", TaskType.OUTLINE, TaskStatus.PENDING), status=JobStatus.PENDING)
        assert resolve_job_status(job).status == JobStatus.PENDING

    def test_running_task_keeps_job_running(self):
        job = build_job(
            ("outline", TaskType.OUTLINE, DONE),
            ("path-0", TaskType.PATH, TaskStatus.RUNNING),
            status=JobStatus.PENDING,
        )
        resolution = resolve_job_status(job)
        assert resolution.status == JobStatus.RUNNING
        assert not resolution.is_terminal

    def test_all_settled_completes(self):
        resolution = resolve_job_status(build_job(*HAPPY_PATH))
        assert resolution.status == JobStatus.COMPLETED
        assert resolution.failed_task_ids == []

    def test_partial_success_completes_with_failed_ids(self):
        job = build_job(
            *HAPPY_PATH,
            ("assessment-0-0", TaskType.LESSON_ASSESSMENT, FAILED),
            ("audio-0-0", TaskType.MEDIA_AUDIO, FAILED),
        )
        resolution = resolve_job_status(job)

        assert resolution.status == JobStatus.COMPLETED
        assert resolution.error is None
        assert sorted(resolution.failed_task_ids) == ["assessment-0-0", "audio-0-0"]

    def test_failed_outline_fails_job(self):
        resolution = resolve_job_status(build_job(("outline", TaskType.OUTLINE, FAILED)))

        assert resolution.status == JobStatus.FAILED
        assert resolution.error_code == "outline_failed"
        assert "boom" in resolution.error

    def test_failed_outline_fails_job_even_with_pending_work(self):
        job = build_job(
            ("outline", TaskType.OUTLINE, FAILED),
            ("path-0", TaskType.PATH, TaskStatus.PENDING),
        )
        assert resolve_job_status(job).status == JobStatus.FAILED

    def test_outline_rule_wins_over_all_failed(self):
        job = build_job(
            ("outline", TaskType.OUTLINE, FAILED),
            ("path-0", TaskType.PATH, FAILED),
        )
        assert resolve_job_status(job).error_code == "outline_failed"

    def test_every_task_failed(self):
        job = build_job(
            ("path-0", TaskType.PATH, FAILED),
            ("lesson-0-0", TaskType.LESSON, FAILED),
        )
        resolution = resolve_job_status(job)

        assert resolution.status == JobStatus.FAILED
        assert resolution.error_code == "all_tasks_failed"

    def test_required_phase_without_success(self):
        job = build_job(
            ("outline", TaskType.OUTLINE, DONE),
            ("path-0", TaskType.PATH, FAILED),
            ("path-1", TaskType.PATH, FAILED),
        )
        resolution = resolve_job_status(job)

        assert resolution.status == JobStatus.FAILED
        assert resolution.error_code == "planning_failed"
        assert resolution.failed_task_ids == ["path-0", "path-1"]

    def test_sections_all_failed_is_planning_failure(self):
        job = build_job(
            ("outline", TaskType.OUTLINE, DONE),
            ("path-0", TaskType.PATH, DONE),
            ("lesson-0-0", TaskType.LESSON, DONE),
            ("section-0-0-0", TaskType.LESSON_SECTION, FAILED),
        )
        assert resolve_job_status(job).error_code == "planning_failed"

    def test_terminal_status_is_sticky(self):
        job = build_job(("outline", TaskType.OUTLINE, TaskStatus.RUNNING), status=JobStatus.CANCELLED)
        resolution = resolve_job_status(job)

        assert resolution.status == JobStatus.CANCELLED
        assert resolution.is_terminal
