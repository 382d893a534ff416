"""Tests for worker error classification and job snapshots."""

import asyncio
from datetime import datetime, timezone

import pytest

from coursegen.generation.errors import (
    ContentGenerationError,
    ErrorCategory,
    PlanningError,
    TransientGenerationError,
    classify_error,
    describe_error,
)
from coursegen.generation.models import Job, Task, TaskStatus, TaskType
from coursegen.generation.schemas import CourseRequest

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "exc,expected",
    [
        (asyncio.TimeoutError(), (ErrorCategory.TRANSIENT, "timeout")),
        (TransientGenerationError("503"), (ErrorCategory.TRANSIENT, "transient_exhausted")),
        (ConnectionError("reset"), (ErrorCategory.TRANSIENT, "transient_exhausted")),
        (
            ContentGenerationError("refused"),
            (ErrorCategory.CONTENT_GENERATION, "content_generation_failed"),
        ),
        (
            PlanningError("no lessons", code="empty_outline"),
            (ErrorCategory.PLANNING, "empty_outline"),
        ),
        (KeyError("bug"), (ErrorCategory.FATAL, "unexpected_error")),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) == expected


def test_describe_error():
    assert describe_error(asyncio.TimeoutError()) == "Content generation timed out"
    assert describe_error(ContentGenerationError("model refused")) == "model refused"
    assert describe_error(RuntimeError()) == "RuntimeError"


def test_snapshot_is_detached():
    job = Job(
        id="job-1",
        owner_id="owner",
        request=CourseRequest(title="Algebra"),
        created_at=NOW,
        updated_at=NOW,
        last_activity_at=NOW,
        max_concurrency=5,
    )
    job.add_task(
        Task(id="outline", job_id="job-1", type=TaskType.OUTLINE, created_at=NOW,
             last_activity_at=NOW)
    )

    snapshot = job.snapshot()
    job.tasks["outline"].status = TaskStatus.RUNNING

    assert snapshot.tasks["outline"].status == TaskStatus.PENDING
    assert snapshot.to_dict()["job_id"] == "job-1"
