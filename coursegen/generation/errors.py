"""Error taxonomy for course generation."""

from __future__ import annotations

import asyncio
from enum import Enum


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    CONTENT_GENERATION = "content_generation"
    PLANNING = "planning"
    STALL = "stall"
    FATAL = "fatal"
    REQUEST = "request"


class CourseGenerationError(Exception):
    """Base class for orchestrator errors."""

    code = "course_generation_error"
    category = ErrorCategory.FATAL

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TransientGenerationError(CourseGenerationError):
    """Network, rate-limit or availability failure talking to the content service."""

    code = "transient_error"
    category = ErrorCategory.TRANSIENT


class ContentGenerationError(CourseGenerationError):
    """The content service returned a structured failure for one task."""

    code = "content_generation_failed"
    category = ErrorCategory.CONTENT_GENERATION


class PlanningError(CourseGenerationError):
    """The generation plan cannot be expanded from a task's output."""

    code = "planning_failed"
    category = ErrorCategory.PLANNING


class InvalidJobSpecError(CourseGenerationError):
    code = "invalid_job_spec"
    category = ErrorCategory.REQUEST


class JobLimitExceededError(CourseGenerationError):
    code = "job_limit_exceeded"
    category = ErrorCategory.REQUEST


class TaskRetryError(CourseGenerationError):
    """Chosen tasks cannot be retried in the job's current state."""

    code = "task_retry_rejected"
    category = ErrorCategory.REQUEST


def classify_error(exc: BaseException) -> tuple[ErrorCategory, str]:
    """Map an exception raised by a worker to a category and error code."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TRANSIENT, "timeout"
    if isinstance(exc, TransientGenerationError):
        return ErrorCategory.TRANSIENT, "transient_exhausted"
    if isinstance(exc, CourseGenerationError):
        return exc.category, exc.code
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorCategory.TRANSIENT, "transient_exhausted"
    return ErrorCategory.FATAL, "unexpected_error"


def describe_error(exc: BaseException) -> str:
    """Readable one-line error message; timeouts carry no message of their own."""
    text = str(exc)
    if not text and isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "Content generation timed out"
    return text or type(exc).__name__
