"""Content-generation client: timeout, transient retry and rate limiting."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from asyncio_throttle.throttler import Throttler
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from coursegen.generation.errors import TransientGenerationError
from coursegen.generation.models import TaskType

logger = structlog.get_logger(__name__)

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientGenerationError,
    TimeoutError,
    ConnectionError,
    OSError,
)


@dataclass(frozen=True)
class ContentRequest:
    """
    Typed generation request for one task.

    Attributes:
        job_id: Owning job
        task_id: Task being generated
        task_type: Kind of content to produce
        course: Course-level context (title, description, audience, hints)
        context: Task payload (titles and indexes within the plan)
        inputs: Results of the task's completed dependencies, keyed by task id
        attempt: 1-based attempt number for this task
    """

    job_id: str
    task_id: str
    task_type: TaskType
    course: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


class ContentGenerator(Protocol):
    """Anything that turns a ContentRequest into generated content."""

    async def generate(self, request: ContentRequest) -> dict[str, Any]: ...


class ContentClient:
    """Wraps a ContentGenerator with a timeout, bounded retry and a shared rate limit."""

    def __init__(
        self,
        generator: ContentGenerator,
        *,
        timeout_seconds: float = 300.0,
        retry_attempts: int = 3,
        retry_wait_seconds: float = 1.0,
        rate_limit_per_minute: int = 120,
    ):
        self.generator = generator
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = max(retry_attempts, 1)
        self.retry_wait_seconds = retry_wait_seconds
        self.rate_limit_per_minute = rate_limit_per_minute
        self.throttler = Throttler(rate_limit=rate_limit_per_minute, period=60)

    async def generate(
        self,
        request: ContentRequest,
        *,
        on_retry: Callable[[int], Awaitable[None]] | None = None,
    ) -> dict[str, Any]:
        """
        Generate content for one task.

        Transient failures (network, timeouts, rate limits) are retried here;
        anything else propagates immediately so the orchestrator can count the
        attempt. The last transient error is re-raised once retries run out.

        Args:
            request: What to generate
            on_retry: Awaited with the attempt number before every retry, so
                the caller can record that the worker is still alive
        """
        result: dict[str, Any] = {}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=self.retry_wait_seconds, max=self.retry_wait_seconds * 10
            ),
            retry=retry_if_exception_type(TRANSIENT_EXCEPTIONS),
            before_sleep=lambda state: self._log_retry(request, state),
            reraise=True,
        ):
            attempt_number = attempt.retry_state.attempt_number
            if on_retry is not None and attempt_number > 1:
                await on_retry(attempt_number)
            with attempt:
                async with self.throttler:
                    result = await asyncio.wait_for(
                        self.generator.generate(request), timeout=self.timeout_seconds
                    )
        return result

    @staticmethod
    def _log_retry(request: ContentRequest, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient content generation error, retrying",
            task_id=request.task_id,
            attempt=retry_state.attempt_number,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )


class DeterministicContentGenerator:
    """Offline generator producing predictable placeholder content.

    Used for local development and demos when no model credentials are
    configured. Structure follows the request's path/lesson/section hints.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds

    async def generate(self, request: ContentRequest) -> dict[str, Any]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        course_title = request.course.get("title", "Course")
        if request.task_type == TaskType.OUTLINE:
            return self._outline(course_title, request.context)

        title = request.context.get("title") or request.context.get("lesson_title") or course_title
        content: dict[str, Any] = {
            "title": f"{request.task_type.value.replace('_', ' ').title()}: {title}",
            "content": f"Generated {request.task_type.value} content for {title}.",
            "questions": [],
        }
        if request.task_type in (
            TaskType.LESSON_ASSESSMENT,
            TaskType.PATH_QUIZ,
            TaskType.CLASS_EXAM,
        ):
            content["questions"] = [
                {
                    "prompt": f"What is the key idea of {title}?",
                    "options": ["A", "B", "C", "D"],
                    "answer": "A",
                }
            ]
        return content

    @staticmethod
    def _outline(course_title: str, hints: dict[str, Any]) -> dict[str, Any]:
        path_count = hints.get("path_count", 1)
        lessons_per_path = hints.get("lessons_per_path", 1)
        sections_per_lesson = hints.get("sections_per_lesson", 1)
        return {
            "title": course_title,
            "description": f"An introduction to {course_title}.",
            "paths": [
                {
                    "title": f"Path {p + 1}",
                    "description": f"Learning path {p + 1} of {course_title}",
                    "lessons": [
                        {
                            "title": f"Lesson {p + 1}.{l + 1}",
                            "sections": [
                                f"Section {p + 1}.{l + 1}.{s + 1}"
                                for s in range(sections_per_lesson)
                            ],
                        }
                        for l in range(lessons_per_path)
                    ],
                }
                for p in range(path_count)
            ],
        }
