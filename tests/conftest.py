"""Shared test configuration and fixtures for all tests."""

import asyncio
from collections.abc import Callable
import copy
from datetime import datetime, timedelta, timezone
import os
from typing import Any

import pytest
import pytest_asyncio

# Mock environment variables for testing
os.environ["OPENAI_API_KEY"] = "test-key-123"

from coursegen.config import Settings  # noqa: E402
from coursegen.generation.content import (  # noqa: E402
    ContentClient,
    ContentRequest,
    DeterministicContentGenerator,
)
from coursegen.generation.events import EventLogger  # noqa: E402
from coursegen.generation.orchestrator import CourseGenerationOrchestrator  # noqa: E402
from coursegen.generation.store import InMemoryJobStore  # noqa: E402


class FakeClock:
    """Manually advanced clock; timestamps only move when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ScriptedContentGenerator:
    """
    Content generator whose behaviour is scripted per task id or task type.

    - ``fail(key, exc, times)`` raises ``exc`` for the first ``times`` calls
      (every call when ``times`` is None)
    - ``block(key)`` returns an Event the worker waits on before answering
    - ``results[key]`` overrides the generated payload
    - ``on_call`` is invoked synchronously with each request
    Everything else is answered by the deterministic generator.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.results: dict[str, Any] = {}
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.on_call: Callable[[ContentRequest], None] | None = None
        self._failures: dict[str, list[Any]] = {}
        self._gates: dict[str, asyncio.Event] = {}
        self._fallback = DeterministicContentGenerator()

    def fail(self, key: str, exc: BaseException, times: int | None = None) -> None:
        self._failures[key] = [exc, times]

    def block(self, key: str) -> asyncio.Event:
        gate = self._gates[key] = asyncio.Event()
        return gate

    @staticmethod
    def _lookup(table: dict[str, Any], request: ContentRequest) -> Any:
        if request.task_id in table:
            return table[request.task_id]
        return table.get(request.task_type.value)

    async def generate(self, request: ContentRequest) -> dict[str, Any]:
        self.calls.append(request.task_id)
        if self.on_call is not None:
            self.on_call(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            gate = self._lookup(self._gates, request)
            if gate is not None:
                await gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)

            failure = self._lookup(self._failures, request)
            if failure is not None:
                exc, remaining = failure
                if remaining is None or remaining > 0:
                    if remaining is not None:
                        failure[1] = remaining - 1
                    raise exc

            override = self._lookup(self.results, request)
            if override is not None:
                return copy.deepcopy(override)
            return await self._fallback.generate(request)
        finally:
            self.active -= 1

    def call_count(self, task_id: str) -> int:
        return self.calls.count(task_id)


def make_settings(**overrides: Any) -> Settings:
    """Settings tuned for fast, deterministic tests."""
    values: dict[str, Any] = {
        "max_concurrent_tasks_per_job": 5,
        "max_task_attempts": 3,
        "media_max_attempts": 2,
        "retry_backoff_seconds": 0.0,
        "retry_backoff_max_seconds": 0.0,
        "dispatch_poll_interval_seconds": 0.01,
        "job_retention_minutes": 60,
        "max_active_jobs_per_owner": 10,
        "content_backend": "deterministic",
        "task_timeout_seconds": 5.0,
        "content_retry_attempts": 1,
        "content_retry_wait_seconds": 0.0,
        "content_rate_limit_per_minute": 100_000,
        "monitor_enabled": False,
        "monitor_interval_seconds": 3600.0,
        "store_backend": "memory",
    }
    values.update(overrides)
    return Settings(**values)


def course_spec(**overrides: Any) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "title": "Introduction to Statistics",
        "description": "Descriptive and inferential statistics for beginners",
        "owner_id": "teacher-1",
        "path_count": 2,
        "lessons_per_path": 2,
        "sections_per_lesson": 2,
    }
    spec.update(overrides)
    return spec


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generator() -> ScriptedContentGenerator:
    return ScriptedContentGenerator()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def spec() -> dict[str, Any]:
    return course_spec()


@pytest.fixture
def spec_factory() -> Callable[..., dict[str, Any]]:
    return course_spec


@pytest_asyncio.fixture
async def make_orchestrator(clock, generator):
    """Factory for orchestrators sharing the fake clock; all are shut down after the test."""
    created: list[CourseGenerationOrchestrator] = []

    def factory(settings: Settings | None = None, **kwargs: Any) -> CourseGenerationOrchestrator:
        settings = settings or make_settings()
        client = ContentClient(
            kwargs.pop("content_generator", generator),
            timeout_seconds=settings.task_timeout_seconds,
            retry_attempts=settings.content_retry_attempts,
            retry_wait_seconds=settings.content_retry_wait_seconds,
            rate_limit_per_minute=settings.content_rate_limit_per_minute,
        )
        kwargs.setdefault("store", InMemoryJobStore())
        kwargs.setdefault("event_logger", EventLogger(sinks=[], clock=clock))
        orchestrator = CourseGenerationOrchestrator(
            client, settings=settings, clock=clock, **kwargs
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.shutdown()


@pytest_asyncio.fixture
async def orchestrator(make_orchestrator) -> CourseGenerationOrchestrator:
    return make_orchestrator()


@pytest.fixture
def wait_until():
    """Poll a condition from async tests until it holds or the timeout expires."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.002)

    return _wait_until
